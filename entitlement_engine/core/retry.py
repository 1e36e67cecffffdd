"""
Bounded retry for optimistic-concurrency conflicts.

Every mutating operation in the engine goes through compare-and-swap; a lost
race raises VersionConflictError and the whole read-decide-write cycle is run
again after an exponential backoff. Exhaustion surfaces as TransientError.
"""
from __future__ import annotations

import logging
import random
import time
from typing import Callable, Optional, TypeVar

from entitlement_engine.core.config import settings
from entitlement_engine.core.errors import TransientError, VersionConflictError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def compute_backoff_ms(attempt: int, base_ms: int, max_ms: int) -> float:
    """Exponential backoff with full jitter, capped at max_ms."""
    ceiling = min(max_ms, base_ms * (2 ** attempt))
    return random.uniform(0, ceiling)


def retry_on_conflict(
    operation: Callable[[int], T],
    *,
    max_attempts: Optional[int] = None,
    base_delay_ms: Optional[int] = None,
    max_delay_ms: Optional[int] = None,
    sleep: Callable[[float], None] = time.sleep,
    label: str = "cas",
) -> T:
    """Run `operation(attempt)` until it stops raising VersionConflictError.

    The operation must re-read the record on every attempt; it receives the
    zero-based attempt number for logging.
    """
    attempts = max_attempts if max_attempts is not None else settings.CAS_MAX_ATTEMPTS
    base_ms = base_delay_ms if base_delay_ms is not None else settings.CAS_BACKOFF_BASE_MS
    max_ms = max_delay_ms if max_delay_ms is not None else settings.CAS_BACKOFF_MAX_MS

    last_conflict: Optional[VersionConflictError] = None
    for attempt in range(attempts):
        try:
            return operation(attempt)
        except VersionConflictError as exc:
            last_conflict = exc
            if attempt + 1 >= attempts:
                break
            delay_ms = compute_backoff_ms(attempt, base_ms, max_ms)
            logger.info(
                f"[{label}] version conflict, retrying",
                extra={
                    "owner_id": exc.owner_id,
                    "attempt": attempt + 1,
                    "max_attempts": attempts,
                    "delay_ms": round(delay_ms, 1),
                },
            )
            sleep(delay_ms / 1000.0)

    logger.error(
        f"[{label}] version conflict retries exhausted",
        extra={"owner_id": getattr(last_conflict, "owner_id", None), "max_attempts": attempts},
    )
    raise TransientError(
        "Concurrent updates did not settle; retry later",
        details={"owner_id": getattr(last_conflict, "owner_id", None), "attempts": attempts},
    )
