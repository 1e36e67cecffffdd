"""
entitlement_engine/features/usage/service.py

Usage gate: compares a live resource count (owned by the caller) against the
limit stored on the owner's entitlement record.

Read-only; safe to call without coordination.
"""

from dataclasses import dataclass
from typing import Optional

from entitlement_engine.core.errors import NotFoundError, ValidationError
from entitlement_engine.features.entitlements.store import EntitlementStore


@dataclass(frozen=True)
class UsageCheck:
    within_limit: bool
    limit: Optional[int]
    used: int

    @property
    def remaining(self) -> Optional[int]:
        if self.limit is None:
            return None
        return max(0, self.limit - self.used)

    def to_dict(self) -> dict:
        return {
            "within_limit": self.within_limit,
            "limit": self.limit,
            "used": self.used,
            "remaining": self.remaining,
        }


def check_limit(owner_id: str, current_resource_count: int, *, store: EntitlementStore) -> UsageCheck:
    """
    Args:
        owner_id: Owner whose plan limit applies
        current_resource_count: Resources the owner currently holds

    Returns:
        UsageCheck; `limit=None` means unlimited and is always within limit
    """
    if current_resource_count is None or current_resource_count < 0:
        raise ValidationError("current_resource_count must be a non-negative integer")

    try:
        limit = store.get(owner_id).resource_limit
    except NotFoundError:
        limit = None

    within = limit is None or current_resource_count < limit
    return UsageCheck(within_limit=within, limit=limit, used=current_resource_count)
