"""
entitlement_engine/features/trials/service.py

Trial activation. A trial can be started exactly once per owner, from the
`none` status only.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from entitlement_engine.core.config import settings
from entitlement_engine.core.errors import AlreadyUsedOrActiveError
from entitlement_engine.core.retry import retry_on_conflict
from entitlement_engine.core.timeutil import normalize_now
from entitlement_engine.features.entitlements.store import EntitlementStore
from entitlement_engine.models.entitlement import EntitlementRecord, SubscriptionStatus

logger = logging.getLogger(__name__)

_PRECONDITION_MESSAGES = {
    SubscriptionStatus.TRIAL: "Trial is already active",
    SubscriptionStatus.ACTIVE: "You already have an active subscription",
    SubscriptionStatus.PAST_DUE: "Please update your payment method",
    SubscriptionStatus.CANCELLED: "Trial has already been used",
    SubscriptionStatus.EXPIRED: "Trial has already been used",
}


def _reject(record: EntitlementRecord, now: datetime) -> AlreadyUsedOrActiveError:
    current = record.effective_status(now)
    return AlreadyUsedOrActiveError(
        _PRECONDITION_MESSAGES.get(current, "Trial cannot be started"),
        current_status=current.value,
    )


def start_trial(
    owner_id: str,
    *,
    store: EntitlementStore,
    now: Optional[datetime] = None,
    duration_days: Optional[int] = None,
) -> EntitlementRecord:
    """Move an owner from `none` to a trial of fixed length.

    Raises AlreadyUsedOrActiveError for any other status. A concurrent
    duplicate loses the compare-and-swap, re-reads, and then fails the
    precondition with status `trial`.
    """
    ts = normalize_now(now)
    days = duration_days if duration_days is not None else settings.TRIAL_DURATION_DAYS

    def attempt(attempt_no: int) -> EntitlementRecord:
        record = store.get_or_create(owner_id, now=ts)
        if record.status != SubscriptionStatus.NONE:
            raise _reject(record, ts)
        return store.compare_and_swap(
            owner_id,
            record.version,
            {
                "status": SubscriptionStatus.TRIAL,
                "trial_started_at": ts,
                "trial_ends_at": ts + timedelta(days=days),
                "resource_limit": None,
            },
            now=ts,
        )

    try:
        record = retry_on_conflict(attempt, label="trial")
    except AlreadyUsedOrActiveError as exc:
        logger.info(
            "[trial] start rejected",
            extra={"owner_id": owner_id, "current_status": exc.current_status},
        )
        raise

    logger.info(
        "[trial] started",
        extra={"owner_id": owner_id, "trial_ends_at": record.trial_ends_at.isoformat(), "version": record.version},
    )
    return record
