"""
entitlement_engine/features/entitlements/evaluator.py

Access evaluation: may this owner use the product right now?

Read-only. Derived states (expired trial, lapsed grace, reached period end)
are computed from `now` and never written back.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from entitlement_engine.core.errors import NotFoundError
from entitlement_engine.core.timeutil import normalize_now
from entitlement_engine.features.entitlements.store import EntitlementStore
from entitlement_engine.features.team.inheritance import InheritanceLookup
from entitlement_engine.models.entitlement import EntitlementRecord, SubscriptionStatus

logger = logging.getLogger(__name__)


class AccessReason(str, Enum):
    NONE = "none"
    TRIAL_ACTIVE = "trial_active"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELLED = "cancelled"
    TRIAL_EXPIRED = "trial_expired"
    INHERITED = "inherited"
    ERROR = "error"


@dataclass(frozen=True)
class AccessDecision:
    has_access: bool
    reason: AccessReason
    subscription: Optional[EntitlementRecord] = None
    remaining_trial_days: Optional[int] = None
    inherited_from: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "has_access": self.has_access,
            "reason": self.reason.value,
            "subscription": self.subscription.to_public_dict() if self.subscription else None,
            "remaining_trial_days": self.remaining_trial_days,
            "inherited_from": self.inherited_from,
        }


def _load(owner_id: str, store: EntitlementStore) -> EntitlementRecord:
    try:
        return store.get(owner_id)
    except NotFoundError:
        return EntitlementRecord(owner_id=owner_id, version=0)


def own_access(record: EntitlementRecord, now: datetime) -> AccessDecision:
    status = record.effective_status(now)
    remaining = record.remaining_trial_days(now)

    if status == SubscriptionStatus.TRIAL:
        return AccessDecision(True, AccessReason.TRIAL_ACTIVE, record, remaining)

    if status == SubscriptionStatus.ACTIVE:
        if record.cancel_at_period_end and record.current_period_end is not None and now >= record.current_period_end:
            return AccessDecision(False, AccessReason.CANCELLED, record)
        return AccessDecision(True, AccessReason.ACTIVE, record)

    if status == SubscriptionStatus.PAST_DUE:
        in_grace = record.grace_period_ends_at is not None and now < record.grace_period_ends_at
        return AccessDecision(in_grace, AccessReason.PAST_DUE, record)

    if status == SubscriptionStatus.EXPIRED:
        return AccessDecision(False, AccessReason.TRIAL_EXPIRED, record)
    return AccessDecision(False, AccessReason(status.value), record)


def evaluate(
    owner_id: str,
    *,
    store: EntitlementStore,
    inheritance: Optional[InheritanceLookup] = None,
    now: Optional[datetime] = None,
) -> AccessDecision:
    ts = normalize_now(now)

    try:
        record = _load(owner_id, store)
    except Exception:
        logger.exception("[access] entitlement read failed; denying", extra={"owner_id": owner_id})
        return AccessDecision(False, AccessReason.ERROR)

    decision = own_access(record, ts)
    if decision.has_access or inheritance is None:
        return decision

    try:
        org_owner = inheritance.get_owner_for_inheritance(owner_id)
    except Exception as e:
        logger.warning(
            "[access] inheritance lookup failed; treating as none",
            extra={"owner_id": owner_id, "error": str(e)},
        )
        return decision
    if not org_owner or org_owner == owner_id:
        return decision

    try:
        parent = _load(org_owner, store)
    except Exception as e:
        logger.warning(
            "[access] inherited entitlement read failed",
            extra={"owner_id": owner_id, "org_owner_id": org_owner, "error": str(e)},
        )
        return decision

    # One hop only: the org owner's own record, never its inheritance.
    if own_access(parent, ts).has_access:
        return AccessDecision(
            True,
            AccessReason.INHERITED,
            record,
            decision.remaining_trial_days,
            inherited_from=org_owner,
        )
    return decision
