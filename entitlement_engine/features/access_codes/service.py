"""
entitlement_engine/features/access_codes/service.py

Access code redemption: bonus trial days granted by a pre-issued code.

Checks run in a fixed order so the caller always gets the most specific
reason: format, exists, not expired, not exhausted, not already redeemed,
then owner eligibility. The count increment, the redemption row and the
entitlement write commit together in the store.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from entitlement_engine.core.errors import (
    InvalidAccessCodeError,
    NotEligibleError,
    ValidationError,
)
from entitlement_engine.core.retry import retry_on_conflict
from entitlement_engine.core.timeutil import ensure_utc, normalize_now
from entitlement_engine.features.entitlements.store import EntitlementStore
from entitlement_engine.models.access_code import CODE_PATTERN, AccessCode, normalize_code
from entitlement_engine.models.entitlement import EntitlementRecord, SubscriptionStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RedemptionResult:
    subscription: EntitlementRecord
    days_granted: int


def _validated_code(code: Optional[str]) -> str:
    normalized = normalize_code(code or "")
    if not normalized:
        raise ValidationError("Access code is required")
    if not CODE_PATTERN.match(normalized):
        raise ValidationError("Access code format is invalid")
    return normalized


def _check_code(access_code: Optional[AccessCode], owner_id: str, now: datetime, store: EntitlementStore) -> AccessCode:
    if access_code is None or not access_code.is_active:
        raise InvalidAccessCodeError("Invalid access code", reason="not_found")
    if access_code.is_expired(now):
        raise InvalidAccessCodeError("This access code has expired", reason="expired")
    if access_code.is_exhausted:
        raise InvalidAccessCodeError("This access code has reached its maximum uses", reason="exhausted")
    if store.has_redeemed(access_code.code, owner_id):
        raise InvalidAccessCodeError("You have already redeemed this access code", reason="already_redeemed")
    return access_code


def _changes_for(record: EntitlementRecord, days: int, now: datetime) -> dict:
    status = record.effective_status(now)
    if status == SubscriptionStatus.NONE:
        return {
            "status": SubscriptionStatus.TRIAL,
            "trial_started_at": now,
            "trial_ends_at": now + timedelta(days=days),
            "resource_limit": None,
        }
    if status == SubscriptionStatus.TRIAL:
        # Additive: days stack on the running trial end.
        base = record.trial_ends_at or now
        return {"trial_ends_at": base + timedelta(days=days)}
    if status == SubscriptionStatus.EXPIRED:
        raise NotEligibleError("Your trial has already ended", current_status=status.value)
    raise NotEligibleError(
        "Access codes can only be applied to accounts without a paid subscription",
        current_status=status.value,
    )


def redeem(
    owner_id: str,
    code: str,
    *,
    store: EntitlementStore,
    now: Optional[datetime] = None,
) -> RedemptionResult:
    ts = normalize_now(now)
    normalized = _validated_code(code)

    def attempt(attempt_no: int) -> RedemptionResult:
        access_code = _check_code(store.get_access_code(normalized), owner_id, ts, store)
        record = store.get_or_create(owner_id, now=ts)
        changes = _changes_for(record, access_code.days_granted, ts)
        updated, _ = store.redeem_access_code(normalized, owner_id, record.version, changes, now=ts)
        return RedemptionResult(subscription=updated, days_granted=access_code.days_granted)

    try:
        result = retry_on_conflict(attempt, label="access_code")
    except (InvalidAccessCodeError, NotEligibleError) as exc:
        logger.info(
            "[access_code] redemption rejected",
            extra={"owner_id": owner_id, "code": normalized, "error_code": exc.code, "details": exc.details},
        )
        raise

    logger.info(
        "[access_code] redeemed",
        extra={
            "owner_id": owner_id,
            "code": normalized,
            "days_granted": result.days_granted,
            "trial_ends_at": result.subscription.trial_ends_at.isoformat(),
        },
    )
    return result


def create_access_code(
    code: str,
    days_granted: int,
    *,
    store: EntitlementStore,
    max_redemptions: Optional[int] = 1,
    expires_at: Optional[datetime] = None,
    description: Optional[str] = None,
    now: Optional[datetime] = None,
) -> AccessCode:
    normalized = _validated_code(code)
    if days_granted <= 0:
        raise ValidationError("days_granted must be positive")
    if max_redemptions is not None and max_redemptions <= 0:
        raise ValidationError("max_redemptions must be positive or unlimited")
    created = store.create_access_code(
        AccessCode(
            code=normalized,
            days_granted=days_granted,
            max_redemptions=max_redemptions,
            expires_at=ensure_utc(expires_at),
            description=description,
            created_at=normalize_now(now),
        )
    )
    logger.info(
        "[access_code] created",
        extra={"code": created.code, "days_granted": days_granted, "max_redemptions": max_redemptions},
    )
    return created
