"""
entitlement_engine/features/billing/reconciler.py

Applies normalized billing events to entitlement records.

Guarantees:
- Idempotent by event id: the ledger row and the mutation commit together,
  a replay returns `duplicate` and changes nothing.
- Out-of-order safe: an event older than the record's `last_event_at`
  watermark is recorded as `stale` and never mutates.
- A superseded subscription cannot touch its replacement: events whose
  subscription ref differs from the record's are `ignored`.
- `expired` is never written; trial expiry is derived at read time.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Tuple

from entitlement_engine.core.config import Settings, settings
from entitlement_engine.core.errors import DuplicateEventError, NotFoundError
from entitlement_engine.core.retry import retry_on_conflict
from entitlement_engine.core.timeutil import ensure_utc, normalize_now
from entitlement_engine.features.entitlements.store import EntitlementStore, WebhookLogEntry
from entitlement_engine.features.notifications.service import (
    NOTIFY_ACTIVATED,
    NOTIFY_CANCELLED,
    NOTIFY_PAST_DUE,
    Notifier,
)
from entitlement_engine.models.billing_event import (
    BillingEvent,
    CheckoutCompleted,
    EventOutcome,
    InvoicePaymentFailed,
    ProviderSubscriptionStatus,
    SubscriptionDeleted,
    SubscriptionUpdated,
    Unrecognized,
)
from entitlement_engine.models.entitlement import (
    EntitlementRecord,
    PlanTier,
    SubscriptionStatus,
    resource_limit_for,
)

logger = logging.getLogger(__name__)

_ACTIVE_PROVIDER_STATUSES = {ProviderSubscriptionStatus.ACTIVE, ProviderSubscriptionStatus.TRIALING}
_DELINQUENT_PROVIDER_STATUSES = {ProviderSubscriptionStatus.PAST_DUE, ProviderSubscriptionStatus.UNPAID}

_CHECKOUT_FROM = {
    SubscriptionStatus.NONE,
    SubscriptionStatus.TRIAL,
    SubscriptionStatus.CANCELLED,
    SubscriptionStatus.EXPIRED,
}
_DELETABLE_FROM = {SubscriptionStatus.TRIAL, SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE}

_NOTIFY_ON_ENTER = {
    SubscriptionStatus.ACTIVE: NOTIFY_ACTIVATED,
    SubscriptionStatus.PAST_DUE: NOTIFY_PAST_DUE,
    SubscriptionStatus.CANCELLED: NOTIFY_CANCELLED,
}


@dataclass(frozen=True)
class ReconcileResult:
    outcome: EventOutcome
    event_id: str
    owner_id: Optional[str] = None
    record: Optional[EntitlementRecord] = None


def plan_tier_for_price(price_ref: Optional[str], settings_obj: Optional[Settings] = None) -> PlanTier:
    cfg = settings_obj or settings
    price_map = {
        cfg.STRIPE_PRICE_STARTER: PlanTier.STARTER,
        cfg.STRIPE_PRICE_PROFESSIONAL: PlanTier.PROFESSIONAL,
        cfg.STRIPE_PRICE_ENTERPRISE: PlanTier.ENTERPRISE,
    }
    if not price_ref:
        return PlanTier.NONE
    return price_map.get(price_ref, PlanTier.NONE)


def _price_changes(event, cfg: Settings) -> Dict[str, Any]:
    if not event.price_ref:
        return {}
    tier = plan_tier_for_price(event.price_ref, cfg)
    changes = {
        "billing_price_ref": event.price_ref,
        "plan_tier": tier,
        "resource_limit": resource_limit_for(tier),
    }
    if event.billing_interval is not None:
        changes["billing_interval"] = event.billing_interval
    return changes


def _period_changes(event) -> Dict[str, Any]:
    changes = {}
    if event.current_period_start is not None:
        changes["current_period_start"] = ensure_utc(event.current_period_start)
    if event.current_period_end is not None:
        changes["current_period_end"] = ensure_utc(event.current_period_end)
    return changes


def _enter_past_due(occurred_at: datetime, cfg: Settings) -> Dict[str, Any]:
    return {
        "status": SubscriptionStatus.PAST_DUE,
        "grace_period_ends_at": occurred_at + timedelta(days=cfg.PAST_DUE_GRACE_DAYS),
    }


def plan_transition(
    record: EntitlementRecord,
    event: BillingEvent,
    occurred_at: datetime,
    settings_obj: Optional[Settings] = None,
) -> Optional[Dict[str, Any]]:
    """Return the field changes for `event` applied to `record`, or None when
    the (status, event) pair is not a legal transition."""
    cfg = settings_obj or settings
    status = record.status

    if isinstance(event, CheckoutCompleted):
        if status not in _CHECKOUT_FROM:
            return None
        changes = {
            "status": SubscriptionStatus.ACTIVE,
            "billing_customer_ref": event.customer_ref or record.billing_customer_ref,
            "billing_subscription_ref": event.subscription_ref,
            "plan_tier": PlanTier.NONE,
            "resource_limit": None,
            "billing_price_ref": None,
            "billing_interval": None,
            "current_period_start": None,
            "current_period_end": None,
            "cancel_at_period_end": False,
            "cancelled_at": None,
            "grace_period_ends_at": None,
        }
        changes.update(_price_changes(event, cfg))
        changes.update(_period_changes(event))
        return changes

    if isinstance(event, SubscriptionUpdated):
        refresh = _period_changes(event)
        if event.provider_status in _ACTIVE_PROVIDER_STATUSES:
            if status not in (SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE):
                return None
            refresh.update(_price_changes(event, cfg))
            refresh.update(
                status=SubscriptionStatus.ACTIVE,
                cancel_at_period_end=event.cancel_at_period_end,
                grace_period_ends_at=None,
            )
            return refresh
        if event.provider_status in _DELINQUENT_PROVIDER_STATUSES:
            if status == SubscriptionStatus.ACTIVE:
                refresh.update(_enter_past_due(occurred_at, cfg))
                return refresh
            if status == SubscriptionStatus.PAST_DUE:
                return refresh
        return None

    if isinstance(event, SubscriptionDeleted):
        if status not in _DELETABLE_FROM:
            return None
        return {
            "status": SubscriptionStatus.CANCELLED,
            "cancelled_at": ensure_utc(event.cancelled_at) or occurred_at,
            "cancel_at_period_end": False,
            "grace_period_ends_at": None,
        }

    if isinstance(event, InvoicePaymentFailed):
        if status != SubscriptionStatus.ACTIVE:
            return None
        return _enter_past_due(occurred_at, cfg)

    return None


def _resolve_owner(event: BillingEvent, store: EntitlementStore) -> Optional[str]:
    if event.owner_id:
        return event.owner_id
    if event.subscription_ref:
        owner_id = store.find_owner_by_subscription_ref(event.subscription_ref)
        if owner_id:
            return owner_id
    if event.customer_ref:
        return store.find_owner_by_customer_ref(event.customer_ref)
    return None


def _subscription_mismatch(record: EntitlementRecord, event: BillingEvent) -> bool:
    if isinstance(event, CheckoutCompleted):
        return False
    return bool(
        event.subscription_ref
        and record.billing_subscription_ref
        and event.subscription_ref != record.billing_subscription_ref
    )


def _log_entry(event: BillingEvent, outcome: EventOutcome, owner_id: Optional[str], occurred_at, ts) -> WebhookLogEntry:
    return WebhookLogEntry(
        event_id=event.event_id,
        event_type=event.event_type,
        outcome=outcome.value,
        owner_id=owner_id,
        occurred_at=occurred_at,
        processed_at=ts,
    )


def _finish_without_mutation(
    event: BillingEvent,
    outcome: EventOutcome,
    owner_id: Optional[str],
    record: Optional[EntitlementRecord],
    store: EntitlementStore,
    occurred_at: datetime,
    ts: datetime,
) -> ReconcileResult:
    if not store.record_webhook_event(_log_entry(event, outcome, owner_id, occurred_at, ts)):
        return ReconcileResult(EventOutcome.DUPLICATE, event.event_id, owner_id, record)
    return ReconcileResult(outcome, event.event_id, owner_id, record)


def _notify(notifier: Optional[Notifier], before: EntitlementRecord, after: EntitlementRecord, event: BillingEvent):
    if notifier is None or before.status == after.status:
        return
    kind = _NOTIFY_ON_ENTER.get(after.status)
    if kind is None:
        return
    try:
        notifier.notify(kind, after.owner_id, {"event_id": event.event_id, "plan_tier": after.plan_tier.value})
    except Exception:
        logger.exception(
            "[reconciler] notification enqueue failed",
            extra={"owner_id": after.owner_id, "event_id": event.event_id, "kind": kind},
        )


def reconcile(
    event: BillingEvent,
    *,
    store: EntitlementStore,
    now: Optional[datetime] = None,
    notifier: Optional[Notifier] = None,
    settings_obj: Optional[Settings] = None,
) -> ReconcileResult:
    cfg = settings_obj or settings
    ts = normalize_now(now)
    occurred_at = ensure_utc(event.occurred_at) or ts
    log_extra = {"event_id": event.event_id, "event_type": event.event_type}

    if store.has_webhook_event(event.event_id):
        logger.info("[reconciler] duplicate event skipped", extra=log_extra)
        return ReconcileResult(EventOutcome.DUPLICATE, event.event_id)

    if isinstance(event, Unrecognized):
        logger.info("[reconciler] unrecognized event recorded", extra=log_extra)
        return _finish_without_mutation(event, EventOutcome.UNRECOGNIZED, event.owner_id, None, store, occurred_at, ts)

    owner_id = _resolve_owner(event, store)
    if owner_id is None:
        logger.warning("[reconciler] event could not be matched to an owner", extra=log_extra)
        return _finish_without_mutation(event, EventOutcome.UNMATCHED, None, None, store, occurred_at, ts)
    log_extra["owner_id"] = owner_id

    def attempt(attempt_no: int) -> Tuple[ReconcileResult, Optional[EntitlementRecord]]:
        try:
            record = store.get(owner_id)
        except NotFoundError:
            if not isinstance(event, CheckoutCompleted):
                return ReconcileResult(EventOutcome.IGNORED, event.event_id, owner_id), None
            record = store.create_default(owner_id, now=ts)

        if record.last_event_at is not None and occurred_at < record.last_event_at:
            return ReconcileResult(EventOutcome.STALE, event.event_id, owner_id, record), None
        if _subscription_mismatch(record, event):
            return ReconcileResult(EventOutcome.IGNORED, event.event_id, owner_id, record), None

        changes = plan_transition(record, event, occurred_at, cfg)
        if changes is None:
            return ReconcileResult(EventOutcome.IGNORED, event.event_id, owner_id, record), None

        changes["last_event_at"] = occurred_at
        updated = store.compare_and_swap(
            owner_id,
            record.version,
            changes,
            now=ts,
            webhook_event=_log_entry(event, EventOutcome.APPLIED, owner_id, occurred_at, ts),
        )
        return ReconcileResult(EventOutcome.APPLIED, event.event_id, owner_id, updated), record

    try:
        result, before = retry_on_conflict(
            attempt,
            max_attempts=cfg.CAS_MAX_ATTEMPTS,
            base_delay_ms=cfg.CAS_BACKOFF_BASE_MS,
            max_delay_ms=cfg.CAS_BACKOFF_MAX_MS,
            label="reconciler",
        )
    except DuplicateEventError:
        logger.info("[reconciler] duplicate event lost the ledger race", extra=log_extra)
        return ReconcileResult(EventOutcome.DUPLICATE, event.event_id, owner_id)

    if result.outcome == EventOutcome.APPLIED:
        logger.info(
            "[reconciler] event applied",
            extra={**log_extra, "status": result.record.status.value, "version": result.record.version},
        )
        _notify(notifier, before, result.record, event)
        return result

    current_status = result.record.status.value if result.record else None
    if result.outcome == EventOutcome.STALE:
        logger.info(
            "[reconciler] stale event ignored",
            extra={**log_extra, "occurred_at": occurred_at.isoformat(), "last_event_at": result.record.last_event_at.isoformat()},
        )
    else:
        logger.warning(
            "[reconciler] event ignored: no transition",
            extra={**log_extra, "current_status": current_status},
        )
    return _finish_without_mutation(event, result.outcome, owner_id, result.record, store, occurred_at, ts)
