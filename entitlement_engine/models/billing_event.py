"""
entitlement_engine/models/billing_event.py

Normalized billing webhook events.

Provider payloads are parsed into a closed set of variants; anything the
engine does not act on becomes `Unrecognized` so the no-op path is explicit.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Union

from entitlement_engine.models.entitlement import BillingInterval


class ProviderSubscriptionStatus(str, Enum):
    """Subscription status as reported by the provider (subset we act on)."""
    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    UNPAID = "unpaid"
    CANCELED = "canceled"
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    PAUSED = "paused"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: Optional[str]) -> "ProviderSubscriptionStatus":
        try:
            return cls((value or "").lower())
        except ValueError:
            return cls.UNKNOWN


@dataclass(frozen=True, kw_only=True)
class BillingEventBase:
    event_id: str
    event_type: str
    occurred_at: datetime
    owner_id: Optional[str] = None
    customer_ref: Optional[str] = None
    subscription_ref: Optional[str] = None


@dataclass(frozen=True, kw_only=True)
class CheckoutCompleted(BillingEventBase):
    price_ref: Optional[str] = None
    billing_interval: Optional[BillingInterval] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None


@dataclass(frozen=True, kw_only=True)
class SubscriptionUpdated(BillingEventBase):
    provider_status: ProviderSubscriptionStatus = ProviderSubscriptionStatus.UNKNOWN
    price_ref: Optional[str] = None
    billing_interval: Optional[BillingInterval] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False


@dataclass(frozen=True, kw_only=True)
class SubscriptionDeleted(BillingEventBase):
    cancelled_at: Optional[datetime] = None


@dataclass(frozen=True, kw_only=True)
class InvoicePaymentFailed(BillingEventBase):
    attempt_count: Optional[int] = None


@dataclass(frozen=True, kw_only=True)
class Unrecognized(BillingEventBase):
    raw: Dict[str, Any] = field(default_factory=dict)


BillingEvent = Union[
    CheckoutCompleted,
    SubscriptionUpdated,
    SubscriptionDeleted,
    InvoicePaymentFailed,
    Unrecognized,
]


class EventOutcome(str, Enum):
    """What the reconciler did with an event; stored in the ledger."""
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    STALE = "stale"
    IGNORED = "ignored"
    UNRECOGNIZED = "unrecognized"
    UNMATCHED = "unmatched"
