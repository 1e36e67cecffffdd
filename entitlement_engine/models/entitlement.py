"""
entitlement_engine/models/entitlement.py

Entitlement record: the per-owner subscription state this engine owns.
"""

import math
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field


class SubscriptionStatus(str, Enum):
    NONE = "none"
    TRIAL = "trial"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELLED = "cancelled"
    EXPIRED = "expired"  # derived at read time, never written by this engine


class PlanTier(str, Enum):
    NONE = "none"
    STARTER = "starter"
    PROFESSIONAL = "professional"
    ENTERPRISE = "enterprise"


class BillingInterval(str, Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"
    LIFETIME = "lifetime"


# Max resources (initiatives) per tier; None means unlimited.
PLAN_RESOURCE_LIMITS = {
    PlanTier.NONE: None,
    PlanTier.STARTER: 3,
    PlanTier.PROFESSIONAL: None,
    PlanTier.ENTERPRISE: None,
}

DAY = timedelta(days=1)


def resource_limit_for(plan_tier: PlanTier) -> Optional[int]:
    return PLAN_RESOURCE_LIMITS.get(PlanTier(plan_tier))


UNLIMITED_RESOURCES = "Unlimited initiatives"
LIMITED_RESOURCES = "Up to 3 initiatives"
FULL_KPI = "Full KPI tracking"
BASIC_KPI = "Basic KPI tracking"
EVIDENCE = "Evidence management"
PUBLIC_REPORTS = "Public reports"
INTEGRATIONS = "All integrations"
PRIORITY_SUPPORT = "Priority support"

# Feature names per tier, with the ones the tier includes.
PLAN_FEATURES = {
    PlanTier.NONE: (
        [UNLIMITED_RESOURCES, FULL_KPI, EVIDENCE, PUBLIC_REPORTS, INTEGRATIONS, PRIORITY_SUPPORT],
        set(),
    ),
    PlanTier.STARTER: (
        [LIMITED_RESOURCES, BASIC_KPI, EVIDENCE, PUBLIC_REPORTS, INTEGRATIONS, PRIORITY_SUPPORT],
        {LIMITED_RESOURCES, BASIC_KPI, EVIDENCE},
    ),
    PlanTier.PROFESSIONAL: (
        [UNLIMITED_RESOURCES, FULL_KPI, EVIDENCE, PUBLIC_REPORTS, INTEGRATIONS, PRIORITY_SUPPORT],
        {UNLIMITED_RESOURCES, FULL_KPI, EVIDENCE, PUBLIC_REPORTS, INTEGRATIONS},
    ),
    PlanTier.ENTERPRISE: (
        [UNLIMITED_RESOURCES, FULL_KPI, EVIDENCE, PUBLIC_REPORTS, INTEGRATIONS, PRIORITY_SUPPORT],
        {UNLIMITED_RESOURCES, FULL_KPI, EVIDENCE, PUBLIC_REPORTS, INTEGRATIONS, PRIORITY_SUPPORT},
    ),
}


def features_for(plan_tier: PlanTier, status: SubscriptionStatus) -> List[Dict[str, Any]]:
    """Feature list shown to an owner. A running trial includes everything."""
    if SubscriptionStatus(status) == SubscriptionStatus.TRIAL:
        names, included = PLAN_FEATURES[PlanTier.ENTERPRISE]
    else:
        names, included = PLAN_FEATURES[PlanTier(plan_tier)]
    return [{"name": name, "included": name in included} for name in names]


class EntitlementRecord(BaseModel):
    """
    One owner's subscription state.

    Writes never mutate an instance; stores apply a dict of changes under a
    version check and hand back a new record.
    """
    model_config = ConfigDict(frozen=True, use_enum_values=False)

    id: str = Field(default_factory=lambda: str(uuid4()))
    owner_id: str
    status: SubscriptionStatus = SubscriptionStatus.NONE
    plan_tier: PlanTier = PlanTier.NONE

    trial_started_at: Optional[datetime] = None
    trial_ends_at: Optional[datetime] = None

    billing_customer_ref: Optional[str] = None
    billing_subscription_ref: Optional[str] = None
    billing_price_ref: Optional[str] = None
    billing_interval: Optional[BillingInterval] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    cancelled_at: Optional[datetime] = None
    grace_period_ends_at: Optional[datetime] = None

    resource_limit: Optional[int] = None
    last_event_at: Optional[datetime] = None

    version: int = 1
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def trial_expired(self, now: datetime) -> bool:
        return (
            self.status == SubscriptionStatus.TRIAL
            and self.trial_ends_at is not None
            and now > self.trial_ends_at
        )

    def effective_status(self, now: datetime) -> SubscriptionStatus:
        """Status as seen at `now`: an elapsed trial reads as expired."""
        if self.trial_expired(now):
            return SubscriptionStatus.EXPIRED
        return self.status

    def remaining_trial_days(self, now: datetime) -> Optional[int]:
        if self.effective_status(now) != SubscriptionStatus.TRIAL or self.trial_ends_at is None:
            return None
        remaining = (self.trial_ends_at - now) / DAY
        return max(0, math.ceil(remaining))

    def to_public_dict(self) -> dict:
        """JSON-safe view for API responses."""
        return self.model_dump(mode="json")
