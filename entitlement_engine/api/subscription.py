"""
Subscription API routes.

- GET  /api/subscription/status: access decision for the caller
- GET  /api/subscription/details: stored record, trial days left and plan features
- POST /api/subscription/start-trial: start the one-time trial
- POST /api/subscription/redeem-code: apply an access code
- GET  /api/subscription/usage: compare a resource count against the plan limit
"""
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from entitlement_engine.api.dependencies import get_inheritance, get_owner_id, get_store
from entitlement_engine.core.errors import AlreadyUsedOrActiveError, NotFoundError
from entitlement_engine.core.timeutil import utc_now
from entitlement_engine.features.access_codes.service import redeem
from entitlement_engine.features.entitlements.evaluator import evaluate
from entitlement_engine.features.entitlements.store import EntitlementStore
from entitlement_engine.features.team.inheritance import InheritanceLookup
from entitlement_engine.features.trials.service import start_trial
from entitlement_engine.features.usage.service import check_limit
from entitlement_engine.models.entitlement import EntitlementRecord, SubscriptionStatus, features_for

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/subscription", tags=["subscription"])


class RedeemCodeRequest(BaseModel):
    code: str


class StatusResponse(BaseModel):
    has_access: bool
    reason: str
    status: str
    remaining_trial_days: Optional[int] = None
    inherited_from: Optional[str] = None
    subscription: Optional[Dict[str, Any]] = None


class FeatureItem(BaseModel):
    name: str
    included: bool


class DetailsResponse(BaseModel):
    subscription: Dict[str, Any]
    status: str
    remaining_trial_days: Optional[int] = None
    features: List[FeatureItem]


class TrialResponse(BaseModel):
    subscription: Dict[str, Any]
    already_started: bool = False


class RedeemCodeResponse(BaseModel):
    subscription: Dict[str, Any]
    days_granted: int


class UsageResponse(BaseModel):
    within_limit: bool
    limit: Optional[int] = None
    used: int
    remaining: Optional[int] = None


@router.get("/status", response_model=StatusResponse)
def subscription_status(
    owner_id: str = Depends(get_owner_id),
    store: EntitlementStore = Depends(get_store),
    inheritance: InheritanceLookup = Depends(get_inheritance),
):
    now = utc_now()
    decision = evaluate(owner_id, store=store, inheritance=inheritance, now=now)
    body = decision.to_dict()
    record = decision.subscription
    body["status"] = record.effective_status(now).value if record else decision.reason.value
    return body


@router.get("/details", response_model=DetailsResponse)
def subscription_details(
    owner_id: str = Depends(get_owner_id),
    store: EntitlementStore = Depends(get_store),
):
    """Read-only: an owner with no record gets the default view and nothing is written."""
    now = utc_now()
    try:
        record = store.get(owner_id)
    except NotFoundError:
        record = EntitlementRecord(owner_id=owner_id, version=0)
    status = record.effective_status(now)
    return DetailsResponse(
        subscription=record.to_public_dict(),
        status=status.value,
        remaining_trial_days=record.remaining_trial_days(now),
        features=features_for(record.plan_tier, status),
    )


@router.post("/start-trial", response_model=TrialResponse)
def start_trial_route(
    owner_id: str = Depends(get_owner_id),
    store: EntitlementStore = Depends(get_store),
):
    """
    Start the caller's trial.

    A repeat request while the trial is running is answered as success with
    `already_started=true`; every other non-`none` status is a 409.
    """
    try:
        record = start_trial(owner_id, store=store)
    except AlreadyUsedOrActiveError as exc:
        if exc.current_status != SubscriptionStatus.TRIAL.value:
            raise
        return TrialResponse(subscription=store.get(owner_id).to_public_dict(), already_started=True)
    return TrialResponse(subscription=record.to_public_dict())


@router.post("/redeem-code", response_model=RedeemCodeResponse)
def redeem_code_route(
    request: RedeemCodeRequest,
    owner_id: str = Depends(get_owner_id),
    store: EntitlementStore = Depends(get_store),
):
    result = redeem(owner_id, request.code, store=store)
    return RedeemCodeResponse(subscription=result.subscription.to_public_dict(), days_granted=result.days_granted)


@router.get("/usage", response_model=UsageResponse)
def usage_route(
    current_count: int = Query(...),
    owner_id: str = Depends(get_owner_id),
    store: EntitlementStore = Depends(get_store),
):
    return check_limit(owner_id, current_count, store=store).to_dict()
