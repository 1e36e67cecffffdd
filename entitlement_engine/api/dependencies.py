"""Request-scoped collaborators pulled from app.state."""
from typing import Optional

from fastapi import Header, Request

from entitlement_engine.core.errors import UnauthenticatedError
from entitlement_engine.features.billing.provider import BillingProvider
from entitlement_engine.features.entitlements.store import EntitlementStore
from entitlement_engine.features.notifications.service import Notifier
from entitlement_engine.features.team.inheritance import InheritanceLookup


def get_owner_id(x_user_id: Optional[str] = Header(None)) -> str:
    """Caller identity is established upstream and forwarded as X-User-Id."""
    owner_id = (x_user_id or "").strip()
    if not owner_id:
        raise UnauthenticatedError("Missing X-User-Id header")
    return owner_id


def get_store(request: Request) -> EntitlementStore:
    return request.app.state.store


def get_provider(request: Request) -> BillingProvider:
    return request.app.state.provider


def get_inheritance(request: Request) -> InheritanceLookup:
    return request.app.state.inheritance


def get_notifier(request: Request) -> Notifier:
    return request.app.state.notifier
