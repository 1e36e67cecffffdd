"""
Billing API routes.

- POST /api/billing/webhook: Stripe webhook delivery

Checkout and portal sessions are created by the provider integration outside
this service; only the inbound side lives here.
"""
from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from starlette.concurrency import run_in_threadpool

from entitlement_engine.api.dependencies import get_notifier, get_provider, get_store
from entitlement_engine.core.errors import TransientError
from entitlement_engine.core.logging import log_event
from entitlement_engine.features.billing.provider import BillingProvider
from entitlement_engine.features.billing.service import process_webhook_event
from entitlement_engine.features.entitlements.store import EntitlementStore
from entitlement_engine.features.notifications.service import Notifier


router = APIRouter(prefix="/billing", tags=["billing"])


class WebhookResponse(BaseModel):
    received: bool
    event_id: str
    outcome: str


@router.post("/webhook", response_model=WebhookResponse)
async def billing_webhook(
    req: Request,
    provider: BillingProvider = Depends(get_provider),
    store: EntitlementStore = Depends(get_store),
    notifier: Notifier = Depends(get_notifier),
):
    """
    Handle a Stripe webhook.

    The raw body is needed byte-for-byte for signature verification.

    Returns:
        {"received": true, "event_id": "...", "outcome": "applied|duplicate|stale|..."}

    Errors:
        400: Invalid signature or payload
        500: Concurrent updates did not settle (provider will redeliver)
    """
    body = await req.body()
    headers = dict(req.headers)
    try:
        result = await run_in_threadpool(
            process_webhook_event, headers, body, provider=provider, store=store, notifier=notifier
        )
    except TransientError as exc:
        exc.status_code = 500
        raise

    log_event(
        "info",
        "billing.webhook.processed",
        owner_id=result.owner_id,
        event_type="billing_webhook",
        extra={"event_id": result.event_id, "outcome": result.outcome.value},
    )
    return WebhookResponse(received=True, event_id=result.event_id, outcome=result.outcome.value)
