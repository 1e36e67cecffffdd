"""
Stripe billing provider implementation.

Verifies the `Stripe-Signature` header and maps the four Stripe event types
the engine acts on onto BillingEvent variants. No API calls are made: owner
and subscription identity come from the event payload itself.
"""
import json
import logging
from typing import Any, Dict, Mapping, Optional

import stripe

from entitlement_engine.core.config import Settings, settings
from entitlement_engine.core.errors import SignatureInvalidError
from entitlement_engine.core.timeutil import from_unix
from entitlement_engine.models.billing_event import (
    BillingEvent,
    CheckoutCompleted,
    InvoicePaymentFailed,
    ProviderSubscriptionStatus,
    SubscriptionDeleted,
    SubscriptionUpdated,
    Unrecognized,
)
from entitlement_engine.models.entitlement import BillingInterval

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "stripe-signature"


def _ref(value: Any) -> Optional[str]:
    """Stripe fields may hold an id string or an expanded object."""
    if value is None:
        return None
    if isinstance(value, dict):
        return value.get("id")
    return str(value)


def _first_item(data: Dict[str, Any]) -> Dict[str, Any]:
    items = (data.get("items") or {}).get("data") or []
    return items[0] if items else {}


_INTERVALS = {"month": BillingInterval.MONTHLY, "year": BillingInterval.YEARLY}


def _billing_interval(price: Dict[str, Any]) -> Optional[BillingInterval]:
    if price.get("type") == "one_time":
        return BillingInterval.LIFETIME
    return _INTERVALS.get((price.get("recurring") or {}).get("interval"))


class StripeProvider:
    """Stripe implementation of the BillingProvider protocol."""

    def __init__(
        self,
        webhook_secret: Optional[str] = None,
        tolerance_seconds: Optional[int] = None,
        settings_obj: Optional[Settings] = None,
    ):
        cfg = settings_obj or settings
        self.webhook_secret = webhook_secret or cfg.STRIPE_WEBHOOK_SECRET
        self.tolerance_seconds = (
            tolerance_seconds if tolerance_seconds is not None else cfg.STRIPE_WEBHOOK_TOLERANCE_SECONDS
        )

    def parse_webhook(self, headers: Mapping[str, str], body: bytes) -> BillingEvent:
        """Verify Stripe webhook signature and parse event."""
        if not self.webhook_secret:
            raise SignatureInvalidError("Webhook secret not configured")

        lowered = {str(k).lower(): v for k, v in headers.items()}
        sig_header = lowered.get(SIGNATURE_HEADER)
        if not sig_header:
            raise SignatureInvalidError("Missing stripe-signature header")

        try:
            payload = body.decode("utf-8") if isinstance(body, (bytes, bytearray)) else str(body)
            stripe.WebhookSignature.verify_header(payload, sig_header, self.webhook_secret, self.tolerance_seconds)
            event = json.loads(payload)
        except stripe.SignatureVerificationError as e:
            raise SignatureInvalidError(f"Invalid signature: {e}") from None
        except (UnicodeDecodeError, ValueError) as e:
            raise SignatureInvalidError(f"Invalid payload: {e}") from None

        if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
            raise SignatureInvalidError("Invalid payload: missing event id or type")
        return self._parse_event(event)

    def _parse_event(self, event: Dict[str, Any]) -> BillingEvent:
        """Map a verified Stripe event onto a BillingEvent variant."""
        event_type = event["type"]
        data = (event.get("data") or {}).get("object") or {}
        metadata = data.get("metadata") or {}
        common = {
            "event_id": event["id"],
            "event_type": event_type,
            "occurred_at": from_unix(event.get("created")),
            "owner_id": data.get("client_reference_id") or metadata.get("owner_id"),
            "customer_ref": _ref(data.get("customer")),
        }

        if event_type == "checkout.session.completed":
            subscription = data.get("subscription")
            sub_data = subscription if isinstance(subscription, dict) else {}
            item = _first_item(sub_data)
            price_ref = _ref((item.get("price") or {}).get("id")) or metadata.get("price_id")
            billing_interval = _billing_interval(item.get("price") or {})
            return CheckoutCompleted(
                subscription_ref=_ref(subscription),
                price_ref=price_ref,
                billing_interval=billing_interval,
                current_period_start=from_unix(sub_data.get("current_period_start") or item.get("current_period_start")),
                current_period_end=from_unix(sub_data.get("current_period_end") or item.get("current_period_end")),
                **common,
            )

        if event_type == "customer.subscription.updated":
            item = _first_item(data)
            return SubscriptionUpdated(
                subscription_ref=data.get("id"),
                provider_status=ProviderSubscriptionStatus.parse(data.get("status")),
                price_ref=_ref((item.get("price") or {}).get("id")),
                billing_interval=_billing_interval(item.get("price") or {}),
                current_period_start=from_unix(data.get("current_period_start") or item.get("current_period_start")),
                current_period_end=from_unix(data.get("current_period_end") or item.get("current_period_end")),
                cancel_at_period_end=bool(data.get("cancel_at_period_end", False)),
                **common,
            )

        if event_type == "customer.subscription.deleted":
            return SubscriptionDeleted(
                subscription_ref=data.get("id"),
                cancelled_at=from_unix(data.get("canceled_at") or data.get("ended_at")),
                **common,
            )

        if event_type == "invoice.payment_failed":
            subscription_ref = _ref(data.get("subscription"))
            if subscription_ref is None:
                details = (data.get("parent") or {}).get("subscription_details") or {}
                subscription_ref = _ref(details.get("subscription"))
                common["owner_id"] = common["owner_id"] or (details.get("metadata") or {}).get("owner_id")
            return InvoicePaymentFailed(
                subscription_ref=subscription_ref,
                attempt_count=data.get("attempt_count"),
                **common,
            )

        logger.debug("[stripe] unrecognized event type", extra={"event_id": event["id"], "event_type": event_type})
        return Unrecognized(raw=event, **common)
