"""
Billing provider protocol.

The reconciler only ever sees normalized BillingEvent variants; provider
specifics (signature scheme, payload shape) stay behind this interface so
the provider can be swapped without touching entitlement logic.
"""
from typing import Mapping, Protocol

from entitlement_engine.models.billing_event import BillingEvent


class BillingProvider(Protocol):
    """
    Protocol for billing providers.

    Checkout, portal and customer creation are pass-through calls handled
    outside this engine; only inbound webhooks are modelled here.
    """

    def parse_webhook(self, headers: Mapping[str, str], body: bytes) -> BillingEvent:
        """
        Verify the webhook signature and parse the event.

        Args:
            headers: HTTP headers (must include the signature header)
            body: Raw webhook body, byte-for-byte as received

        Returns:
            One BillingEvent variant; unknown event types map to Unrecognized

        Raises:
            SignatureInvalidError: If the signature, timestamp or payload is invalid
        """
        ...
