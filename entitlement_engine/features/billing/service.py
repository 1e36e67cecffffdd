"""
Billing webhook orchestrator.

Glues provider verification to reconciliation. Signature failures are raised
before any state is read or written; everything after parsing is delegated
to the reconciler.
"""
import logging
from datetime import datetime
from typing import Mapping, Optional

from entitlement_engine.core.config import Settings
from entitlement_engine.features.billing.provider import BillingProvider
from entitlement_engine.features.billing.reconciler import ReconcileResult, reconcile
from entitlement_engine.features.entitlements.store import EntitlementStore
from entitlement_engine.features.notifications.service import Notifier

logger = logging.getLogger(__name__)


def process_webhook_event(
    headers: Mapping[str, str],
    body: bytes,
    *,
    provider: BillingProvider,
    store: EntitlementStore,
    notifier: Optional[Notifier] = None,
    now: Optional[datetime] = None,
    settings_obj: Optional[Settings] = None,
) -> ReconcileResult:
    """
    Verify, parse and reconcile one webhook delivery.

    Raises:
        SignatureInvalidError: bad or missing signature, or unparseable body
        TransientError: compare-and-swap retries exhausted (provider should redeliver)
    """
    event = provider.parse_webhook(headers, body)
    logger.info(
        "[billing] webhook received",
        extra={"event_id": event.event_id, "event_type": event.event_type},
    )
    return reconcile(event, store=store, now=now, notifier=notifier, settings_obj=settings_obj)
