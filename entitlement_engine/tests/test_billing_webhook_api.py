"""End-to-end webhook delivery through the HTTP route."""
from fastapi.testclient import TestClient

from entitlement_engine.core.config import settings
from entitlement_engine.core.timeutil import utc_now
from entitlement_engine.tests.mocks import ConflictingStore, stripe_event

WEBHOOK_URL = "/api/billing/webhook"


def _checkout(event_id="evt_checkout", owner_id="owner-1"):
    return stripe_event(
        event_id,
        "checkout.session.completed",
        {"client_reference_id": owner_id, "customer": "cus_1", "subscription": "sub_1"},
        utc_now(),
    )


def test_signed_checkout_activates_subscription(client, signed_webhook, notifier):
    body, headers = signed_webhook(_checkout())

    resp = client.post(WEBHOOK_URL, content=body, headers=headers)

    assert resp.status_code == 200
    assert resp.json() == {"received": True, "event_id": "evt_checkout", "outcome": "applied"}
    status = client.get("/api/subscription/status", headers={"X-User-Id": "owner-1"}).json()
    assert status["has_access"] is True
    assert status["status"] == "active"
    assert notifier.notify.called


def test_redelivery_is_acknowledged_as_duplicate(client, signed_webhook, memory_store):
    body, headers = signed_webhook(_checkout())
    client.post(WEBHOOK_URL, content=body, headers=headers)
    version = memory_store.get("owner-1").version

    resp = client.post(WEBHOOK_URL, content=body, headers=headers)

    assert resp.status_code == 200
    assert resp.json()["outcome"] == "duplicate"
    assert memory_store.get("owner-1").version == version


def test_bad_signature_is_rejected_without_state_change(client, signed_webhook, memory_store):
    body, headers = signed_webhook(_checkout(), secret="whsec_wrong")

    resp = client.post(WEBHOOK_URL, content=body, headers=headers)

    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "signature_invalid"
    assert list(memory_store.iter_records()) == []
    assert memory_store.webhook_events() == []


def test_unrecognized_event_is_acknowledged(client, signed_webhook):
    body, headers = signed_webhook(stripe_event("evt_other", "customer.created", {"id": "cus_1"}, utc_now()))

    resp = client.post(WEBHOOK_URL, content=body, headers=headers)

    assert resp.status_code == 200
    assert resp.json()["outcome"] == "unrecognized"


def test_unsettled_conflicts_return_500_for_redelivery(app_factory, memory_store, signed_webhook, monkeypatch):
    monkeypatch.setattr(settings, "CAS_BACKOFF_BASE_MS", 1)
    monkeypatch.setattr(settings, "CAS_BACKOFF_MAX_MS", 2)
    client = TestClient(app_factory(store=ConflictingStore(memory_store, conflicts=100)))
    body, headers = signed_webhook(_checkout())

    resp = client.post(WEBHOOK_URL, content=body, headers=headers)

    assert resp.status_code == 500
    assert resp.json()["error"]["code"] == "transient_failure"
    assert not memory_store.has_webhook_event("evt_checkout")
