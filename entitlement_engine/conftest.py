# entitlement_engine/conftest.py
import json
from datetime import datetime, timezone
from unittest.mock import Mock

import pytest

from entitlement_engine.core.database import get_session_factory, init_engine, reset_database
from entitlement_engine.features.entitlements.store import InMemoryEntitlementStore, SqlEntitlementStore
from entitlement_engine.tests.mocks import WEBHOOK_SECRET, BarrierStore, sign_payload


@pytest.fixture
def fixed_now():
    """A fixed 'now' so derived states (trial expiry, grace) are deterministic."""
    return datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def memory_store():
    return InMemoryEntitlementStore()


@pytest.fixture
def sql_store():
    """SqlEntitlementStore over a fresh in-memory SQLite database."""
    engine = init_engine("sqlite://")
    reset_database(engine)
    yield SqlEntitlementStore(get_session_factory())
    engine.dispose()


@pytest.fixture(params=["memory", "sql"])
def store(request):
    """Runs a test once per store implementation."""
    return request.getfixturevalue(f"{request.param}_store")


@pytest.fixture
def barrier_store(memory_store):
    return BarrierStore(memory_store)


@pytest.fixture
def signed_webhook():
    """Build (body, headers) for a Stripe event dict, signed like Stripe does."""

    def _build(event: dict, *, secret: str = WEBHOOK_SECRET, timestamp=None):
        body = json.dumps(event)
        headers = {"stripe-signature": sign_payload(body, secret, timestamp), "content-type": "application/json"}
        return body.encode("utf-8"), headers

    return _build


@pytest.fixture
def notifier():
    return Mock()


@pytest.fixture
def app_factory(memory_store, notifier):
    from entitlement_engine.features.billing.stripe_provider import StripeProvider
    from entitlement_engine.features.team.inheritance import StaticInheritanceLookup
    from entitlement_engine.main import create_app

    def _create(store=None, inheritance=None, provider=None):
        return create_app(
            store=store or memory_store,
            provider=provider or StripeProvider(webhook_secret=WEBHOOK_SECRET),
            inheritance=inheritance or StaticInheritanceLookup(),
            notifier=notifier,
        )

    return _create


@pytest.fixture
def client(app_factory):
    from fastapi.testclient import TestClient

    return TestClient(app_factory())
