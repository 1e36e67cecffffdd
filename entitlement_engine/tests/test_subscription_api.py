"""HTTP surface for the caller-facing subscription routes."""
from datetime import timedelta

from fastapi.testclient import TestClient

from entitlement_engine.core.timeutil import utc_now
from entitlement_engine.features.access_codes.service import create_access_code
from entitlement_engine.features.team.inheritance import StaticInheritanceLookup
from entitlement_engine.models.entitlement import PlanTier, SubscriptionStatus

OWNER = {"X-User-Id": "owner-1"}


def _set(store, owner_id, **changes):
    record = store.get_or_create(owner_id)
    return store.compare_and_swap(owner_id, record.version, changes)


def test_status_for_unknown_owner(client):
    resp = client.get("/api/subscription/status", headers=OWNER)

    assert resp.status_code == 200
    body = resp.json()
    assert body["has_access"] is False
    assert body["reason"] == "none"
    assert body["status"] == "none"


def test_start_trial_then_status(client):
    resp = client.post("/api/subscription/start-trial", headers=OWNER)

    assert resp.status_code == 200
    body = resp.json()
    assert body["already_started"] is False
    assert body["subscription"]["status"] == "trial"
    assert body["subscription"]["version"] == 2

    status = client.get("/api/subscription/status", headers=OWNER).json()
    assert status["has_access"] is True
    assert status["status"] == "trial"
    assert status["remaining_trial_days"] == 30


def test_repeat_start_trial_reports_already_started(client):
    first = client.post("/api/subscription/start-trial", headers=OWNER).json()
    resp = client.post("/api/subscription/start-trial", headers=OWNER)

    assert resp.status_code == 200
    body = resp.json()
    assert body["already_started"] is True
    assert body["subscription"]["version"] == first["subscription"]["version"]


def test_start_trial_after_expiry_is_conflict(client, memory_store):
    _set(
        memory_store,
        "owner-1",
        status=SubscriptionStatus.TRIAL,
        trial_started_at=utc_now() - timedelta(days=40),
        trial_ends_at=utc_now() - timedelta(days=10),
    )

    resp = client.post("/api/subscription/start-trial", headers=OWNER)

    assert resp.status_code == 409
    error = resp.json()["error"]
    assert error["code"] == "already_used_or_active"
    assert error["current_status"] == "expired"
    assert error["message"] == "Trial has already been used"


def test_start_trial_while_active_is_conflict(client, memory_store):
    _set(memory_store, "owner-1", status=SubscriptionStatus.ACTIVE)

    resp = client.post("/api/subscription/start-trial", headers=OWNER)

    assert resp.status_code == 409
    assert resp.json()["error"]["current_status"] == "active"


def test_redeem_code(client, memory_store):
    create_access_code("WELCOME30", 30, store=memory_store)

    resp = client.post("/api/subscription/redeem-code", headers=OWNER, json={"code": "welcome30"})

    assert resp.status_code == 200
    body = resp.json()
    assert body["days_granted"] == 30
    assert body["subscription"]["status"] == "trial"


def test_redeem_unknown_code_reports_reason(client):
    resp = client.post("/api/subscription/redeem-code", headers=OWNER, json={"code": "MISSING"})

    assert resp.status_code == 400
    error = resp.json()["error"]
    assert error["code"] == "invalid_access_code"
    assert error["reason"] == "not_found"


def test_redeem_when_active_is_not_eligible(client, memory_store):
    create_access_code("WELCOME30", 30, store=memory_store)
    _set(memory_store, "owner-1", status=SubscriptionStatus.ACTIVE)

    resp = client.post("/api/subscription/redeem-code", headers=OWNER, json={"code": "WELCOME30"})

    assert resp.status_code == 409
    assert resp.json()["error"]["code"] == "not_eligible"


def test_usage_limit(client, memory_store):
    _set(memory_store, "owner-1", status=SubscriptionStatus.ACTIVE, plan_tier=PlanTier.STARTER, resource_limit=3)

    within = client.get("/api/subscription/usage", headers=OWNER, params={"current_count": 2}).json()
    over = client.get("/api/subscription/usage", headers=OWNER, params={"current_count": 3}).json()

    assert within == {"within_limit": True, "limit": 3, "used": 2, "remaining": 1}
    assert over["within_limit"] is False


def test_usage_rejects_negative_count(client):
    resp = client.get("/api/subscription/usage", headers=OWNER, params={"current_count": -1})
    assert resp.status_code == 400


def test_member_status_inherits(app_factory, memory_store):
    _set(memory_store, "org-owner", status=SubscriptionStatus.ACTIVE)
    client = TestClient(app_factory(inheritance=StaticInheritanceLookup({"member": "org-owner"})))

    body = client.get("/api/subscription/status", headers={"X-User-Id": "member"}).json()

    assert body["has_access"] is True
    assert body["reason"] == "inherited"
    assert body["inherited_from"] == "org-owner"


def test_request_id_is_echoed(client):
    resp = client.get("/api/subscription/status", headers={**OWNER, "X-Request-Id": "rid-abc"})
    assert resp.headers["x-request-id"] == "rid-abc"


def test_status_after_trial_lapse_reports_trial_expired(client, memory_store):
    _set(
        memory_store,
        "owner-1",
        status=SubscriptionStatus.TRIAL,
        trial_started_at=utc_now() - timedelta(days=40),
        trial_ends_at=utc_now() - timedelta(days=10),
    )

    body = client.get("/api/subscription/status", headers=OWNER).json()

    assert body["has_access"] is False
    assert body["reason"] == "trial_expired"
    assert body["status"] == "expired"


def test_details_for_unknown_owner_lists_nothing_included(client, memory_store):
    resp = client.get("/api/subscription/details", headers=OWNER)

    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "none"
    assert body["remaining_trial_days"] is None
    assert len(body["features"]) == 6
    assert not any(feature["included"] for feature in body["features"])
    assert list(memory_store.iter_records()) == []


def test_details_during_trial_includes_every_feature(client):
    client.post("/api/subscription/start-trial", headers=OWNER)

    body = client.get("/api/subscription/details", headers=OWNER).json()

    assert body["subscription"]["status"] == "trial"
    assert body["remaining_trial_days"] == 30
    assert all(feature["included"] for feature in body["features"])
    assert {"name": "Priority support", "included": True} in body["features"]


def test_details_for_starter_plan(client, memory_store):
    _set(
        memory_store,
        "owner-1",
        status=SubscriptionStatus.ACTIVE,
        plan_tier=PlanTier.STARTER,
        resource_limit=3,
        billing_interval="yearly",
    )

    body = client.get("/api/subscription/details", headers=OWNER).json()

    included = {f["name"] for f in body["features"] if f["included"]}
    assert included == {"Up to 3 initiatives", "Basic KPI tracking", "Evidence management"}
    assert body["subscription"]["billing_interval"] == "yearly"
    assert body["remaining_trial_days"] is None


def test_details_after_trial_lapse(client, memory_store):
    _set(
        memory_store,
        "owner-1",
        status=SubscriptionStatus.TRIAL,
        trial_started_at=utc_now() - timedelta(days=40),
        trial_ends_at=utc_now() - timedelta(days=10),
    )

    body = client.get("/api/subscription/details", headers=OWNER).json()

    assert body["status"] == "expired"
    assert body["remaining_trial_days"] is None
    assert not any(feature["included"] for feature in body["features"])
