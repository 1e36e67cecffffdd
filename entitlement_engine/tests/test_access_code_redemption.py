"""Access code redemption: validation order, additive extension, cap under concurrency."""
from datetime import timedelta

import pytest

from entitlement_engine.core.errors import InvalidAccessCodeError, NotEligibleError, ValidationError
from entitlement_engine.features.access_codes.service import create_access_code, redeem
from entitlement_engine.features.trials.service import start_trial
from entitlement_engine.models.entitlement import SubscriptionStatus
from entitlement_engine.tests.mocks import run_concurrently


def test_redeem_from_none_starts_trial_of_granted_length(store, fixed_now):
    create_access_code("WELCOME30", 30, store=store)

    result = redeem("owner-1", "WELCOME30", store=store, now=fixed_now)

    assert result.days_granted == 30
    assert result.subscription.status == SubscriptionStatus.TRIAL
    assert result.subscription.trial_started_at == fixed_now
    assert result.subscription.trial_ends_at == fixed_now + timedelta(days=30)
    assert store.get_access_code("WELCOME30").redemption_count == 1


def test_codes_extend_additively(store, fixed_now):
    create_access_code("WELCOME30", 30, store=store)
    create_access_code("EXTRA10", 10, store=store)

    redeem("u2", "WELCOME30", store=store, now=fixed_now)
    result = redeem("u2", "EXTRA10", store=store, now=fixed_now + timedelta(days=2))

    assert result.subscription.trial_ends_at == fixed_now + timedelta(days=40)
    assert result.subscription.trial_started_at == fixed_now


def test_redeem_extends_running_fixed_trial(memory_store, fixed_now):
    start_trial("owner-1", store=memory_store, now=fixed_now)
    create_access_code("BONUS7", 7, store=memory_store)

    result = redeem("owner-1", "BONUS7", store=memory_store, now=fixed_now + timedelta(days=5))

    assert result.subscription.trial_ends_at == fixed_now + timedelta(days=37)


def test_expired_trial_is_not_eligible(store, fixed_now):
    record = start_trial("owner-1", store=store, now=fixed_now)
    create_access_code("BONUS7", 7, store=store)

    with pytest.raises(NotEligibleError) as exc:
        redeem("owner-1", "BONUS7", store=store, now=fixed_now + timedelta(days=32))

    assert exc.value.current_status == "expired"
    assert store.get("owner-1").trial_ends_at == record.trial_ends_at
    assert store.get_access_code("BONUS7").redemption_count == 0
    assert not store.has_redeemed("BONUS7", "owner-1")


def test_code_lookup_is_case_insensitive(memory_store, fixed_now):
    create_access_code("WELCOME30", 30, store=memory_store)

    result = redeem("owner-1", "  welcome30 ", store=memory_store, now=fixed_now)

    assert result.days_granted == 30


@pytest.mark.parametrize("code", ["", "   ", "a!", "has space"])
def test_malformed_codes_are_validation_errors(memory_store, fixed_now, code):
    with pytest.raises(ValidationError):
        redeem("owner-1", code, store=memory_store, now=fixed_now)


def test_unknown_code(memory_store, fixed_now):
    with pytest.raises(InvalidAccessCodeError) as exc:
        redeem("owner-1", "NOPE123", store=memory_store, now=fixed_now)
    assert exc.value.reason == "not_found"


def test_inactive_code_reads_as_not_found(memory_store, fixed_now):
    from entitlement_engine.models.access_code import AccessCode

    memory_store.create_access_code(AccessCode(code="RETIRED", days_granted=5, is_active=False))
    with pytest.raises(InvalidAccessCodeError) as exc:
        redeem("owner-1", "RETIRED", store=memory_store, now=fixed_now)
    assert exc.value.reason == "not_found"


def test_expired_code(memory_store, fixed_now):
    create_access_code("OLD", 5, store=memory_store, expires_at=fixed_now - timedelta(seconds=1))

    with pytest.raises(InvalidAccessCodeError) as exc:
        redeem("owner-1", "OLD", store=memory_store, now=fixed_now)

    assert exc.value.reason == "expired"
    assert memory_store.get_access_code("OLD").redemption_count == 0


def test_exhausted_code(memory_store, fixed_now):
    create_access_code("ONCE", 5, store=memory_store, max_redemptions=1)
    redeem("owner-a", "ONCE", store=memory_store, now=fixed_now)

    with pytest.raises(InvalidAccessCodeError) as exc:
        redeem("owner-b", "ONCE", store=memory_store, now=fixed_now)

    assert exc.value.reason == "exhausted"


def test_same_owner_cannot_redeem_twice(store, fixed_now):
    create_access_code("MULTI", 5, store=store, max_redemptions=None)
    redeem("owner-1", "MULTI", store=store, now=fixed_now)

    with pytest.raises(InvalidAccessCodeError) as exc:
        redeem("owner-1", "MULTI", store=store, now=fixed_now)

    assert exc.value.reason == "already_redeemed"
    assert store.get_access_code("MULTI").redemption_count == 1


def test_validation_order_expired_before_exhausted(memory_store, fixed_now):
    create_access_code("BOTH", 5, store=memory_store, max_redemptions=1, expires_at=fixed_now + timedelta(days=1))
    redeem("owner-a", "BOTH", store=memory_store, now=fixed_now)

    with pytest.raises(InvalidAccessCodeError) as exc:
        redeem("owner-b", "BOTH", store=memory_store, now=fixed_now + timedelta(days=2))

    assert exc.value.reason == "expired"


@pytest.mark.parametrize(
    "status",
    [SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE, SubscriptionStatus.CANCELLED],
)
def test_paid_or_closed_owners_are_not_eligible(store, fixed_now, status):
    create_access_code("WELCOME30", 30, store=store)
    record = store.create_default("owner-1", now=fixed_now)
    store.compare_and_swap("owner-1", record.version, {"status": status}, now=fixed_now)

    with pytest.raises(NotEligibleError) as exc:
        redeem("owner-1", "WELCOME30", store=store, now=fixed_now)

    assert exc.value.current_status == status.value
    assert store.get_access_code("WELCOME30").redemption_count == 0
    assert not store.has_redeemed("WELCOME30", "owner-1")


def test_conflict_is_retried_without_double_counting(memory_store, fixed_now):
    create_access_code("WELCOME30", 30, store=memory_store)
    memory_store.create_default("owner-1", now=fixed_now)
    # Bump the version behind the redeemer's back once.
    original = memory_store.redeem_access_code
    calls = {"n": 0}

    def racing_redeem(code, owner_id, expected_version, changes, *, now=None):
        calls["n"] += 1
        if calls["n"] == 1:
            current = memory_store.get(owner_id)
            memory_store.compare_and_swap(owner_id, current.version, {"cancel_at_period_end": False}, now=now)
        return original(code, owner_id, expected_version, changes, now=now)

    memory_store.redeem_access_code = racing_redeem

    result = redeem("owner-1", "WELCOME30", store=memory_store, now=fixed_now)

    assert calls["n"] == 2
    assert result.subscription.version == 3
    assert memory_store.get_access_code("WELCOME30").redemption_count == 1


def test_concurrent_redemptions_respect_cap(barrier_store, memory_store, fixed_now):
    create_access_code("ONCE", 10, store=memory_store, max_redemptions=1)

    results, errors = run_concurrently(
        lambda: redeem("owner-a", "ONCE", store=barrier_store, now=fixed_now),
        lambda: redeem("owner-b", "ONCE", store=barrier_store, now=fixed_now),
    )

    successes = [r for r in results if r is not None]
    failures = [e for e in errors if e is not None]
    assert len(successes) == 1
    assert len(failures) == 1
    assert isinstance(failures[0], InvalidAccessCodeError)
    assert failures[0].reason == "exhausted"
    assert memory_store.get_access_code("ONCE").redemption_count == 1


def test_create_access_code_validation(memory_store):
    with pytest.raises(ValidationError):
        create_access_code("OK_CODE", 0, store=memory_store)
    with pytest.raises(ValidationError):
        create_access_code("OK_CODE", 5, store=memory_store, max_redemptions=0)
    with pytest.raises(ValidationError):
        create_access_code("x", 5, store=memory_store)
