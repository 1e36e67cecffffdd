"""Trial activation: one trial per owner, safe under duplicate requests."""
from datetime import timedelta

import pytest

from entitlement_engine.core.errors import AlreadyUsedOrActiveError
from entitlement_engine.features.trials.service import start_trial
from entitlement_engine.models.entitlement import SubscriptionStatus
from entitlement_engine.tests.mocks import ConflictingStore, run_concurrently


def test_start_trial_from_none(store, fixed_now):
    record = start_trial("owner-1", store=store, now=fixed_now)

    assert record.status == SubscriptionStatus.TRIAL
    assert record.trial_started_at == fixed_now
    assert record.trial_ends_at == fixed_now + timedelta(days=30)
    assert record.resource_limit is None
    assert record.version == 2


def test_second_start_reports_running_trial(store, fixed_now):
    start_trial("owner-1", store=store, now=fixed_now)

    with pytest.raises(AlreadyUsedOrActiveError) as exc:
        start_trial("owner-1", store=store, now=fixed_now + timedelta(minutes=1))

    assert exc.value.current_status == "trial"
    assert exc.value.message == "Trial is already active"
    assert store.get("owner-1").version == 2


@pytest.mark.parametrize(
    "status,expected_message",
    [
        (SubscriptionStatus.ACTIVE, "You already have an active subscription"),
        (SubscriptionStatus.PAST_DUE, "Please update your payment method"),
        (SubscriptionStatus.CANCELLED, "Trial has already been used"),
    ],
)
def test_start_rejected_for_other_statuses(memory_store, fixed_now, status, expected_message):
    record = memory_store.create_default("owner-1", now=fixed_now)
    memory_store.compare_and_swap("owner-1", record.version, {"status": status}, now=fixed_now)

    with pytest.raises(AlreadyUsedOrActiveError) as exc:
        start_trial("owner-1", store=memory_store, now=fixed_now)

    assert exc.value.current_status == status.value
    assert exc.value.message == expected_message
    assert exc.value.details["current_status"] == status.value


def test_lapsed_trial_reports_expired(memory_store, fixed_now):
    start_trial("owner-1", store=memory_store, now=fixed_now)

    with pytest.raises(AlreadyUsedOrActiveError) as exc:
        start_trial("owner-1", store=memory_store, now=fixed_now + timedelta(days=31))

    assert exc.value.current_status == "expired"
    assert exc.value.message == "Trial has already been used"


def test_custom_duration(memory_store, fixed_now):
    record = start_trial("owner-1", store=memory_store, now=fixed_now, duration_days=14)
    assert record.trial_ends_at == fixed_now + timedelta(days=14)


def test_conflict_is_retried(memory_store, fixed_now):
    flaky = ConflictingStore(memory_store, conflicts=2)

    record = start_trial("owner-1", store=flaky, now=fixed_now)

    assert record.status == SubscriptionStatus.TRIAL
    assert flaky.swap_attempts == 3


def test_concurrent_duplicate_starts_grant_one_trial(barrier_store, memory_store, fixed_now):
    results, errors = run_concurrently(
        lambda: start_trial("owner-1", store=barrier_store, now=fixed_now),
        lambda: start_trial("owner-1", store=barrier_store, now=fixed_now),
    )

    winners = [r for r in results if r is not None]
    losers = [e for e in errors if e is not None]
    assert len(winners) == 1
    assert len(losers) == 1
    assert isinstance(losers[0], AlreadyUsedOrActiveError)
    assert losers[0].current_status == "trial"

    final = memory_store.get("owner-1")
    assert final.status == SubscriptionStatus.TRIAL
    assert final.version == 2
