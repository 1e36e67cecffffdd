import pytest

from entitlement_engine.core.errors import TransientError, VersionConflictError
from entitlement_engine.core.retry import compute_backoff_ms, retry_on_conflict


def test_backoff_is_bounded():
    for attempt in range(10):
        delay = compute_backoff_ms(attempt, base_ms=20, max_ms=500)
        assert 0 <= delay <= min(500, 20 * 2 ** attempt)


def test_retries_until_operation_succeeds():
    sleeps = []
    calls = []

    def op(attempt):
        calls.append(attempt)
        if attempt < 2:
            raise VersionConflictError("owner-1", attempt + 1)
        return "done"

    result = retry_on_conflict(op, max_attempts=5, base_delay_ms=10, max_delay_ms=50, sleep=sleeps.append)

    assert result == "done"
    assert calls == [0, 1, 2]
    assert len(sleeps) == 2
    assert all(0 <= s <= 0.05 for s in sleeps)


def test_exhaustion_raises_transient_error():
    sleeps = []

    def op(attempt):
        raise VersionConflictError("owner-1", 1)

    with pytest.raises(TransientError) as exc:
        retry_on_conflict(op, max_attempts=3, base_delay_ms=1, max_delay_ms=2, sleep=sleeps.append)

    assert exc.value.details == {"owner_id": "owner-1", "attempts": 3}
    assert exc.value.status_code == 503
    assert len(sleeps) == 2


def test_other_errors_are_not_retried():
    calls = []

    def op(attempt):
        calls.append(attempt)
        raise ValueError("boom")

    with pytest.raises(ValueError):
        retry_on_conflict(op, max_attempts=5, sleep=lambda s: None)
    assert calls == [0]
