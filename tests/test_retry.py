import pytest

from abengine.core.errors import StoreUnavailableError
from abengine.core.retry import RetryPolicy


def flaky(failures: int, error: Exception):
    calls = {"count": 0}

    def fn():
        calls["count"] += 1
        if calls["count"] <= failures:
            raise error
        return "ok"

    return fn, calls


def test_retry_succeeds_after_transient_failures_with_linear_backoff():
    sleeps = []
    policy = RetryPolicy(max_attempts=5, delay=0.5, sleep=sleeps.append)
    fn, calls = flaky(2, ConnectionError("down"))

    assert policy.call("op", fn) == "ok"
    assert calls["count"] == 3
    assert sleeps == [0.5, 1.0]


def test_retry_gives_up_after_max_attempts():
    sleeps = []
    policy = RetryPolicy(max_attempts=3, delay=1.0, sleep=sleeps.append)
    fn, calls = flaky(10, ConnectionError("down"))

    with pytest.raises(StoreUnavailableError) as exc_info:
        policy.call("record_pageview", fn)

    assert calls["count"] == 3
    assert sleeps == [1.0, 2.0]
    assert exc_info.value.operation == "record_pageview"
    assert exc_info.value.attempts == 3
    assert isinstance(exc_info.value.cause, ConnectionError)


def test_non_retryable_errors_propagate_immediately():
    sleeps = []
    policy = RetryPolicy(max_attempts=5, sleep=sleeps.append)
    fn, calls = flaky(1, KeyError("boom"))

    with pytest.raises(KeyError):
        policy.call("op", fn)

    assert calls["count"] == 1
    assert sleeps == []


def test_single_attempt_never_sleeps():
    sleeps = []
    policy = RetryPolicy(max_attempts=1, sleep=sleeps.append)
    fn, _ = flaky(1, ConnectionError("down"))

    with pytest.raises(StoreUnavailableError):
        policy.call("op", fn)
    assert sleeps == []


def test_max_attempts_must_be_positive():
    with pytest.raises(ValueError):
        RetryPolicy(max_attempts=0)
