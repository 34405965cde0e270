from __future__ import annotations

import pytest
from tenacity import RetryError

from errors import ApiError, TransientApiError
from retry import poll_until, with_backoff


def _flaky(failures: int, exc: Exception):
    calls = {"n": 0}

    def fn() -> str:
        calls["n"] += 1
        if calls["n"] <= failures:
            raise exc
        return "done"

    return fn, calls


def test_transient_errors_are_retried_with_doubling_delay() -> None:
    sleeps = []
    fn, calls = _flaky(3, TransientApiError("busy", "rateLimitExceeded"))
    assert with_backoff(fn, attempts=5, base_delay=1.0, sleep=sleeps.append) == "done"
    assert calls["n"] == 4
    assert sleeps == [1.0, 2.0, 4.0]


def test_exhaustion_raises_retry_error_with_last_cause() -> None:
    fn, calls = _flaky(10, TransientApiError("busy", "503"))
    with pytest.raises(RetryError) as info:
        with_backoff(fn, attempts=5, sleep=lambda s: None)
    assert calls["n"] == 5
    assert isinstance(info.value.last_attempt.exception(), TransientApiError)


def test_permanent_errors_are_not_retried() -> None:
    fn, calls = _flaky(10, ApiError("denied", "PERMISSION_DENIED"))
    with pytest.raises(ApiError):
        with_backoff(fn, attempts=5, sleep=lambda s: None)
    assert calls["n"] == 1


def test_poll_until_returns_first_done_result() -> None:
    states = iter(["PROVISIONING", "STAGING", "RUNNING", "RUNNING"])
    sleeps = []
    got = poll_until(lambda: next(states), lambda s: s == "RUNNING", interval=10, attempts=30, sleep=sleeps.append)
    assert got == "RUNNING"
    assert sleeps == [10, 10]


def test_poll_until_times_out_with_none() -> None:
    calls = []
    got = poll_until(lambda: calls.append(1), lambda s: False, interval=0, attempts=4, sleep=lambda s: None)
    assert got is None
    assert len(calls) == 4
