"""Retry module edge case tests."""

from __future__ import annotations

from serverdeck.retry import RecoverableError, RetryPolicy, run_with_retry


def test_retry_zero_initial_backoff_succeeds() -> None:
    call_count = {"count": 0}

    def operation():
        call_count["count"] += 1
        if call_count["count"] < 3:
            raise RecoverableError("temp")
        return "ok"

    result = run_with_retry(
        operation,
        policy=RetryPolicy(initial_backoff_seconds=0.0),
        sleep=lambda _: None,
    )
    assert result == "ok"
    assert call_count["count"] == 3


def test_retry_zero_multiplier_uses_constant_backoff() -> None:
    call_count = {"count": 0}

    def operation():
        call_count["count"] += 1
        if call_count["count"] < 3:
            raise RecoverableError("temp")
        return "ok"

    result = run_with_retry(
        operation,
        policy=RetryPolicy(initial_backoff_seconds=1.0, multiplier=0.0),
        sleep=lambda _: None,
    )
    assert result == "ok"
    assert call_count["count"] == 3


def test_retry_succeeds_first_try() -> None:
    result = run_with_retry(
        lambda: "success",
        policy=RetryPolicy(max_attempts=3),
        sleep=lambda _: None,
    )
    assert result == "success"


def test_retry_single_attempt_policy_has_no_delays() -> None:
    assert RetryPolicy(max_attempts=1).delays() == []


def test_retry_does_not_catch_unrelated_errors() -> None:
    calls = {"count": 0}

    def operation():
        calls["count"] += 1
        raise KeyError("boom")

    try:
        run_with_retry(operation, policy=RetryPolicy(max_attempts=3), sleep=lambda _: None)
    except KeyError:
        pass
    assert calls["count"] == 1


def test_retry_rejects_policy_without_attempts() -> None:
    try:
        run_with_retry(lambda: "never", policy=RetryPolicy(max_attempts=0), sleep=lambda _: None)
    except ValueError as exc:
        assert "max_attempts" in str(exc)
    else:
        raise AssertionError("expected ValueError")
