from __future__ import annotations

import random
import threading
import time

import allure
import pytest

from job_recovery.orchestrator.models import CategorizedError, ErrorCategory, RetryPolicy
from job_recovery.orchestrator.retry import (
    RetryCancelledError,
    calculate_backoff_delay,
    with_retry,
)

pytestmark = [
    allure.epic("Failure Recovery"),
    allure.feature("Bounded Retry"),
]


class _FlakyOperation:
    def __init__(self, failures: int, error_factory=lambda: ConnectionError("network down")):
        self.failures = failures
        self.error_factory = error_factory
        self.calls = 0

    def __call__(self) -> str:
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error_factory()
        return "done"


class _FixedRandom:
    def __init__(self, value: float) -> None:
        self.value = value

    def random(self) -> float:
        return self.value


def test_succeeds_after_transient_failures() -> None:
    operation = _FlakyOperation(failures=2)
    delays: list[float] = []

    result = with_retry(operation, RetryPolicy(max_attempts=3), sleep=delays.append)

    assert result == "done"
    assert operation.calls == 3
    assert len(delays) == 2


def test_first_success_does_not_wait() -> None:
    operation = _FlakyOperation(failures=0)
    delays: list[float] = []

    assert with_retry(operation, sleep=delays.append) == "done"
    assert operation.calls == 1
    assert delays == []


def test_non_retryable_error_is_raised_after_one_call() -> None:
    operation = _FlakyOperation(failures=5, error_factory=lambda: PermissionError("denied"))
    delays: list[float] = []

    with pytest.raises(PermissionError, match="denied"):
        with_retry(operation, RetryPolicy(max_attempts=5), sleep=delays.append)

    assert operation.calls == 1
    assert delays == []


def test_exhaustion_reraises_the_last_original_error() -> None:
    error = ConnectionError("network down")
    calls = 0

    def _always_fails() -> None:
        nonlocal calls
        calls += 1
        raise error

    with pytest.raises(ConnectionError) as exc_info:
        with_retry(_always_fails, RetryPolicy(max_attempts=3), sleep=lambda _: None)

    assert exc_info.value is error
    assert calls == 3


def test_on_retry_receives_attempt_classification_and_delay() -> None:
    operation = _FlakyOperation(failures=2)
    delays: list[float] = []
    notifications: list[tuple[int, CategorizedError, float]] = []

    with_retry(
        operation,
        RetryPolicy(max_attempts=3, base_delay_seconds=0.5, max_delay_seconds=10.0),
        on_retry=lambda attempt, error, delay: notifications.append((attempt, error, delay)),
        sleep=delays.append,
        rng=random.Random(7),
    )

    assert [attempt for attempt, _, _ in notifications] == [1, 2]
    assert all(error.category == ErrorCategory.NETWORK for _, error, _ in notifications)
    assert [delay for _, _, delay in notifications] == delays


def test_single_attempt_policy_never_retries() -> None:
    operation = _FlakyOperation(failures=1)

    with pytest.raises(ConnectionError):
        with_retry(operation, RetryPolicy(max_attempts=1), sleep=lambda _: None)

    assert operation.calls == 1


def test_backoff_without_jitter_doubles_until_cap() -> None:
    no_jitter = _FixedRandom(0.0)
    delays = [calculate_backoff_delay(attempt, 1.0, 30.0, rng=no_jitter) for attempt in range(7)]

    assert delays == [1.0, 2.0, 4.0, 8.0, 16.0, 30.0, 30.0]


def test_backoff_jitter_is_bounded() -> None:
    rng = random.Random(1234)
    for attempt in range(12):
        delay = calculate_backoff_delay(attempt, 1.0, 30.0, rng=rng)
        floor = min(1.0 * 2**attempt, 30.0)
        assert floor <= delay <= floor * 1.25
        assert delay <= 30.0 * 1.25


def test_backoff_with_maximum_jitter() -> None:
    assert calculate_backoff_delay(2, 1.0, 30.0, rng=_FixedRandom(1.0)) == pytest.approx(5.0)


def test_cancel_before_first_attempt_skips_operation() -> None:
    cancel_event = threading.Event()
    cancel_event.set()
    operation = _FlakyOperation(failures=0)

    with pytest.raises(RetryCancelledError) as exc_info:
        with_retry(operation, cancel_event=cancel_event)

    assert operation.calls == 0
    assert exc_info.value.attempts == 0
    assert exc_info.value.last_error is None


def test_cancel_during_backoff_stops_further_attempts() -> None:
    cancel_event = threading.Event()
    operation = _FlakyOperation(failures=5)

    def _sleep_then_cancel(_delay: float) -> None:
        cancel_event.set()

    with pytest.raises(RetryCancelledError) as exc_info:
        with_retry(
            operation,
            RetryPolicy(max_attempts=5),
            cancel_event=cancel_event,
            sleep=_sleep_then_cancel,
        )

    assert operation.calls == 1
    assert exc_info.value.attempts == 1
    assert exc_info.value.last_error is not None
    assert exc_info.value.last_error.category == ErrorCategory.NETWORK
    assert isinstance(exc_info.value.__cause__, ConnectionError)


def test_huge_attempt_numbers_stay_within_the_cap() -> None:
    for attempt in (1023, 1100, 5000):
        assert calculate_backoff_delay(attempt, 1.0, 30.0) <= 30.0 * 1.25
        assert calculate_backoff_delay(attempt, 0.0, 30.0) == 0.0
    assert calculate_backoff_delay(5000, 1.0, 30.0, rng=_FixedRandom(0.0)) == 30.0


def test_cancel_interrupts_a_long_backoff_wait() -> None:
    cancel_event = threading.Event()
    operation = _FlakyOperation(failures=5)
    timer = threading.Timer(0.05, cancel_event.set)

    started = time.monotonic()
    timer.start()
    try:
        with pytest.raises(RetryCancelledError) as exc_info:
            with_retry(
                operation,
                RetryPolicy(max_attempts=5, base_delay_seconds=30.0, max_delay_seconds=30.0),
                cancel_event=cancel_event,
            )
    finally:
        timer.cancel()

    assert time.monotonic() - started < 2.0
    assert operation.calls == 1
    assert exc_info.value.attempts == 1


def test_event_wait_is_used_when_no_sleep_is_injected() -> None:
    operation = _FlakyOperation(failures=1)

    result = with_retry(
        operation,
        RetryPolicy(max_attempts=2, base_delay_seconds=0.0, max_delay_seconds=0.0),
        cancel_event=threading.Event(),
    )

    assert result == "done"
    assert operation.calls == 2


def test_retry_policy_rejects_invalid_values() -> None:
    with pytest.raises(ValueError, match="max_attempts"):
        RetryPolicy(max_attempts=0)
    with pytest.raises(ValueError, match="delays"):
        RetryPolicy(base_delay_seconds=-1.0)
