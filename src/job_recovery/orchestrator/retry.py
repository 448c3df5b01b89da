"""Bounded retry with exponential backoff, jitter, and cancellable waits."""

from __future__ import annotations

import logging
import random
import threading
import time
from collections.abc import Callable
from typing import TypeVar

from job_recovery.orchestrator.classifier import classify_error
from job_recovery.orchestrator.models import CategorizedError, RetryPolicy

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Caps 2**attempt so huge attempt numbers never overflow; max_delay clamps far earlier.
# Exponents past this overflow the int-to-float conversion for any realistic delay.
MAX_BACKOFF_EXPONENT = 62
JITTER_RATIO = 0.25
DEFAULT_RETRY_POLICY = RetryPolicy()

OnRetry = Callable[[int, CategorizedError, float], None]


class RetryCancelledError(RuntimeError):
    """Raised when the cancel event fires before the next attempt could start."""

    def __init__(self, message: str, *, attempts: int, last_error: CategorizedError | None) -> None:
        super().__init__(message)
        self.attempts = attempts
        self.last_error = last_error


def calculate_backoff_delay(
    attempt: int,
    base_delay: float = DEFAULT_RETRY_POLICY.base_delay_seconds,
    max_delay: float = DEFAULT_RETRY_POLICY.max_delay_seconds,
    *,
    rng: random.Random | None = None,
) -> float:
    """Exponential delay capped at ``max_delay`` plus up to 25% jitter.

    The result never exceeds ``max_delay * 1.25``.
    """

    exponent = min(max(attempt, 0), MAX_BACKOFF_EXPONENT)
    delay = min(base_delay * (2**exponent), max_delay)
    source = rng if rng is not None else random
    jitter = delay * source.random() * JITTER_RATIO  # noqa: S311
    return delay + jitter


def with_retry(  # noqa: PLR0913
    operation: Callable[[], T],
    policy: RetryPolicy | None = None,
    *,
    on_retry: OnRetry | None = None,
    cancel_event: threading.Event | None = None,
    sleep: Callable[[float], None] | None = None,
    rng: random.Random | None = None,
    classifier: Callable[[object], CategorizedError] = classify_error,
) -> T:
    """Run ``operation`` until it succeeds, fails non-retryably, or runs out of attempts.

    Args:
        operation: Zero-argument callable; attempts are strictly sequential.
        policy: Attempt cap and delay bounds. Attempt 0 counts toward the cap.
        on_retry: Called with (next attempt number, classification, delay)
            before each backoff wait.
        cancel_event: When set, the current backoff wait ends early and
            ``RetryCancelledError`` is raised instead of another attempt.
        sleep: Override for the wait primitive, mainly for tests. The cancel
            event is still checked before and after it.
        rng: Random source for jitter.
        classifier: Failure classifier deciding whether to continue.

    Raises:
        The original exception when it is non-retryable or attempts are
        exhausted, so callers see the same type they would without retry.
    """

    effective = policy or DEFAULT_RETRY_POLICY
    last_error: CategorizedError | None = None

    for attempt in range(effective.max_attempts):
        if cancel_event is not None and cancel_event.is_set():
            raise _cancelled(attempt=attempt, last_error=last_error)
        try:
            return operation()
        except Exception as error:
            last_error = classifier(error)
            if not last_error.is_retryable:
                raise
            if attempt >= effective.max_attempts - 1:
                logger.warning(
                    "Giving up after %d attempt(s): %s (%s)",
                    attempt + 1,
                    last_error.message,
                    last_error.category.value,
                )
                raise

            delay = calculate_backoff_delay(
                attempt,
                effective.base_delay_seconds,
                effective.max_delay_seconds,
                rng=rng,
            )
            logger.warning(
                "Attempt %d/%d failed with %s error, retrying in %.2fs: %s",
                attempt + 1,
                effective.max_attempts,
                last_error.category.value,
                delay,
                last_error.message,
            )
            if on_retry is not None:
                on_retry(attempt + 1, last_error, delay)
            if _wait(delay, cancel_event=cancel_event, sleep=sleep):
                raise _cancelled(attempt=attempt + 1, last_error=last_error) from error

    # max_attempts >= 1 guarantees the loop either returned or raised.
    raise AssertionError("unreachable")


def _wait(
    delay: float,
    *,
    cancel_event: threading.Event | None,
    sleep: Callable[[float], None] | None,
) -> bool:
    """Suspend for ``delay`` seconds; return True if cancelled."""

    if sleep is not None:
        sleep(delay)
        return cancel_event is not None and cancel_event.is_set()
    if cancel_event is not None:
        return cancel_event.wait(timeout=delay)
    time.sleep(delay)
    return False


def _cancelled(*, attempt: int, last_error: CategorizedError | None) -> RetryCancelledError:
    logger.info("Retry loop cancelled after %d attempt(s)", attempt)
    return RetryCancelledError(
        f"Retry cancelled after {attempt} attempt(s).",
        attempts=attempt,
        last_error=last_error,
    )
