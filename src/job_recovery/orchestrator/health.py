"""Rolling connection health for one external dependency."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from datetime import datetime
from typing import TypeVar

from job_recovery.orchestrator.classifier import classify_error
from job_recovery.orchestrator.models import (
    CategorizedError,
    ConnectionHealth,
    ConnectionStatus,
)
from job_recovery.storage.common import utc_now

logger = logging.getLogger(__name__)

T = TypeVar("T")

DISCONNECTED_AFTER_FAILURES = 3


def health_for_failures(consecutive_failures: int) -> ConnectionHealth:
    """0 → connected, 1-2 → degraded, 3+ → disconnected."""

    if consecutive_failures <= 0:
        return ConnectionHealth.CONNECTED
    if consecutive_failures < DISCONNECTED_AFTER_FAILURES:
        return ConnectionHealth.DEGRADED
    return ConnectionHealth.DISCONNECTED


class ConnectionHealthMonitor:
    """Thread-safe health indicator shared by every caller of one dependency."""

    def __init__(
        self,
        name: str = "default",
        *,
        now: Callable[[], datetime] = utc_now,
        classifier: Callable[[object], CategorizedError] = classify_error,
    ) -> None:
        self.name = name
        self._now = now
        self._classifier = classifier
        self._lock = threading.Lock()
        self._status = _initial_status()

    def record_success(self) -> None:
        with self._lock:
            previous = self._status.health
            self._status = ConnectionStatus(
                health=ConnectionHealth.CONNECTED,
                last_success_time=self._now(),
                consecutive_failures=0,
                last_error=None,
            )
        if previous != ConnectionHealth.CONNECTED:
            logger.info("Connection %s recovered (was %s)", self.name, previous.value)

    def record_failure(self, error: object) -> CategorizedError:
        """Count one failure and return its classification for the caller to act on."""

        categorized = self._classifier(error)
        with self._lock:
            previous = self._status.health
            failures = self._status.consecutive_failures + 1
            self._status = ConnectionStatus(
                health=health_for_failures(failures),
                last_success_time=self._status.last_success_time,
                consecutive_failures=failures,
                last_error=categorized,
            )
            current = self._status.health
        if current != previous and current == ConnectionHealth.DISCONNECTED:
            logger.warning(
                "Connection %s disconnected after %d consecutive failures: %s",
                self.name,
                failures,
                categorized.message,
            )
        return categorized

    def get_status(self) -> ConnectionStatus:
        # ConnectionStatus is frozen, so handing out the current object is a snapshot.
        with self._lock:
            return self._status

    def reset(self) -> None:
        with self._lock:
            self._status = _initial_status()

    def guarded(self, operation: Callable[[], T]) -> T:
        """Run ``operation`` and report its outcome; failures are re-raised."""

        try:
            result = operation()
        except Exception as error:
            self.record_failure(error)
            raise
        self.record_success()
        return result


def _initial_status() -> ConnectionStatus:
    return ConnectionStatus(
        health=ConnectionHealth.CONNECTED,
        last_success_time=None,
        consecutive_failures=0,
        last_error=None,
    )
