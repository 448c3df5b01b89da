from __future__ import annotations

import dataclasses
import threading

import allure
import pytest

from job_recovery.orchestrator.health import ConnectionHealthMonitor, health_for_failures
from job_recovery.orchestrator.models import ConnectionHealth, ErrorCategory

from conftest import BASE_TIME

pytestmark = [
    allure.epic("Failure Recovery"),
    allure.feature("Connection Health"),
]


@pytest.mark.parametrize(
    ("failures", "expected"),
    [
        (0, ConnectionHealth.CONNECTED),
        (1, ConnectionHealth.DEGRADED),
        (2, ConnectionHealth.DEGRADED),
        (3, ConnectionHealth.DISCONNECTED),
        (10, ConnectionHealth.DISCONNECTED),
    ],
)
def test_health_thresholds(failures: int, expected: ConnectionHealth) -> None:
    assert health_for_failures(failures) == expected


def test_new_monitor_is_connected() -> None:
    status = ConnectionHealthMonitor().get_status()

    assert status.health == ConnectionHealth.CONNECTED
    assert status.consecutive_failures == 0
    assert status.last_success_time is None
    assert status.last_error is None


def test_failures_degrade_then_disconnect_and_success_recovers() -> None:
    monitor = ConnectionHealthMonitor("assessments", now=lambda: BASE_TIME)

    monitor.record_failure(ConnectionError("network down"))
    assert monitor.get_status().health == ConnectionHealth.DEGRADED
    monitor.record_failure(ConnectionError("network down"))
    assert monitor.get_status().health == ConnectionHealth.DEGRADED
    categorized = monitor.record_failure(ConnectionError("network down"))

    status = monitor.get_status()
    assert status.health == ConnectionHealth.DISCONNECTED
    assert status.consecutive_failures == 3
    assert status.last_error == categorized
    assert categorized.category == ErrorCategory.NETWORK

    monitor.record_success()
    recovered = monitor.get_status()
    assert recovered.health == ConnectionHealth.CONNECTED
    assert recovered.consecutive_failures == 0
    assert recovered.last_error is None
    assert recovered.last_success_time == BASE_TIME


def test_status_is_an_immutable_snapshot() -> None:
    monitor = ConnectionHealthMonitor()
    snapshot = monitor.get_status()

    monitor.record_failure(Exception("Failed to fetch"))

    assert snapshot.consecutive_failures == 0
    with pytest.raises(dataclasses.FrozenInstanceError):
        snapshot.consecutive_failures = 5  # type: ignore[misc]


def test_reset_restores_initial_state() -> None:
    monitor = ConnectionHealthMonitor(now=lambda: BASE_TIME)
    monitor.record_success()
    monitor.record_failure(Exception("Failed to fetch"))

    monitor.reset()

    status = monitor.get_status()
    assert status.health == ConnectionHealth.CONNECTED
    assert status.consecutive_failures == 0
    assert status.last_success_time is None


def test_guarded_reports_outcome_and_reraises() -> None:
    monitor = ConnectionHealthMonitor()

    assert monitor.guarded(lambda: 42) == 42
    assert monitor.get_status().last_success_time is not None

    def _fails() -> None:
        raise TimeoutError("upstream timeout")

    with pytest.raises(TimeoutError):
        monitor.guarded(_fails)
    assert monitor.get_status().consecutive_failures == 1


def test_concurrent_failures_are_all_counted() -> None:
    monitor = ConnectionHealthMonitor()
    threads = [
        threading.Thread(
            target=lambda: [monitor.record_failure(Exception("network")) for _ in range(50)],
        )
        for _ in range(8)
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)

    assert monitor.get_status().consecutive_failures == 400
    assert monitor.get_status().health == ConnectionHealth.DISCONNECTED
