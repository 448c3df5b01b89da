from __future__ import annotations

import threading

import allure
import pytest

from job_recovery.config import RetrySettings, Settings
from job_recovery.orchestrator.controller import JobRetryController, inline_dispatcher
from job_recovery.orchestrator.models import (
    ConnectionHealth,
    JobLogEventType,
    JobStatus,
    JobView,
    RetryPolicy,
)
from job_recovery.orchestrator.repository import JobRepository
from job_recovery.orchestrator.runner import JobRunner

pytestmark = [
    allure.epic("Failure Recovery"),
    allure.feature("Job Execution"),
]


class _Handler:
    def __init__(self, errors: list[Exception] | None = None) -> None:
        self.errors = list(errors or [])
        self.calls = 0

    def __call__(self, job: JobView) -> None:
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)


def _runner(repository: JobRepository, handler: _Handler, **kwargs) -> JobRunner:
    return JobRunner(
        repository=repository,
        handlers={"video_assessment": handler},
        policy=RetryPolicy(max_attempts=3, base_delay_seconds=0.0, max_delay_seconds=0.0),
        sleep=lambda _: None,
        **kwargs,
    )


def _last_error_details(repository: JobRepository, job_id: str) -> dict:
    logs = [
        log
        for log in repository.list_logs(job_id=job_id)
        if log.event_type == JobLogEventType.ERROR
    ]
    return logs[-1].details


def test_successful_handler_completes_pending_job(repository: JobRepository) -> None:
    job = repository.create_job(job_type="video_assessment")
    handler = _Handler()
    runner = _runner(repository, handler)

    assert runner.execute(job.job_id) == JobStatus.COMPLETED

    completed = repository.find_by_id(job.job_id)
    assert completed is not None
    assert completed.status == JobStatus.COMPLETED
    assert handler.calls == 1
    assert runner.monitor_for("video_assessment").get_status().health == (
        ConnectionHealth.CONNECTED
    )


def test_transient_failures_are_absorbed_within_one_attempt(repository: JobRepository) -> None:
    job = repository.create_job(job_type="video_assessment")
    handler = _Handler([ConnectionError("network down"), ConnectionError("network down")])

    assert _runner(repository, handler).execute(job.job_id) == JobStatus.COMPLETED

    completed = repository.find_by_id(job.job_id)
    assert completed is not None
    assert completed.retry_count == 0
    assert handler.calls == 3


def test_non_retryable_failure_fails_job_once(repository: JobRepository) -> None:
    job = repository.create_job(job_type="video_assessment")
    handler = _Handler([PermissionError("Permission denied")])

    assert _runner(repository, handler).execute(job.job_id) == JobStatus.FAILED

    failed = repository.find_by_id(job.job_id)
    assert failed is not None
    assert failed.status == JobStatus.FAILED
    assert failed.retry_count == 1
    assert failed.last_failure_reason == "Permission denied"
    assert handler.calls == 1
    details = _last_error_details(repository, job.job_id)
    assert details["category"] == "permission"
    assert details["is_retryable"] is False
    assert details["error_name"] == "PermissionError"
    assert details["cancelled"] is False
    assert details["classifier_version"] == 1


def test_exhausted_transient_failures_disconnect_the_monitor(repository: JobRepository) -> None:
    job = repository.create_job(job_type="video_assessment")
    handler = _Handler([ConnectionError("network down")] * 3)
    runner = _runner(repository, handler)

    assert runner.execute(job.job_id) == JobStatus.FAILED

    assert handler.calls == 3
    status = runner.monitor_for("video_assessment").get_status()
    assert status.health == ConnectionHealth.DISCONNECTED
    assert status.consecutive_failures == 3


def test_missing_handler_fails_the_job(repository: JobRepository) -> None:
    job = repository.create_job(job_type="transcription")

    assert _runner(repository, _Handler()).execute(job.job_id) == JobStatus.FAILED

    failed = repository.find_by_id(job.job_id)
    assert failed is not None
    assert failed.last_failure_reason is not None
    assert "No handler registered" in failed.last_failure_reason


def test_cancelled_run_marks_job_failed(repository: JobRepository) -> None:
    job = repository.create_job(job_type="video_assessment")
    cancel_event = threading.Event()
    cancel_event.set()
    handler = _Handler()

    status = _runner(repository, handler, cancel_event=cancel_event).execute(job.job_id)

    assert status == JobStatus.FAILED
    assert handler.calls == 0
    assert _last_error_details(repository, job.job_id)["cancelled"] is True


def test_terminal_jobs_are_not_runnable(repository: JobRepository) -> None:
    job = repository.create_job(job_type="video_assessment")
    runner = _runner(repository, _Handler())
    runner.execute(job.job_id)

    with pytest.raises(RuntimeError, match="not runnable"):
        runner.execute(job.job_id)
    with pytest.raises(RuntimeError, match="Job not found"):
        runner.execute("missing")


def test_monitor_is_shared_per_job_type(repository: JobRepository) -> None:
    runner = _runner(repository, _Handler())

    assert runner.monitor_for("video_assessment") is runner.monitor_for("video_assessment")
    assert runner.monitor_for("video_assessment") is not runner.monitor_for("transcription")


def test_runner_takes_retry_policy_from_settings(repository: JobRepository) -> None:
    settings = Settings(retry=RetrySettings(max_attempts=5, base_delay_seconds=0.0))

    runner = JobRunner.from_settings(settings, repository=repository, handlers={})

    assert runner.policy.max_attempts == 5
    assert runner.policy.base_delay_seconds == 0.0


def test_failed_job_recovers_through_retry_controller(repository: JobRepository) -> None:
    job = repository.create_job(job_type="video_assessment")
    handler = _Handler([FileNotFoundError("recording missing")])
    runner = _runner(repository, handler)
    controller = JobRetryController(
        store=repository,
        executor=runner,
        dispatcher=inline_dispatcher,
    )

    assert runner.execute(job.job_id) == JobStatus.FAILED
    result = controller.retry_job(job.job_id)

    assert result.success is True
    recovered = repository.find_by_id(job.job_id)
    assert recovered is not None
    assert recovered.status == JobStatus.COMPLETED
    assert recovered.retry_count == 1
    assert handler.calls == 2
