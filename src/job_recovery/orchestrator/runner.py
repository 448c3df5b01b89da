"""Job executor that runs registered handlers and records each job's outcome."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Mapping

from job_recovery.config import Settings
from job_recovery.orchestrator.classifier import ERROR_CLASSIFIER_VERSION, classify_error
from job_recovery.orchestrator.health import ConnectionHealthMonitor
from job_recovery.orchestrator.models import (
    CategorizedError,
    JobStatus,
    JobView,
    RetryPolicy,
)
from job_recovery.orchestrator.repository import JobRepository
from job_recovery.orchestrator.retry import RetryCancelledError, with_retry

logger = logging.getLogger(__name__)

JobHandler = Callable[[JobView], None]


class JobRunner:
    """Runs one job attempt end to end.

    The handler is wrapped with in-attempt retry for transient failures. When
    it ultimately fails, the job moves to Failed and retry_count grows by one,
    which is what the retry controller's cap is checked against.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: JobRepository,
        handlers: Mapping[str, JobHandler],
        policy: RetryPolicy | None = None,
        cancel_event: threading.Event | None = None,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        self.repository = repository
        self.handlers = dict(handlers)
        self.policy = policy or RetryPolicy()
        self.cancel_event = cancel_event or threading.Event()
        self.sleep = sleep
        self._monitors: dict[str, ConnectionHealthMonitor] = {}
        self._monitors_lock = threading.Lock()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        repository: JobRepository,
        handlers: Mapping[str, JobHandler],
        cancel_event: threading.Event | None = None,
    ) -> JobRunner:
        return cls(
            repository=repository,
            handlers=handlers,
            policy=settings.retry.to_policy(),
            cancel_event=cancel_event,
        )

    def monitor_for(self, job_type: str) -> ConnectionHealthMonitor:
        """Health monitor shared by every run of ``job_type``."""

        with self._monitors_lock:
            monitor = self._monitors.get(job_type)
            if monitor is None:
                monitor = ConnectionHealthMonitor(job_type)
                self._monitors[job_type] = monitor
            return monitor

    def execute(self, job_id: str) -> JobStatus:
        """Run the job and return its final status."""

        job = self.repository.find_by_id(job_id)
        if job is None:
            raise RuntimeError(f"Job not found: {job_id}")
        if job.status == JobStatus.PENDING:
            if not self.repository.start_job(job_id):
                raise RuntimeError(f"Job state changed concurrently while starting: {job_id}")
        elif job.status != JobStatus.PROCESSING:
            raise RuntimeError(f"Job {job_id} is not runnable from status={job.status.value}")

        handler = self.handlers.get(job.job_type)
        if handler is None:
            self._fail(
                job_id,
                classify_error(f"No handler registered for job type {job.job_type!r}"),
            )
            return JobStatus.FAILED

        monitor = self.monitor_for(job.job_type)

        def _on_retry(attempt: int, error: CategorizedError, delay: float) -> None:
            logger.info(
                "Job %s: retry %d/%d in %.2fs after %s error",
                job_id,
                attempt,
                self.policy.max_attempts - 1,
                delay,
                error.category.value,
            )

        try:
            with_retry(
                lambda: monitor.guarded(lambda: handler(job)),
                self.policy,
                on_retry=_on_retry,
                cancel_event=self.cancel_event,
                sleep=self.sleep,
            )
        except RetryCancelledError as error:
            categorized = error.last_error or classify_error(error)
            self._fail(job_id, categorized, cancelled=True)
            return JobStatus.FAILED
        except Exception as error:  # noqa: BLE001
            self._fail(job_id, classify_error(error))
            return JobStatus.FAILED

        if not self.repository.complete_job(job_id):
            logger.warning("Job %s was no longer processing when it completed", job_id)
        return JobStatus.COMPLETED

    def _fail(self, job_id: str, error: CategorizedError, *, cancelled: bool = False) -> None:
        original = error.original_error
        failed = self.repository.fail_job(
            job_id,
            reason=error.message,
            details={
                "category": error.category.value,
                "is_retryable": error.is_retryable,
                "user_message": error.user_message,
                "error_name": type(original).__name__ if original is not None else None,
                "cancelled": cancelled,
                "classifier_version": ERROR_CLASSIFIER_VERSION,
            },
        )
        if failed is None:
            logger.warning("Job %s was no longer processing when it failed", job_id)
