"""Retry policy applied to persisted jobs: gated retry, force retry, failed listing."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import Any, Protocol

from job_recovery.orchestrator.models import (
    DEFAULT_MAX_AUTO_RETRIES,
    FailedJobRow,
    FailedJobSummary,
    JobLogEventType,
    JobStatus,
    JobView,
    ResultCode,
    RetryJobResult,
    can_auto_retry,
)

logger = logging.getLogger(__name__)

NOT_FOUND_ERROR = "job not found"
NOT_ELIGIBLE_ERROR = "not eligible for retry"
MAX_RETRIES_ERROR = "maximum retry attempts exceeded"


class JobStore(Protocol):
    def find_by_id(self, job_id: str) -> JobView | None: ...

    def find_many_by_status(self, status: JobStatus) -> list[FailedJobRow]: ...

    def update_job(self, job_id: str, **fields: Any) -> JobView: ...

    def transition_status(  # noqa: PLR0913
        self,
        job_id: str,
        *,
        expected: JobStatus,
        target: JobStatus,
        event_type: JobLogEventType | None = None,
        details: dict[str, object] | None = None,
        **fields: Any,
    ) -> bool: ...


class JobExecutor(Protocol):
    def execute(self, job_id: str) -> object: ...


JobDispatcher = Callable[[Callable[[], None], str], None]


def thread_dispatcher(work: Callable[[], None], name: str) -> None:
    """Run ``work`` on a daemon thread without waiting for it."""

    thread = threading.Thread(target=work, daemon=True, name=name)
    thread.start()


def inline_dispatcher(work: Callable[[], None], _name: str) -> None:
    """Run ``work`` synchronously (CLI one-shot runs and tests)."""

    work()


class JobRetryController:
    """Decides whether a failed job may start a new attempt, then starts it.

    The controller only gates the start of an attempt. The executor owns the
    outcome: it marks the job completed or failed and bumps retry_count.
    """

    def __init__(
        self,
        *,
        store: JobStore,
        executor: JobExecutor,
        dispatcher: JobDispatcher = thread_dispatcher,
        max_auto_retries: int = DEFAULT_MAX_AUTO_RETRIES,
    ) -> None:
        self.store = store
        self.executor = executor
        self.dispatcher = dispatcher
        self.max_auto_retries = max_auto_retries

    def retry_job(self, job_id: str) -> RetryJobResult:
        job = self.store.find_by_id(job_id)
        if job is None:
            return RetryJobResult(
                success=False,
                job_id=None,
                code=ResultCode.NOT_FOUND,
                error=NOT_FOUND_ERROR,
            )
        if job.status != JobStatus.FAILED:
            return _rejected(job_id, NOT_ELIGIBLE_ERROR)
        if not can_auto_retry(job.retry_count, max_auto_retries=self.max_auto_retries):
            return _rejected(job_id, MAX_RETRIES_ERROR)

        moved = self.store.transition_status(
            job_id,
            expected=JobStatus.FAILED,
            target=JobStatus.PROCESSING,
            event_type=JobLogEventType.RETRY_REQUESTED,
            details={"retry_count": job.retry_count},
        )
        if not moved:
            logger.warning("Job %s changed status concurrently; retry not started", job_id)
            return _rejected(job_id, NOT_ELIGIBLE_ERROR)

        logger.info(
            "Retrying job %s (retry_count=%d/%d)",
            job_id,
            job.retry_count,
            self.max_auto_retries,
        )
        self._dispatch(job_id)
        return RetryJobResult(success=True, job_id=job_id, code=ResultCode.OK)

    def force_retry_job(self, job_id: str) -> RetryJobResult:
        """Retry regardless of the cap, resetting retry history first."""

        job = self.store.find_by_id(job_id)
        if job is None:
            return RetryJobResult(
                success=False,
                job_id=None,
                code=ResultCode.NOT_FOUND,
                error=NOT_FOUND_ERROR,
            )
        if job.status != JobStatus.FAILED:
            return _rejected(job_id, NOT_ELIGIBLE_ERROR)

        moved = self.store.transition_status(
            job_id,
            expected=JobStatus.FAILED,
            target=JobStatus.PROCESSING,
            event_type=JobLogEventType.FORCE_RETRY_REQUESTED,
            details={"previous_retry_count": job.retry_count},
            retry_count=0,
            last_failure_reason=None,
        )
        if not moved:
            logger.warning("Job %s changed status concurrently; force retry not started", job_id)
            return _rejected(job_id, NOT_ELIGIBLE_ERROR)

        logger.info("Admin force-retry for job %s (previous retry_count=%d)", job_id, job.retry_count)
        self._dispatch(job_id)
        return RetryJobResult(success=True, job_id=job_id, code=ResultCode.OK)

    def list_failed_jobs(self) -> list[FailedJobSummary]:
        rows = self.store.find_many_by_status(JobStatus.FAILED)
        summaries = [
            FailedJobSummary(
                job_id=row.job.job_id,
                job_type=row.job.job_type,
                subject_ref=row.job.subject_ref,
                retry_count=row.job.retry_count,
                last_failure_reason=row.job.last_failure_reason,
                can_auto_retry=can_auto_retry(
                    row.job.retry_count,
                    max_auto_retries=self.max_auto_retries,
                ),
                last_error=row.last_error_log.details if row.last_error_log else None,
                last_error_at=row.last_error_log.created_at if row.last_error_log else None,
                created_at=row.job.created_at,
            )
            for row in rows
        ]
        summaries.sort(key=lambda summary: summary.created_at, reverse=True)
        return summaries

    def _dispatch(self, job_id: str) -> None:
        def _run() -> None:
            try:
                self.executor.execute(job_id)
            except Exception:
                logger.exception("Retry execution failed for job %s", job_id)

        self.dispatcher(_run, f"job-retry-{job_id}")


def _rejected(job_id: str, reason: str) -> RetryJobResult:
    return RetryJobResult(success=False, job_id=job_id, code=ResultCode.REJECTED, error=reason)
