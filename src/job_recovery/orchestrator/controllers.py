"""Controllers for job recovery CLI commands."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from job_recovery.config import Settings
from job_recovery.orchestrator.admin import AdminRetryApi
from job_recovery.orchestrator.controller import (
    JobRetryController,
    inline_dispatcher,
    thread_dispatcher,
)
from job_recovery.orchestrator.models import JobStatus
from job_recovery.orchestrator.repository import JobRepository
from job_recovery.progress import ProgressStore, SqliteKeyValueStore
from job_recovery.storage.alembic_runner import upgrade_head

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class JobCreateCommand:
    """CLI input for job creation."""

    db_path: Path | None
    job_type: str
    subject_ref: str | None


@dataclass(slots=True)
class JobListCommand:
    """CLI input for job listing."""

    db_path: Path | None
    status: str | None
    limit: int


@dataclass(slots=True)
class JobFailedCommand:
    """CLI input for the failed jobs report."""

    db_path: Path | None
    output_format: str = "table"


@dataclass(slots=True)
class JobRetryCommand:
    """CLI input for retry / force retry."""

    db_path: Path | None
    job_id: str
    force: bool


@dataclass(slots=True)
class JobOutcomeCommand:
    """CLI input for reporting an externally executed attempt."""

    db_path: Path | None
    job_id: str
    reason: str | None = None


@dataclass(slots=True)
class ProgressCommand:
    """CLI input for session progress inspection."""

    db_path: Path | None
    job_id: str
    workflow_type: str
    data_json: str | None = None


@dataclass(slots=True)
class CliResult:
    """Lines to render plus overall success flag."""

    lines: list[str]
    success: bool


class HandoffExecutor:
    """Leaves a re-opened job in Processing for the external worker to pick up."""

    def execute(self, job_id: str) -> None:
        logger.info("Job %s handed off to the external executor", job_id)


class JobsCliController:
    """Coordinates job store, retry control, and progress CLI operations."""

    def create_job(self, command: JobCreateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            job = repository.create_job(job_type=command.job_type, subject_ref=command.subject_ref)
        return [f"Job created: job_id={job.job_id} type={job.job_type} status={job.status.value}"]

    def list_jobs(self, command: JobListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status_filter = _parse_status(command.status)
        with _repository(settings) as repository:
            jobs = repository.list_jobs(status=status_filter, limit=command.limit)

        lines = [f"Jobs: {len(jobs)}"]
        for job in jobs:
            lines.append(
                f"  {job.job_id} type={job.job_type} status={job.status.value} "
                f"retry_count={job.retry_count} created_at={job.created_at.isoformat()}",
            )
        return lines

    def failed_jobs(self, command: JobFailedCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            api = AdminRetryApi(_retry_controller(settings, repository))
            response = api.handle_failed_jobs()

        if response.status_code != 200:  # noqa: PLR2004
            raise RuntimeError(str(response.payload.get("error")))
        if command.output_format == "json":
            return [json.dumps(response.payload, ensure_ascii=False, indent=2)]

        rows: list[dict[str, Any]] = response.payload["failedJobs"]
        lines = [f"Failed jobs: {response.payload['count']}"]
        for row in rows:
            lines.append(
                f"  {row['id']} type={row['jobType']} retry_count={row['retryCount']} "
                f"can_auto_retry={'yes' if row['canAutoRetry'] else 'no'} "
                f"reason={row['lastFailureReason'] or '-'} "
                f"last_error_at={row['lastErrorAt'] or '-'}",
            )
        return lines

    def retry_job(self, command: JobRetryCommand) -> CliResult:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            api = AdminRetryApi(_retry_controller(settings, repository))
            response = api.handle_retry({"jobId": command.job_id, "force": command.force})

        if response.payload.get("success"):
            return CliResult(
                lines=[f"{response.payload['message']}: {response.payload['jobId']}"],
                success=True,
            )
        return CliResult(
            lines=[f"Retry rejected ({response.code.value}): {response.payload['error']}"],
            success=False,
        )

    def start_job(self, command: JobOutcomeCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            if not repository.start_job(command.job_id):
                raise RuntimeError(f"Job is not pending: {command.job_id}")
        return [f"Job started: {command.job_id}"]

    def complete_job(self, command: JobOutcomeCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            if not repository.complete_job(command.job_id):
                raise RuntimeError(f"Job is not processing: {command.job_id}")
        return [f"Job completed: {command.job_id}"]

    def fail_job(self, command: JobOutcomeCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            failed = repository.fail_job(command.job_id, reason=command.reason or "Unknown error")
        if failed is None:
            raise RuntimeError(f"Job is not processing: {command.job_id}")
        return [
            f"Job failed: {failed.job_id} retry_count={failed.retry_count}/"
            f"{settings.jobs.max_auto_retries}",
        ]

    def show_progress(self, command: ProgressCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _progress_store(settings) as store:
            progress = store.load_progress(command.job_id, command.workflow_type)
            recent = store.has_recent_progress(
                command.job_id,
                command.workflow_type,
                settings.progress.max_age,
            )
        if progress is None:
            return [f"No progress saved for {command.job_id}/{command.workflow_type}"]
        return [
            f"Progress: {progress.job_id}/{progress.workflow_type}",
            f"Last updated: {progress.last_updated.isoformat()} (recent={'yes' if recent else 'no'})",
            json.dumps(progress.data, ensure_ascii=False, sort_keys=True),
        ]

    def save_progress(self, command: ProgressCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        try:
            data = json.loads(command.data_json or "{}")
        except json.JSONDecodeError as error:
            raise ValueError(f"Progress data must be valid JSON: {error}") from error
        if not isinstance(data, dict):
            raise ValueError("Progress data must be a JSON object.")
        with _progress_store(settings) as store:
            store.save_progress(command.job_id, command.workflow_type, data)
        return [f"Progress saved: {command.job_id}/{command.workflow_type}"]

    def clear_progress(self, command: ProgressCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _progress_store(settings) as store:
            store.clear_progress(command.job_id, command.workflow_type)
        return [f"Progress cleared: {command.job_id}/{command.workflow_type}"]


def _parse_status(value: str | None) -> JobStatus | None:
    if value is None:
        return None
    try:
        return JobStatus(value.lower())
    except ValueError as error:
        raise ValueError(f"Unsupported status: {value!r}") from error


def _retry_controller(settings: Settings, repository: JobRepository) -> JobRetryController:
    return JobRetryController(
        store=repository,
        executor=HandoffExecutor(),
        dispatcher=thread_dispatcher if settings.jobs.dispatch_in_background else inline_dispatcher,
        max_auto_retries=settings.jobs.max_auto_retries,
    )


@contextmanager
def _repository(settings: Settings) -> Iterator[JobRepository]:
    repository = JobRepository(
        db_path=settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
        max_auto_retries=settings.jobs.max_auto_retries,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()


@contextmanager
def _progress_store(settings: Settings) -> Iterator[ProgressStore]:
    upgrade_head(settings.db_path)
    storage = SqliteKeyValueStore(
        settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    try:
        yield ProgressStore(storage)
    finally:
        storage.close()
