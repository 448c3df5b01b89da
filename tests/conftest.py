"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Iterator
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from job_recovery.orchestrator.models import JobStatus, JobView
from job_recovery.orchestrator.repository import JobRepository

BASE_TIME = datetime(2026, 10, 19, 12, 0, tzinfo=UTC)


@pytest.fixture()
def repository(tmp_path: Path) -> Iterator[JobRepository]:
    repo = JobRepository(tmp_path / "jobs.db")
    repo.init_schema()
    yield repo
    repo.close()


def seed_failed_job(
    repository: JobRepository,
    *,
    retry_count: int,
    minutes: int = 0,
    job_type: str = "video_assessment",
) -> JobView:
    """Insert a job already sitting in Failed with the given retry history."""

    job = repository.create_job(
        job_type=job_type,
        subject_ref=f"subject-{minutes}",
        created_at=BASE_TIME + timedelta(minutes=minutes),
    )
    return repository.update_job(
        job.job_id,
        status=JobStatus.FAILED,
        retry_count=retry_count,
        last_failure_reason="upstream network error",
    )
