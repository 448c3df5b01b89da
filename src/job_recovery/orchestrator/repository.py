"""Persistent job store backed by SQLModel + SQLite."""

from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from job_recovery.orchestrator.models import (
    DEFAULT_MAX_AUTO_RETRIES,
    FailedJobRow,
    JobLogEventType,
    JobLogView,
    JobStatus,
    JobView,
)
from job_recovery.storage.alembic_runner import upgrade_head
from job_recovery.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from job_recovery.storage.sqlmodel_models import Job, JobLog

logger = logging.getLogger(__name__)

_UPDATABLE_FIELDS = frozenset({"status", "retry_count", "last_failure_reason", "subject_ref"})


class JobRepository:
    """Job persistence facade with compare-and-swap status transitions."""

    def __init__(
        self,
        db_path: Path,
        *,
        sqlite_busy_timeout_ms: int = 5_000,
        max_auto_retries: int = DEFAULT_MAX_AUTO_RETRIES,
    ) -> None:
        self.db_path = db_path
        self.max_auto_retries = max_auto_retries
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def create_job(
        self,
        *,
        job_type: str,
        subject_ref: str | None = None,
        job_id: str | None = None,
        created_at: datetime | None = None,
    ) -> JobView:
        """Create a pending job."""

        now = to_db_datetime(created_at or utc_now())
        job_id = job_id or str(uuid4())
        with Session(self.engine) as session:
            row = Job(
                job_id=job_id,
                job_type=job_type,
                subject_ref=subject_ref,
                status=JobStatus.PENDING.value,
                retry_count=0,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            self._add_event(
                session=session,
                job_id=job_id,
                event_type=JobLogEventType.CREATED,
                status_from=None,
                status_to=JobStatus.PENDING,
                details={"job_type": job_type},
            )
            session.commit()
            session.refresh(row)
            return _to_job_view(row)

    def find_by_id(self, job_id: str) -> JobView | None:
        with Session(self.engine) as session:
            row = session.exec(select(Job).where(Job.job_id == job_id)).one_or_none()
            return _to_job_view(row) if row is not None else None

    def find_many_by_status(self, status: JobStatus) -> list[FailedJobRow]:
        """Jobs in ``status``, newest first, each joined with its latest error log."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(Job)
                .where(Job.status == status.value)
                .order_by(col(Job.created_at).desc(), col(Job.job_id).asc()),
            ).all()
            job_ids = [row.job_id for row in rows]
            latest_errors: dict[str, JobLog] = {}
            if job_ids:
                error_rows = session.exec(
                    select(JobLog)
                    .where(
                        col(JobLog.job_id).in_(job_ids),
                        JobLog.event_type == JobLogEventType.ERROR.value,
                    )
                    .order_by(col(JobLog.created_at).desc(), col(JobLog.id).desc()),
                ).all()
                for error_row in error_rows:
                    latest_errors.setdefault(error_row.job_id, error_row)

            return [
                FailedJobRow(
                    job=_to_job_view(row),
                    last_error_log=(
                        _to_log_view(latest_errors[row.job_id])
                        if row.job_id in latest_errors
                        else None
                    ),
                )
                for row in rows
            ]

    def list_jobs(self, *, status: JobStatus | None = None, limit: int = 50) -> list[JobView]:
        """List recent jobs, optionally filtered by status."""

        with Session(self.engine) as session:
            statement = select(Job).order_by(col(Job.created_at).desc()).limit(limit)
            if status is not None:
                statement = statement.where(Job.status == status.value)
            rows = session.exec(statement).all()
        return [_to_job_view(row) for row in rows]

    def list_logs(self, *, job_id: str) -> list[JobLogView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(JobLog)
                .where(JobLog.job_id == job_id)
                .order_by(col(JobLog.created_at).asc(), col(JobLog.id).asc()),
            ).all()
        return [_to_log_view(row) for row in rows]

    def update_job(self, job_id: str, **fields: Any) -> JobView:
        """Unconditional field update; prefer ``transition_status`` for status moves."""

        values = _normalize_fields(fields)
        with Session(self.engine) as session:
            row = session.exec(select(Job).where(Job.job_id == job_id)).one_or_none()
            if row is None:
                raise RuntimeError(f"Job not found: {job_id}")
            for name, value in values.items():
                setattr(row, name, value)
            row.updated_at = to_db_datetime(utc_now())
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_job_view(row)

    def transition_status(  # noqa: PLR0913
        self,
        job_id: str,
        *,
        expected: JobStatus,
        target: JobStatus,
        event_type: JobLogEventType | None = None,
        details: dict[str, object] | None = None,
        **fields: Any,
    ) -> bool:
        """Move ``expected`` → ``target`` only if the row still has ``expected``.

        Returns False when another writer changed the status first.
        """

        values = _normalize_fields(fields)
        now = to_db_datetime(utc_now())
        values["status"] = target.value
        values["updated_at"] = now
        if target == JobStatus.COMPLETED:
            values["completed_at"] = now
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Job)
                .where(
                    col(Job.job_id) == job_id,
                    col(Job.status) == expected.value,
                )
                .values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            if event_type is not None:
                self._add_event(
                    session=session,
                    job_id=job_id,
                    event_type=event_type,
                    status_from=expected,
                    status_to=target,
                    details=details or {},
                )
            session.commit()
            return True

    def start_job(self, job_id: str) -> bool:
        """Pending → Processing for a first attempt."""

        return self.transition_status(
            job_id,
            expected=JobStatus.PENDING,
            target=JobStatus.PROCESSING,
            event_type=JobLogEventType.STARTED,
        )

    def complete_job(self, job_id: str) -> bool:
        """Processing → Completed."""

        return self.transition_status(
            job_id,
            expected=JobStatus.PROCESSING,
            target=JobStatus.COMPLETED,
            event_type=JobLogEventType.COMPLETED,
        )

    def fail_job(
        self,
        job_id: str,
        *,
        reason: str,
        details: dict[str, object] | None = None,
    ) -> JobView | None:
        """Processing → Failed, incrementing retry_count and recording the error.

        Returns the updated job, or None if the job was not processing.
        """

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Job)
                .where(
                    col(Job.job_id) == job_id,
                    col(Job.status) == JobStatus.PROCESSING.value,
                )
                .values(
                    status=JobStatus.FAILED.value,
                    retry_count=col(Job.retry_count) + 1,
                    last_failure_reason=reason,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return None
            self._add_event(
                session=session,
                job_id=job_id,
                event_type=JobLogEventType.ERROR,
                status_from=JobStatus.PROCESSING,
                status_to=JobStatus.FAILED,
                details={"error_message": reason, **(details or {})},
            )
            session.commit()
            row = session.exec(select(Job).where(Job.job_id == job_id)).one()
            failed = _to_job_view(row)

        logger.error(
            "Job failure alert: job %s failed (attempt %d/%d). Reason: %s",
            job_id,
            failed.retry_count,
            self.max_auto_retries,
            reason,
        )
        if failed.retry_count >= self.max_auto_retries:
            logger.error(
                "Job failure alert: job %s has failed %d times and will not be "
                "retried automatically. Admin intervention required.",
                job_id,
                failed.retry_count,
            )
        return failed

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        job_id: str,
        event_type: JobLogEventType,
        status_from: JobStatus | None,
        status_to: JobStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            JobLog(
                job_id=job_id,
                event_type=event_type.value,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True, default=str)
                if details
                else None,
                created_at=to_db_datetime(utc_now()),
            ),
        )


def _normalize_fields(fields: dict[str, Any]) -> dict[str, Any]:
    unknown = set(fields) - _UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"Unsupported job fields: {sorted(unknown)}")
    values = dict(fields)
    status = values.get("status")
    if isinstance(status, JobStatus):
        values["status"] = status.value
    return values


def _optional_aware(value: datetime | None) -> datetime | None:
    return to_utc_aware_datetime(value) if value is not None else None


def _to_job_view(row: Job) -> JobView:
    return JobView(
        job_id=row.job_id,
        job_type=row.job_type,
        subject_ref=row.subject_ref,
        status=JobStatus(row.status),
        retry_count=row.retry_count,
        last_failure_reason=row.last_failure_reason,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
        completed_at=_optional_aware(row.completed_at),
    )


def _to_log_view(row: JobLog) -> JobLogView:
    details: dict[str, Any] = {}
    if row.details_json:
        parsed = json.loads(row.details_json)
        if isinstance(parsed, dict):
            details = parsed
    return JobLogView(
        log_id=row.id or 0,
        job_id=row.job_id,
        event_type=JobLogEventType(row.event_type),
        status_from=JobStatus(row.status_from) if row.status_from is not None else None,
        status_to=JobStatus(row.status_to) if row.status_to is not None else None,
        created_at=to_utc_aware_datetime(row.created_at),
        details=details,
    )
