"""Runtime configuration for retry policy, job recovery, and progress storage."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path

from job_recovery.orchestrator.models import DEFAULT_MAX_AUTO_RETRIES, RetryPolicy


@dataclass(slots=True)
class RetrySettings:
    """In-attempt retry with exponential backoff."""

    max_attempts: int = 3
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 30.0

    def to_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.max_attempts,
            base_delay_seconds=self.base_delay_seconds,
            max_delay_seconds=self.max_delay_seconds,
        )


@dataclass(slots=True)
class JobPolicySettings:
    """Cross-attempt retry cap and dispatch mode for failed jobs."""

    max_auto_retries: int = DEFAULT_MAX_AUTO_RETRIES
    dispatch_in_background: bool = True


@dataclass(slots=True)
class ProgressSettings:
    """Session progress retention."""

    max_age_hours: float = 24.0

    @property
    def max_age(self) -> timedelta:
        return timedelta(hours=self.max_age_hours)


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    db_path: Path = Path(".job_recovery.db")
    sqlite_busy_timeout_ms: int = 5_000
    retry: RetrySettings = field(default_factory=RetrySettings)
    jobs: JobPolicySettings = field(default_factory=JobPolicySettings)
    progress: ProgressSettings = field(default_factory=ProgressSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        settings = cls(
            db_path=db_path or Path(os.getenv("JOB_RECOVERY_DB_PATH", ".job_recovery.db")),
            sqlite_busy_timeout_ms=int(os.getenv("JOB_RECOVERY_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            retry=RetrySettings(
                max_attempts=int(os.getenv("JOB_RECOVERY_RETRY_MAX_ATTEMPTS", "3")),
                base_delay_seconds=float(
                    os.getenv("JOB_RECOVERY_RETRY_BASE_DELAY_SECONDS", "1.0"),
                ),
                max_delay_seconds=float(
                    os.getenv("JOB_RECOVERY_RETRY_MAX_DELAY_SECONDS", "30.0"),
                ),
            ),
            jobs=JobPolicySettings(
                max_auto_retries=int(
                    os.getenv("JOB_RECOVERY_MAX_AUTO_RETRIES", str(DEFAULT_MAX_AUTO_RETRIES)),
                ),
                dispatch_in_background=_env_bool(
                    "JOB_RECOVERY_DISPATCH_IN_BACKGROUND",
                    default=True,
                ),
            ),
            progress=ProgressSettings(
                max_age_hours=float(os.getenv("JOB_RECOVERY_PROGRESS_MAX_AGE_HOURS", "24")),
            ),
        )
        settings.validate()
        return settings

    def validate(self) -> None:
        """Raise configuration error for out-of-range values."""

        if self.retry.max_attempts < 1:
            raise ValueError("JOB_RECOVERY_RETRY_MAX_ATTEMPTS must be >= 1.")
        if self.retry.base_delay_seconds < 0:
            raise ValueError("JOB_RECOVERY_RETRY_BASE_DELAY_SECONDS must be >= 0.")
        if self.retry.max_delay_seconds < self.retry.base_delay_seconds:
            raise ValueError(
                "JOB_RECOVERY_RETRY_MAX_DELAY_SECONDS must be >= "
                "JOB_RECOVERY_RETRY_BASE_DELAY_SECONDS.",
            )
        if self.jobs.max_auto_retries < 0:
            raise ValueError("JOB_RECOVERY_MAX_AUTO_RETRIES must be >= 0.")
        if self.progress.max_age_hours <= 0:
            raise ValueError("JOB_RECOVERY_PROGRESS_MAX_AGE_HOURS must be > 0.")
        if self.sqlite_busy_timeout_ms <= 0:
            raise ValueError("JOB_RECOVERY_SQLITE_BUSY_TIMEOUT_MS must be > 0.")


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
