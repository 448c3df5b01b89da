"""Domain models for failure classification, retry policy, and job recovery."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

DEFAULT_MAX_AUTO_RETRIES = 3


class ErrorCategory(str, Enum):
    """Failure categories driving retryability and operator messaging."""

    NETWORK = "network"
    PERMISSION = "permission"
    API = "api"
    RESOURCE = "resource"
    BROWSER = "browser"
    SESSION = "session"
    UNKNOWN = "unknown"


RETRYABLE_CATEGORIES: frozenset[ErrorCategory] = frozenset(
    {ErrorCategory.NETWORK, ErrorCategory.API, ErrorCategory.UNKNOWN},
)


@dataclass(frozen=True, slots=True)
class CategorizedError:
    """Structured, retry-relevant view of one raw failure."""

    category: ErrorCategory
    message: str
    is_retryable: bool
    user_message: str
    recovery_action: str
    original_error: object = None
    is_rate_limited: bool = False


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Bounded retry configuration; delays are in seconds."""

    max_attempts: int = 3
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 30.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.base_delay_seconds < 0 or self.max_delay_seconds < 0:
            raise ValueError("Retry delays must be >= 0.")


class ConnectionHealth(str, Enum):
    """Rolling three-state health indicator for one dependency."""

    CONNECTED = "connected"
    DEGRADED = "degraded"
    DISCONNECTED = "disconnected"


@dataclass(frozen=True, slots=True)
class ConnectionStatus:
    """Immutable snapshot of a connection health monitor."""

    health: ConnectionHealth
    last_success_time: datetime | None
    consecutive_failures: int
    last_error: CategorizedError | None


class JobStatus(str, Enum):
    """Durable job lifecycle states."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class JobLogEventType(str, Enum):
    """Audit events recorded against a job."""

    CREATED = "created"
    STARTED = "started"
    COMPLETED = "completed"
    ERROR = "error"
    RETRY_REQUESTED = "retry_requested"
    FORCE_RETRY_REQUESTED = "force_retry_requested"


@dataclass(slots=True)
class JobView:
    """Readable job view for controllers and the CLI."""

    job_id: str
    job_type: str
    subject_ref: str | None
    status: JobStatus
    retry_count: int
    last_failure_reason: str | None
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None = None


@dataclass(slots=True)
class JobLogView:
    """Job log entry for the audit trail."""

    log_id: int
    job_id: str
    event_type: JobLogEventType
    status_from: JobStatus | None
    status_to: JobStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class FailedJobRow:
    """Failed job joined with its most recent error log entry."""

    job: JobView
    last_error_log: JobLogView | None


@dataclass(slots=True)
class FailedJobSummary:
    """Operator-facing row for the failed jobs listing."""

    job_id: str
    job_type: str
    subject_ref: str | None
    retry_count: int
    last_failure_reason: str | None
    can_auto_retry: bool
    last_error: dict[str, Any] | None
    last_error_at: datetime | None
    created_at: datetime


class ResultCode(str, Enum):
    """Outcome codes for administrative retry requests."""

    OK = "ok"
    INVALID_REQUEST = "invalid_request"
    NOT_FOUND = "not_found"
    REJECTED = "rejected"
    INTERNAL_ERROR = "internal_error"


@dataclass(slots=True)
class RetryJobResult:
    """Structured outcome of retry/force-retry; rejections are never raised."""

    success: bool
    job_id: str | None
    code: ResultCode
    error: str | None = None


@dataclass(slots=True)
class SessionProgress:
    """Resumable client-visible workflow snapshot."""

    job_id: str
    workflow_type: str
    last_updated: datetime
    data: dict[str, Any]


def can_auto_retry(retry_count: int, *, max_auto_retries: int = DEFAULT_MAX_AUTO_RETRIES) -> bool:
    """Derived cap check; never persisted separately from retry_count."""

    return retry_count < max_auto_retries
