"""Transport-agnostic administrative surface for retrying and listing failed jobs.

Handlers return an ``AdminResponse`` carrying a result code, an HTTP-style
status code, and a JSON-ready payload, so any web layer can serve them as is.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from job_recovery.orchestrator.controller import JobRetryController
from job_recovery.orchestrator.models import FailedJobSummary, ResultCode

logger = logging.getLogger(__name__)

STATUS_CODES: dict[ResultCode, int] = {
    ResultCode.OK: 200,
    ResultCode.INVALID_REQUEST: 400,
    ResultCode.NOT_FOUND: 404,
    ResultCode.REJECTED: 400,
    ResultCode.INTERNAL_ERROR: 500,
}
_ID_FIELDS = ("jobId", "videoAssessmentId")
INTERNAL_ERROR_MESSAGE = "Internal server error"


@dataclass(slots=True)
class AdminResponse:
    code: ResultCode
    status_code: int
    payload: dict[str, Any]


class AdminRetryApi:
    """``POST retry`` and ``GET failed-jobs`` handlers over a retry controller."""

    def __init__(self, controller: JobRetryController) -> None:
        self.controller = controller

    def handle_retry(self, body: object) -> AdminResponse:
        if not isinstance(body, Mapping):
            return _missing_job_id()
        job_id = _extract_job_id(body)
        if job_id is None:
            return _missing_job_id()
        force = bool(body.get("force", False))

        try:
            result = (
                self.controller.force_retry_job(job_id)
                if force
                else self.controller.retry_job(job_id)
            )
        except Exception:
            logger.exception("Error retrying job %s", job_id)
            return _response(
                ResultCode.INTERNAL_ERROR,
                {"success": False, "error": INTERNAL_ERROR_MESSAGE},
            )

        if not result.success:
            return _response(
                result.code,
                {"success": False, "error": result.error or "Failed to retry job"},
            )
        return _response(
            ResultCode.OK,
            {
                "success": True,
                "jobId": result.job_id,
                "message": (
                    "Job force-retry initiated (retry count reset)"
                    if force
                    else "Job retry initiated"
                ),
            },
        )

    def handle_failed_jobs(self) -> AdminResponse:
        try:
            summaries = self.controller.list_failed_jobs()
        except Exception:
            logger.exception("Error listing failed jobs")
            return _response(
                ResultCode.INTERNAL_ERROR,
                {"success": False, "error": INTERNAL_ERROR_MESSAGE},
            )
        return _response(
            ResultCode.OK,
            {
                "failedJobs": [failed_job_payload(summary) for summary in summaries],
                "count": len(summaries),
            },
        )


def failed_job_payload(summary: FailedJobSummary) -> dict[str, Any]:
    return {
        "id": summary.job_id,
        "jobType": summary.job_type,
        "subjectRef": summary.subject_ref,
        "createdAt": summary.created_at.isoformat(),
        "retryCount": summary.retry_count,
        "lastFailureReason": summary.last_failure_reason,
        "canAutoRetry": summary.can_auto_retry,
        "lastError": summary.last_error,
        "lastErrorAt": summary.last_error_at.isoformat() if summary.last_error_at else None,
    }


def _extract_job_id(body: Mapping[str, Any]) -> str | None:
    for name in _ID_FIELDS:
        value = body.get(name)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _missing_job_id() -> AdminResponse:
    return _response(
        ResultCode.INVALID_REQUEST,
        {"success": False, "error": "jobId is required"},
    )


def _response(code: ResultCode, payload: dict[str, Any]) -> AdminResponse:
    return AdminResponse(code=code, status_code=STATUS_CODES[code], payload=payload)
