"""Deterministic failure classification for retry policy and operator messaging.

Classification runs in two layers. Failures raised at a call boundary that
already knows what went wrong (``CategorizedFailure``, ``httpx`` status and
transport errors, a few builtin exception types) are mapped structurally.
Everything else falls through to the substring table below, which exists for
opaque third-party errors that carry nothing but a message.
"""

from __future__ import annotations

import httpx

from job_recovery.orchestrator.models import (
    RETRYABLE_CATEGORIES,
    CategorizedError,
    ErrorCategory,
)

ERROR_CLASSIFIER_VERSION = 1

# Matching is case-sensitive: "API" must not match "rapid".
_PERMISSION_PATTERNS: tuple[str, ...] = (
    "Permission denied",
    "NotAllowedError",
)
_PERMISSION_TYPE_NAMES: frozenset[str] = frozenset({"NotAllowedError", "PermissionDeniedError"})
_NETWORK_PATTERNS: tuple[str, ...] = (
    "fetch",
    "network",
    "Failed to fetch",
    "NetworkError",
    "ECONNREFUSED",
    "timeout",
    "ETIMEDOUT",
)
_API_PATTERNS: tuple[str, ...] = (
    "API",
    "quota",
    "rate limit",
    "429",
    "503",
    "500",
)
_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "quota",
    "rate limit",
    "429",
)
_SESSION_PATTERNS: tuple[str, ...] = (
    "session",
    "expired",
    "Unauthorized",
    "401",
)
_BROWSER_PATTERNS: tuple[str, ...] = (
    "not supported",
    "NotSupportedError",
    "NotFoundError",
)
_BROWSER_TYPE_NAMES: frozenset[str] = frozenset({"NotSupportedError", "NotFoundError"})
_RESOURCE_PATTERNS: tuple[str, ...] = (
    "not found",
    "404",
    "unavailable",
)

_USER_MESSAGES: dict[ErrorCategory, tuple[str, str]] = {
    ErrorCategory.PERMISSION: (
        "Permission was denied. Please enable access in your browser settings.",
        "Check browser permissions and try again",
    ),
    ErrorCategory.NETWORK: (
        "Connection issue detected. Please check your internet connection.",
        "Retry connection",
    ),
    ErrorCategory.API: (
        "Service encountered an error. Please try again.",
        "Retry",
    ),
    ErrorCategory.SESSION: (
        "Your session has expired. Please sign in again.",
        "Sign in",
    ),
    ErrorCategory.BROWSER: (
        "This feature is not supported in your browser. "
        "Please try a modern browser like Chrome, Firefox, or Safari.",
        "Use a different browser",
    ),
    ErrorCategory.RESOURCE: (
        "The requested resource is not available.",
        "Go back",
    ),
    ErrorCategory.UNKNOWN: (
        "Something went wrong. Please try again.",
        "Retry",
    ),
}
_RATE_LIMITED_USER_MESSAGE = "Service is temporarily busy. Please wait a moment and try again."


class CategorizedFailure(Exception):
    """Failure raised by a call boundary that already knows its category."""

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory,
        rate_limited: bool = False,
        user_message: str | None = None,
    ) -> None:
        super().__init__(message)
        self.category = category
        self.rate_limited = rate_limited
        self.user_message = user_message


def classify_error(error: object) -> CategorizedError:
    """Map any raised value (or plain string) to a ``CategorizedError``.

    Never raises: unrecognized input lands in ``ErrorCategory.UNKNOWN``,
    which is treated as retryable.
    """

    message = _message_of(error)

    if isinstance(error, CategorizedFailure):
        return _build(
            error.category,
            message=message,
            error=error,
            rate_limited=error.rate_limited,
            user_message=error.user_message,
        )

    structural = _classify_structural(error)
    if structural is not None:
        category, rate_limited = structural
        return _build(category, message=message, error=error, rate_limited=rate_limited)

    type_name = type(error).__name__ if isinstance(error, BaseException) else ""

    if _first_match(message, _PERMISSION_PATTERNS) or type_name in _PERMISSION_TYPE_NAMES:
        return _build(ErrorCategory.PERMISSION, message=message, error=error)

    if _first_match(message, _NETWORK_PATTERNS):
        return _build(ErrorCategory.NETWORK, message=message, error=error)

    if _first_match(message, _API_PATTERNS):
        return _build(
            ErrorCategory.API,
            message=message,
            error=error,
            rate_limited=_first_match(message, _RATE_LIMIT_PATTERNS) is not None,
        )

    if _first_match(message, _SESSION_PATTERNS):
        return _build(ErrorCategory.SESSION, message=message, error=error)

    if _first_match(message, _BROWSER_PATTERNS) or type_name in _BROWSER_TYPE_NAMES:
        return _build(ErrorCategory.BROWSER, message=message, error=error)

    if _first_match(message, _RESOURCE_PATTERNS):
        return _build(ErrorCategory.RESOURCE, message=message, error=error)

    return _build(ErrorCategory.UNKNOWN, message=message, error=error)


def is_retryable_category(category: ErrorCategory) -> bool:
    return category in RETRYABLE_CATEGORIES


def _classify_structural(error: object) -> tuple[ErrorCategory, bool] | None:  # noqa: PLR0911
    if isinstance(error, httpx.HTTPStatusError):
        status_code = error.response.status_code
        if status_code == 401:  # noqa: PLR2004
            return ErrorCategory.SESSION, False
        if status_code == 403:  # noqa: PLR2004
            return ErrorCategory.PERMISSION, False
        if status_code == 404:  # noqa: PLR2004
            return ErrorCategory.RESOURCE, False
        if status_code == 429:  # noqa: PLR2004
            return ErrorCategory.API, True
        if status_code >= 500:  # noqa: PLR2004
            return ErrorCategory.API, False
        return None
    if isinstance(error, (httpx.TimeoutException, httpx.NetworkError)):
        return ErrorCategory.NETWORK, False
    if isinstance(error, PermissionError):
        return ErrorCategory.PERMISSION, False
    if isinstance(error, (ConnectionError, TimeoutError)):
        return ErrorCategory.NETWORK, False
    if isinstance(error, FileNotFoundError):
        return ErrorCategory.RESOURCE, False
    if isinstance(error, NotImplementedError):
        return ErrorCategory.BROWSER, False
    return None


def _build(
    category: ErrorCategory,
    *,
    message: str,
    error: object,
    rate_limited: bool = False,
    user_message: str | None = None,
) -> CategorizedError:
    default_user_message, recovery_action = _USER_MESSAGES[category]
    if user_message is None:
        user_message = (
            _RATE_LIMITED_USER_MESSAGE
            if category == ErrorCategory.API and rate_limited
            else default_user_message
        )
    return CategorizedError(
        category=category,
        message=message,
        is_retryable=is_retryable_category(category),
        user_message=user_message,
        recovery_action=recovery_action,
        original_error=error,
        is_rate_limited=rate_limited,
    )


def _message_of(error: object) -> str:
    try:
        return str(error)
    except Exception:  # noqa: BLE001
        return f"<unprintable {type(error).__name__}>"


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
