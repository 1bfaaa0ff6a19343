"""
Unified exception hierarchy for the change-feed ingestion pipeline.

Provides typed exceptions with retry classification. Adapters for Azure
services convert SDK exceptions into these types (keeping the original as
``cause``) so the ingestion pipeline and cleanup sweeper only ever reason
about this taxonomy.
"""

import asyncio
import errno
from typing import Any

from core.types import ErrorCategory


class PipelineError(Exception):
    """
    Base exception for all pipeline errors.

    Attributes:
        message: Human-readable error description
        category: Error classification for retry decisions
        cause: Original exception if wrapping
        context: Additional context dict for debugging
    """

    category: ErrorCategory = ErrorCategory.UNKNOWN

    def __init__(
        self,
        message: str,
        cause: Exception | None = None,
        context: dict | None = None,
    ):
        self.message = message
        self.cause = cause
        self.context = context or {}
        super().__init__(message)

    def __str__(self) -> str:
        parts = [self.message]
        if self.cause:
            parts.append(f"Caused by: {str(self.cause) or type(self.cause).__name__}")
        return " | ".join(parts)


class TransientError(PipelineError):
    """Base class for transient/retriable errors."""

    category = ErrorCategory.TRANSIENT


class PermanentError(PipelineError):
    """Base class for permanent/non-retriable errors."""

    category = ErrorCategory.PERMANENT


class ConfigurationError(PermanentError):
    """Invalid or incomplete configuration."""

    def __init__(self, message: str, problems: list[str] | None = None):
        super().__init__(message, context={"problems": problems or []})
        self.problems = problems or []


# =============================================================================
# Domain-Specific Errors
# =============================================================================


class SourceReadError(TransientError):
    """Change-feed page fetch failed. Retried next cycle via the unchanged cursor."""


class RepositoryError(TransientError):
    """Metadata write, query or delete failed."""


class CheckpointError(RepositoryError):
    """Cursor slot could not be read or written."""


class PublishError(TransientError):
    """Queue send failed; the message was not accepted."""


class MalformedEventError(PermanentError):
    """Event is missing required fields and can never be normalized."""


class IngestionCycleError(PipelineError):
    """An ingestion cycle aborted; the cursor was not committed.

    Attributes:
        stage: Pipeline stage that failed (load_cursor, read_events, upsert_metadata,
            publish, commit_cursor)
        report: Cycle report as of the failure
    """

    def __init__(self, stage: str, report: Any, cause: BaseException | None = None):
        super().__init__(
            f"Ingestion cycle failed at {stage}",
            cause=cause,
            context={"stage": stage},
        )
        self.stage = stage
        self.report = report
        self.category = classify_exception(cause) if cause is not None else ErrorCategory.UNKNOWN


class SweepError(RepositoryError):
    """Cleanup sweep aborted by a repository failure; report holds partial counts."""

    def __init__(self, message: str, report: Any, cause: BaseException | None = None):
        super().__init__(message, cause=cause)
        self.report = report


# =============================================================================
# Error Classification Utilities
# =============================================================================

AUTH_ERROR_MARKERS = frozenset(
    {
        "401",
        "unauthorized",
        "authentication",
        "authorizationfailure",
        "authenticationfailed",
        "signature",
        "token expired",
    }
)

TRANSIENT_ERROR_MARKERS = frozenset(
    {
        "429",
        "500",
        "502",
        "503",
        "504",
        "timeout",
        "timed out",
        "connection",
        "throttl",
        "serverbusy",
        "temporarily unavailable",
        "service unavailable",
    }
)


def classify_http_status(status_code: int) -> ErrorCategory:
    """Classify HTTP status code into error category."""
    if status_code in (401, 403):
        return ErrorCategory.AUTH
    if status_code in (408, 429):
        return ErrorCategory.TRANSIENT
    if 400 <= status_code < 500:
        return ErrorCategory.PERMANENT
    if status_code >= 500:
        return ErrorCategory.TRANSIENT
    return ErrorCategory.UNKNOWN


def classify_os_error(error: OSError) -> ErrorCategory:
    """
    Classify OSError by errno into error category.

    Conservative classification: only mark as PERMANENT if certain.
    """
    permanent_errnos = (errno.ENOSPC, errno.EROFS, errno.EACCES, errno.EPERM)
    return ErrorCategory.PERMANENT if error.errno in permanent_errnos else ErrorCategory.TRANSIENT


def classify_exception(exc: BaseException) -> ErrorCategory:
    """Classify an exception into error category."""
    if isinstance(exc, PipelineError):
        return exc.category

    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return ErrorCategory.TRANSIENT

    # azure-core HttpResponseError and friends carry the status code
    status_code = getattr(exc, "status_code", None)
    if isinstance(status_code, int):
        return classify_http_status(status_code)

    if isinstance(exc, OSError):
        return classify_os_error(exc)

    exc_str = f"{type(exc).__name__} {exc}".lower()
    if any(marker in exc_str for marker in AUTH_ERROR_MARKERS):
        return ErrorCategory.AUTH
    if any(marker in exc_str for marker in TRANSIENT_ERROR_MARKERS):
        return ErrorCategory.TRANSIENT

    return ErrorCategory.UNKNOWN


def wrap_exception(
    exc: Exception,
    default_class: type[PipelineError] = PipelineError,
    message: str | None = None,
    context: dict | None = None,
) -> PipelineError:
    """Wrap a generic exception in ``default_class``, keeping the category hint."""
    if isinstance(exc, default_class):
        if context:
            exc.context.update(context)
        return exc

    context = dict(context or {})
    context.setdefault("error_type", type(exc).__name__)
    context.setdefault("error_category", classify_exception(exc).value)

    return default_class(message or str(exc), cause=exc, context=context)


__all__ = [
    "PipelineError",
    "TransientError",
    "PermanentError",
    "ConfigurationError",
    "SourceReadError",
    "RepositoryError",
    "CheckpointError",
    "PublishError",
    "MalformedEventError",
    "IngestionCycleError",
    "SweepError",
    "classify_exception",
    "classify_http_status",
    "classify_os_error",
    "wrap_exception",
]
