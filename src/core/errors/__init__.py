"""
Error classification and exception hierarchy.

Provides:
- PipelineError hierarchy for typed exceptions
- Domain errors for the change-feed stages (source, repository, publish)
- Classification utilities for error handling
"""

from core.errors.exceptions import (
    CheckpointError,
    ConfigurationError,
    IngestionCycleError,
    MalformedEventError,
    PermanentError,
    PipelineError,
    PublishError,
    RepositoryError,
    SourceReadError,
    SweepError,
    TransientError,
    classify_exception,
    classify_http_status,
    classify_os_error,
    wrap_exception,
)
from core.types import ErrorCategory

__all__ = [
    "ErrorCategory",
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
