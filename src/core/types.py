"""
Core types shared across modules.

Provides the error classification enum used by the exception hierarchy and
the logging utilities so both agree on a single set of categories.
"""

from enum import Enum


class ErrorCategory(Enum):
    """
    Classification of error types for handling decisions.

    Categories:
        TRANSIENT: Temporary failures; the next cycle retries from the old cursor
                   (e.g., network timeouts, 429/503 errors)
        AUTH: Authentication failures (e.g., 401/403, expired SAS)
        PERMANENT: Non-retriable failures that won't succeed on retry
                   (e.g., malformed events, configuration issues)
        UNKNOWN: Unclassified errors, treated like transient ones
    """

    TRANSIENT = "transient"
    AUTH = "auth"
    PERMANENT = "permanent"
    UNKNOWN = "unknown"


__all__ = [
    "ErrorCategory",
]
