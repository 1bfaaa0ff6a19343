"""
Core library: reusable, infrastructure-agnostic components.

Modules:
    logging     - Structured JSON logging with cycle correlation IDs
    errors      - Error classification and exception hierarchy
    utils       - JSON serialization helpers

Nothing in here knows about the change feed, Azure Tables or Service Bus;
those live in the ``blobfeed`` package.
"""

from .types import ErrorCategory

__version__ = "0.1.0"

__all__ = [
    "ErrorCategory",
]
