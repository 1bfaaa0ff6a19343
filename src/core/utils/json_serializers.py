"""Shared JSON serialization helpers for log records and message payloads."""

from datetime import date, datetime
from enum import Enum
from pathlib import Path
from typing import Any


def json_serializer(obj: Any) -> Any:
    """
    ``default=`` hook for json.dumps.

    - datetime/date -> ISO 8601 string
    - Enum -> value
    - Path -> string
    - pydantic models -> JSON-mode dict
    - anything else -> str()
    """
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, Path):
        return str(obj)
    if hasattr(obj, "model_dump"):
        return obj.model_dump(mode="json")
    return str(obj)


__all__ = ["json_serializer"]
