"""
Push-path notification payload.

Accepts the Event Grid BlobCreated shape::

    {"eventType": "Microsoft.Storage.BlobCreated", "eventTime": "...",
     "data": {"url": "...", "storageAccount": "...", "contentType": "...",
              "contentLength": 1024, "blobType": "BlockBlob"}}

as well as the same fields flattened into a single object.
"""

import json
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from core.errors.exceptions import MalformedEventError


class BlobNotification(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    url: str = Field(..., min_length=1)
    storage_account: str | None = None
    content_type: str = Field(..., min_length=1)
    content_length: int = Field(..., ge=0)
    blob_type: str = Field(..., min_length=1)
    event_time: datetime
    event_type: str | None = None

    @field_validator("event_time")
    @classmethod
    def ensure_utc(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            return v.replace(tzinfo=UTC)
        return v.astimezone(UTC)

    @classmethod
    def parse(cls, payload: Any) -> "BlobNotification":
        """
        Parse a notification from a dict, JSON string or bytes.

        Raises:
            MalformedEventError: If the payload is not JSON or misses required fields
        """
        if isinstance(payload, (bytes, bytearray)):
            payload = payload.decode("utf-8")
        if isinstance(payload, str):
            try:
                payload = json.loads(payload)
            except json.JSONDecodeError as e:
                raise MalformedEventError(f"Notification is not valid JSON: {e}", cause=e) from e

        if not isinstance(payload, dict):
            raise MalformedEventError(
                f"Notification must be a JSON object, got {type(payload).__name__}"
            )

        data = payload.get("data")
        if isinstance(data, dict):
            fields = dict(data)
            fields.setdefault("eventTime", payload.get("eventTime"))
            fields.setdefault("eventType", payload.get("eventType"))
        else:
            fields = payload

        try:
            return cls.model_validate(fields)
        except ValidationError as e:
            raise MalformedEventError(
                f"Invalid notification payload: {e.error_count()} error(s)",
                cause=e,
                context={"url": fields.get("url")},
            ) from e


__all__ = ["BlobNotification"]
