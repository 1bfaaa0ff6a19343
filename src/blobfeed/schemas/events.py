"""
Raw change-feed event schema.

A RawEvent is one entry read from the storage account's blob change feed,
paired with the cursor token it was read under. It is immutable and only
lives for the duration of one ingestion cycle.
"""

from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from core.errors.exceptions import MalformedEventError

BLOB_CREATED = "BlobCreated"


def storage_account_from_topic(topic: str | None) -> str | None:
    """Extract the account name from an ARM topic (.../storageAccounts/<name>)."""
    if not topic or "/storageAccounts/" not in topic:
        return None
    name = topic.split("/storageAccounts/", 1)[1].split("/", 1)[0]
    return name or None


class RawEvent(BaseModel):
    """One blob mutation event from the change feed.

    Attributes:
        event_type: Change-feed event type (BlobCreated, BlobDeleted, ...)
        blob_url: Full URL of the blob the event refers to
        blob_type: BlockBlob, AppendBlob or PageBlob
        content_type: MIME type reported for the blob
        content_length: Size in bytes
        event_time_utc: When the mutation happened
        source_cursor_token: Cursor that makes this event durable once committed
        event_id: Source-assigned event id, if present
        storage_account: Account name taken from the event topic, if present
    """

    model_config = ConfigDict(frozen=True)

    event_type: str = Field(..., min_length=1)
    blob_url: str = Field(..., min_length=1)
    blob_type: str | None = None
    content_type: str | None = None
    content_length: int = Field(default=0, ge=0)
    event_time_utc: datetime
    source_cursor_token: str | None = None
    event_id: str | None = None
    storage_account: str | None = None

    @field_validator("event_time_utc")
    @classmethod
    def ensure_utc(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            return v.replace(tzinfo=UTC)
        return v.astimezone(UTC)

    @property
    def is_created(self) -> bool:
        return self.event_type == BLOB_CREATED

    @classmethod
    def from_change_feed_record(cls, record: Any, cursor: str | None) -> "RawEvent":
        """
        Parse an Azure blob change-feed record.

        Expected shape::

            {
                "eventType": "BlobCreated",
                "eventTime": "2026-01-05T14:30:00.1234567Z",
                "topic": "/subscriptions/.../storageAccounts/acct",
                "id": "...",
                "data": {"url": "...", "blobType": "BlockBlob",
                         "contentType": "image/jpeg", "contentLength": 1024}
            }

        Raises:
            MalformedEventError: If required fields are missing or invalid
        """
        if not isinstance(record, dict):
            raise MalformedEventError(
                f"Change feed record is not an object: {type(record).__name__}",
                context={"cursor": cursor},
            )

        data = record.get("data")
        if not isinstance(data, dict):
            raise MalformedEventError(
                "Change feed record has no data section",
                context={"event_id": record.get("id"), "cursor": cursor},
            )

        try:
            return cls(
                event_type=record.get("eventType") or "",
                blob_url=data.get("url") or "",
                blob_type=data.get("blobType"),
                content_type=data.get("contentType"),
                content_length=data.get("contentLength") or 0,
                event_time_utc=_parse_event_time(record.get("eventTime")),
                source_cursor_token=cursor,
                event_id=record.get("id"),
                storage_account=storage_account_from_topic(record.get("topic")),
            )
        except (ValidationError, ValueError, TypeError) as e:
            raise MalformedEventError(
                f"Invalid change feed record: {e}",
                cause=e,
                context={"event_id": record.get("id"), "cursor": cursor},
            ) from e


def _parse_event_time(value: Any) -> datetime:
    """Parse an ISO timestamp, trimming the feed's 7-digit fractions to microseconds."""
    if isinstance(value, datetime):
        return value
    if not value or not isinstance(value, str):
        raise ValueError("eventTime is missing")
    text = value.strip().replace("Z", "+00:00")
    if "." in text:
        head, _, rest = text.partition(".")
        digits = ""
        for ch in rest:
            if not ch.isdigit():
                break
            digits += ch
        text = f"{head}.{digits[:6].ljust(6, '0')}{rest[len(digits):]}"
    return datetime.fromisoformat(text)


__all__ = ["BLOB_CREATED", "RawEvent", "storage_account_from_topic"]
