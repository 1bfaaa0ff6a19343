"""
Normalized file metadata and the queue envelope that carries it.

FileMetadata.id is derived from the blob URL only, so every path that sees
the same blob (change-feed replay, push notification) produces the same id
and the repository upsert stays idempotent.
"""

import hashlib
import json
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING, Any
from urllib.parse import unquote, urlsplit, urlunsplit

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from core.errors.exceptions import MalformedEventError

if TYPE_CHECKING:
    from blobfeed.schemas.events import RawEvent

DEFAULT_RETENTION = timedelta(days=7)
DEFAULT_CONTENT_TYPE = "application/octet-stream"


class ProcessingStatus(str, Enum):
    PENDING = "Pending"
    FORWARDED = "Forwarded"


def normalize_blob_url(blob_url: str) -> str:
    """Lower-case scheme and host, drop query string (SAS) and fragment."""
    parts = urlsplit(blob_url.strip())
    if not parts.scheme or not parts.netloc:
        raise MalformedEventError(f"Blob URL is not absolute: {blob_url!r}")
    return urlunsplit((parts.scheme.lower(), parts.netloc.lower(), parts.path, "", ""))


def derive_file_id(blob_url: str) -> str:
    """Deterministic id for a blob: sha256 hex digest of its normalized URL."""
    return hashlib.sha256(normalize_blob_url(blob_url).encode("utf-8")).hexdigest()


def file_name_from_url(blob_url: str) -> str:
    path = urlsplit(blob_url).path
    name = unquote(path.rsplit("/", 1)[-1]) if "/" in path else ""
    if not name:
        raise MalformedEventError(f"Blob URL has no file name: {blob_url!r}")
    return name


def storage_account_from_url(blob_url: str) -> str:
    host = urlsplit(blob_url).hostname or ""
    return host.split(".", 1)[0]


class FileMetadata(BaseModel):
    """Normalized metadata record for one blob.

    Serialized with camelCase keys on the wire (``fileName``, ``expiresAtUtc``...).

    Attributes:
        id: sha256 of the normalized blob URL
        file_name: Last path segment of the URL, URL-decoded
        url: Blob URL as reported by the source
        storage_account: Account that holds the blob
        content_type: MIME type
        file_size_bytes: Content length
        blob_type: BlockBlob, AppendBlob or PageBlob
        event_time_utc: When the blob was written
        ingested_at_utc: When this record was built
        expires_at_utc: ingested_at_utc + retention window
        processing_status: Pending until the publish succeeded
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str = Field(..., min_length=1)
    file_name: str
    url: str
    storage_account: str
    content_type: str = DEFAULT_CONTENT_TYPE
    file_size_bytes: int = Field(default=0, ge=0)
    blob_type: str | None = None
    event_time_utc: datetime
    ingested_at_utc: datetime
    expires_at_utc: datetime
    processing_status: ProcessingStatus = ProcessingStatus.PENDING

    def is_expired(self, as_of: datetime) -> bool:
        return self.expires_at_utc < as_of

    def to_message(self) -> str:
        """JSON payload sent to the downstream queue."""
        return self.model_dump_json(by_alias=True)

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)

    @classmethod
    def from_document(cls, data: dict[str, Any]) -> "FileMetadata":
        return cls.model_validate(data)

    @classmethod
    def from_raw_event(
        cls,
        event: "RawEvent",
        now: datetime,
        retention: timedelta = DEFAULT_RETENTION,
    ) -> "FileMetadata":
        return build_file_metadata(
            url=event.blob_url,
            content_type=event.content_type,
            content_length=event.content_length,
            blob_type=event.blob_type,
            event_time=event.event_time_utc,
            now=now,
            retention=retention,
            storage_account=event.storage_account,
        )


def build_file_metadata(
    url: str,
    content_type: str | None,
    content_length: int,
    blob_type: str | None,
    event_time: datetime,
    now: datetime,
    retention: timedelta = DEFAULT_RETENTION,
    storage_account: str | None = None,
) -> FileMetadata:
    """
    Normalize blob attributes into a Pending FileMetadata record.

    Raises:
        MalformedEventError: If the URL is not absolute or has no file name
    """
    if now.tzinfo is None:
        now = now.replace(tzinfo=UTC)

    return FileMetadata(
        id=derive_file_id(url),
        file_name=file_name_from_url(url),
        url=url,
        storage_account=storage_account or storage_account_from_url(url),
        content_type=content_type or DEFAULT_CONTENT_TYPE,
        file_size_bytes=content_length,
        blob_type=blob_type,
        event_time_utc=event_time,
        ingested_at_utc=now,
        expires_at_utc=now + retention,
        processing_status=ProcessingStatus.PENDING,
    )


@dataclass
class PublishEnvelope:
    """Message unit handed to the queue. Consumers dedupe on message_id."""

    message_id: str
    body: bytes
    content_type: str = "application/json"
    application_properties: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_metadata(cls, metadata: FileMetadata, event_type: str = "FileMetadata") -> "PublishEnvelope":
        return cls(
            message_id=metadata.id,
            body=metadata.to_message().encode("utf-8"),
            application_properties={
                "file_id": metadata.id,
                "event_type": event_type,
                "storage_account": metadata.storage_account,
            },
        )

    def to_json_line(self) -> str:
        return json.dumps(
            {
                "message_id": self.message_id,
                "content_type": self.content_type,
                "application_properties": self.application_properties,
                "body": json.loads(self.body),
            },
            separators=(",", ":"),
        )


__all__ = [
    "DEFAULT_RETENTION",
    "ProcessingStatus",
    "FileMetadata",
    "PublishEnvelope",
    "build_file_metadata",
    "derive_file_id",
    "file_name_from_url",
    "normalize_blob_url",
    "storage_account_from_url",
]
