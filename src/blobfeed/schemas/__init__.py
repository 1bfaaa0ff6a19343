"""Schemas for change-feed events, file metadata and queue envelopes."""

from blobfeed.schemas.events import BLOB_CREATED, RawEvent
from blobfeed.schemas.metadata import (
    DEFAULT_RETENTION,
    FileMetadata,
    ProcessingStatus,
    PublishEnvelope,
    build_file_metadata,
    derive_file_id,
)
from blobfeed.schemas.notifications import BlobNotification

__all__ = [
    "BLOB_CREATED",
    "RawEvent",
    "DEFAULT_RETENTION",
    "FileMetadata",
    "ProcessingStatus",
    "PublishEnvelope",
    "build_file_metadata",
    "derive_file_id",
    "BlobNotification",
]
