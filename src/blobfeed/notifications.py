"""Push-path handler for single blob-created notifications.

Shares id derivation and upsert semantics with the change-feed pipeline, so a
blob seen by both paths ends up as one record. No cursor is involved.
"""

import asyncio
import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

from blobfeed.publisher import Publisher
from blobfeed.repository import MetadataRepository
from blobfeed.schemas.metadata import (
    DEFAULT_RETENTION,
    FileMetadata,
    ProcessingStatus,
    build_file_metadata,
)
from blobfeed.schemas.notifications import BlobNotification
from core.errors.exceptions import PublishError, RepositoryError
from core.logging import LogContext, log_exception

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30


class NotificationHandler:
    def __init__(
        self,
        repository: MetadataRepository,
        publisher: Publisher,
        retention: timedelta = DEFAULT_RETENTION,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        clock: Callable[[], datetime] | None = None,
    ):
        self.repository = repository
        self.publisher = publisher
        self.retention = retention
        self.timeout = timeout
        self._clock = clock or (lambda: datetime.now(UTC))

    async def _bounded(self, awaitable, error_cls: type, operation: str):
        try:
            return await asyncio.wait_for(awaitable, timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise error_cls(f"{operation} timed out after {self.timeout}s", cause=e) from e

    async def handle(self, payload: Any) -> FileMetadata:
        """
        Upsert and forward the blob described by one notification.

        Raises:
            MalformedEventError: If the payload cannot be parsed
            RepositoryError: If the metadata write failed
            PublishError: If the queue rejected the message
        """
        notification = BlobNotification.parse(payload)
        metadata = build_file_metadata(
            url=notification.url,
            content_type=notification.content_type,
            content_length=notification.content_length,
            blob_type=notification.blob_type,
            event_time=notification.event_time,
            now=self._clock(),
            retention=self.retention,
            storage_account=notification.storage_account,
        )

        with LogContext(stage="notify", file_id=metadata.id):
            await self._bounded(self.repository.upsert(metadata), RepositoryError, "upsert")
            await self._bounded(self.publisher.publish(metadata), PublishError, "publish")

            try:
                if await self._bounded(
                    self.repository.mark_forwarded(metadata.id), RepositoryError, "mark_forwarded"
                ):
                    metadata = metadata.model_copy(
                        update={"processing_status": ProcessingStatus.FORWARDED}
                    )
            except RepositoryError as e:
                log_exception(
                    logger,
                    e,
                    "Failed to mark metadata as forwarded (non-fatal)",
                    level=logging.WARNING,
                    include_traceback=False,
                )

            logger.info(
                "Notification forwarded",
                extra={"file_id": metadata.id, "blob_url": metadata.url},
            )
        return metadata


__all__ = ["NotificationHandler"]
