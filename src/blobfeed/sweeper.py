"""Periodic cleanup of expired file metadata."""

import asyncio
import logging
import time
from collections.abc import Awaitable
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from typing import TypeVar

from blobfeed import metrics
from blobfeed.repository import MetadataRepository
from core.errors.exceptions import RepositoryError, SweepError
from core.logging import log_phase

logger = logging.getLogger(__name__)

DEFAULT_OPERATION_TIMEOUT_SECONDS = 30
DEFAULT_BATCH_SIZE = 500

T = TypeVar("T")


@dataclass
class SweepReport:
    scanned: int = 0
    deleted: int = 0
    already_gone: int = 0
    duration_ms: float = 0.0

    def to_dict(self) -> dict:
        return asdict(self)


class CleanupSweeper:
    """Deletes every metadata record whose expires_at_utc has passed.

    Works in batches: up to batch_size expired ids are read and the listing is
    closed before any of them is deleted, so the repository is never mutated
    while it is being paged. The next batch re-queries, which no longer
    returns the rows just deleted. The operation timeout bounds each listing
    step and each delete, never the sweep as a whole.

    A record that disappears between listing and deleting (concurrent sweep
    or manual cleanup) counts as already_gone.
    """

    def __init__(
        self,
        repository: MetadataRepository,
        operation_timeout_seconds: float = DEFAULT_OPERATION_TIMEOUT_SECONDS,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ):
        self.repository = repository
        self.operation_timeout_seconds = operation_timeout_seconds
        self.batch_size = batch_size

    async def _step(self, phase: str, awaitable: Awaitable[T]) -> T:
        timeout = self.operation_timeout_seconds
        try:
            return await asyncio.wait_for(awaitable, timeout=timeout)
        except asyncio.TimeoutError as e:
            raise RepositoryError(
                f"{phase} timed out after {timeout}s",
                cause=e,
                context={"phase": phase},
            ) from e

    async def _next_batch(self, as_of: datetime) -> list[str]:
        expired = self.repository.list_expired(as_of)
        ids: list[str] = []
        try:
            while len(ids) < self.batch_size:
                try:
                    metadata = await self._step("list_expired", expired.__anext__())
                except StopAsyncIteration:
                    break
                ids.append(metadata.id)
        finally:
            await expired.aclose()
        return ids

    async def sweep(self, now: datetime | None = None) -> SweepReport:
        """
        Delete all records with expires_at_utc < now.

        Raises:
            SweepError: If listing or deleting failed; carries the partial report
        """
        now = now or datetime.now(UTC)
        report = SweepReport()
        started = time.monotonic()

        try:
            while True:
                with log_phase(logger, "list_expired"):
                    batch = await self._next_batch(now)
                report.scanned += len(batch)

                deleted_before = report.deleted
                for file_id in batch:
                    if await self._step("delete", self.repository.delete(file_id)):
                        report.deleted += 1
                    else:
                        report.already_gone += 1

                # A short batch is the tail; a batch with nothing deleted would repeat
                if len(batch) < self.batch_size or report.deleted == deleted_before:
                    break
        except RepositoryError as e:
            report.duration_ms = round((time.monotonic() - started) * 1000, 2)
            metrics.record_swept(report.deleted)
            logger.error(
                "Cleanup sweep aborted",
                extra={
                    **report.to_dict(),
                    "error": str(e),
                    "error_type": type(e).__name__,
                },
            )
            raise SweepError(
                f"Cleanup sweep aborted after {report.deleted} deletion(s)",
                report=report,
                cause=e,
            ) from e

        report.duration_ms = round((time.monotonic() - started) * 1000, 2)
        metrics.record_swept(report.deleted)
        logger.info(
            f"Sweep complete: scanned={report.scanned}, deleted={report.deleted}, "
            f"already_gone={report.already_gone}",
            extra=report.to_dict(),
        )
        return report


__all__ = ["CleanupSweeper", "SweepReport"]
