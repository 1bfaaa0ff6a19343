"""Change-feed ingestion pipeline.

One cycle:
    acquire partition lock -> load cursor -> read events -> filter/normalize
    -> upsert metadata -> publish -> mark forwarded (best-effort)
    -> commit cursor -> release lock

The cursor is committed once, at the end of a successful cycle, and only to
the advancing cursor of the last event whose metadata write AND publish both
succeeded (or that was filtered or malformed). Any SourceReadError,
RepositoryError or PublishError aborts the cycle without committing, so the
next cycle retries from the old cursor. Upsert and publish are therefore
both safe to repeat: the file id is derived from the blob URL.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any, TypeVar

from blobfeed import metrics
from blobfeed.cursor_store import CursorStore
from blobfeed.event_reader import EventReader
from blobfeed.publisher import Publisher
from blobfeed.repository import MetadataRepository
from blobfeed.schemas.events import RawEvent
from blobfeed.schemas.metadata import FileMetadata
from core.errors.exceptions import (
    CheckpointError,
    IngestionCycleError,
    MalformedEventError,
    PipelineError,
    PublishError,
    RepositoryError,
)
from core.logging import LogContext, format_cycle_output, generate_cycle_id, log_exception
from core.logging.context import set_log_context

if TYPE_CHECKING:
    from config.config import IngestionConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")

STATUS_COMMITTED = "committed"
STATUS_UNCHANGED = "unchanged"
STATUS_SKIPPED = "skipped"
STATUS_FAILED = "failed"


@dataclass
class CycleReport:
    """Outcome of one run_cycle() call."""

    cycle_id: str
    partition_id: str
    status: str = STATUS_UNCHANGED
    events_read: int = 0
    events_forwarded: int = 0
    events_filtered: int = 0
    events_malformed: int = 0
    status_update_failures: int = 0
    previous_cursor: str | None = None
    committed_cursor: str | None = None
    failed_stage: str | None = None
    error: str | None = None
    duration_ms: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class IngestionPipeline:
    """Runs ingestion cycles for one change-feed partition.

    At most one cycle runs at a time per partition. A call made while this
    instance is mid-cycle, or while another process holds the cursor store's
    partition lock, returns a "skipped" report immediately.
    """

    def __init__(
        self,
        config: "IngestionConfig",
        cursor_store: CursorStore,
        reader: EventReader,
        repository: MetadataRepository,
        publisher: Publisher,
        clock: Callable[[], datetime] | None = None,
    ):
        self.config = config
        self.cursor_store = cursor_store
        self.reader = reader
        self.repository = repository
        self.publisher = publisher
        self._clock = clock or (lambda: datetime.now(UTC))
        self._retention = timedelta(days=config.retention_days)
        self._lock = asyncio.Lock()
        self._stage = ""

    @property
    def partition_id(self) -> str:
        return self.config.partition_id

    @property
    def is_running(self) -> bool:
        return self._lock.locked()

    def _enter_stage(self, stage: str) -> None:
        self._stage = stage
        set_log_context(stage=stage)

    async def _call(
        self,
        stage: str,
        error_cls: type[PipelineError],
        awaitable: Awaitable[T],
    ) -> T:
        """Await a collaborator call bounded by the operation timeout."""
        self._enter_stage(stage)
        timeout = self.config.operation_timeout_seconds
        try:
            return await asyncio.wait_for(awaitable, timeout=timeout)
        except asyncio.TimeoutError as e:
            raise error_cls(
                f"{stage} timed out after {timeout}s",
                cause=e,
                context={"stage": stage},
            ) from e

    async def run_cycle(self) -> CycleReport:
        """Run one ingestion cycle.

        Returns:
            CycleReport with status committed, unchanged or skipped

        Raises:
            IngestionCycleError: If any stage failed; the cursor was not committed
        """
        cycle_id = generate_cycle_id()

        if self._lock.locked():
            return self._skip(cycle_id, "Previous ingestion cycle still running, skipping")

        async with self._lock:
            with LogContext(cycle_id=cycle_id, partition_id=self.partition_id):
                try:
                    acquired = await self._call(
                        "acquire_lock",
                        CheckpointError,
                        self.cursor_store.acquire(self.partition_id),
                    )
                except CheckpointError as e:
                    report = CycleReport(cycle_id=cycle_id, partition_id=self.partition_id)
                    self._fail(report, time.monotonic(), str(e))
                    log_exception(
                        logger,
                        e,
                        "Could not acquire partition lock, cycle not started",
                        include_traceback=False,
                    )
                    raise IngestionCycleError(report.failed_stage, report, e) from e
                finally:
                    set_log_context(stage="")

                if not acquired:
                    return self._skip(
                        cycle_id, "Partition locked by another ingestion run, skipping"
                    )
                try:
                    return await self._run_locked(cycle_id)
                finally:
                    await self._release_lock()

    def _skip(self, cycle_id: str, message: str) -> CycleReport:
        report = CycleReport(
            cycle_id=cycle_id, partition_id=self.partition_id, status=STATUS_SKIPPED
        )
        logger.warning(message, extra={"cycle_id": cycle_id, "status": report.status})
        metrics.record_cycle(STATUS_SKIPPED, 0.0)
        return report

    async def _release_lock(self) -> None:
        # An unreleased lock lapses on its own, so a failure here is not fatal
        try:
            await asyncio.wait_for(
                self.cursor_store.release(self.partition_id),
                timeout=self.config.operation_timeout_seconds,
            )
        except (CheckpointError, asyncio.TimeoutError) as e:
            logger.warning(
                "Failed to release partition lock",
                extra={"error": str(e) or type(e).__name__, "error_type": type(e).__name__},
            )

    async def _run_locked(self, cycle_id: str) -> CycleReport:
        report = CycleReport(cycle_id=cycle_id, partition_id=self.partition_id)
        started = time.monotonic()

        try:
            previous = await self._call(
                "load_cursor", CheckpointError, self.cursor_store.get(self.partition_id)
            )
            report.previous_cursor = previous
            candidate = await self._consume(previous, report, started)

            self._enter_stage("commit_cursor")
            if candidate is not None and candidate != previous:
                await self._call(
                    "commit_cursor",
                    CheckpointError,
                    self.cursor_store.set(self.partition_id, candidate),
                )
                report.committed_cursor = candidate
                report.status = STATUS_COMMITTED
                metrics.record_cursor_commit()
            else:
                report.committed_cursor = previous
                report.status = STATUS_UNCHANGED

        except asyncio.CancelledError:
            self._fail(report, started, "cancelled")
            logger.warning(
                "Ingestion cycle cancelled, cursor not committed",
                extra=self._report_extra(report),
            )
            raise

        except Exception as e:
            self._fail(report, started, str(e))
            log_exception(
                logger,
                e,
                f"Ingestion cycle aborted at {report.failed_stage}, cursor not committed",
                include_traceback=not isinstance(e, PipelineError),
                **self._report_extra(report),
            )
            raise IngestionCycleError(report.failed_stage, report, e) from e

        finally:
            set_log_context(stage="", file_id="")

        report.duration_ms = round((time.monotonic() - started) * 1000, 2)
        metrics.record_cycle(report.status, report.duration_ms / 1000)
        self._record_event_metrics(report)
        logger.info(
            format_cycle_output(
                cycle_id,
                report.status,
                report.events_read,
                report.events_forwarded,
                filtered=report.events_filtered,
                malformed=report.events_malformed,
                duration_ms=report.duration_ms,
            ),
            extra=self._report_extra(report),
        )
        return report

    async def _consume(
        self, previous: str | None, report: CycleReport, started: float
    ) -> str | None:
        """Process events in order; return the cursor covering every completed event.

        The time budget only ends the cycle at a page boundary. Mid-page events
        all advance to the page's start token, so stopping inside the first
        page would commit nothing and the next cycle would replay it forever.
        """
        candidate = previous
        budget = self.config.cycle_time_budget_seconds
        limit = self.config.max_events_per_cycle

        self._enter_stage("read_events")
        events = self.reader.read(previous)
        try:
            async for item, advancing in events:
                report.events_read += 1
                await self._handle(item, report)
                page_completed = advancing != candidate
                candidate = advancing

                if report.events_read >= limit:
                    logger.info(
                        "Cycle batch limit reached, stopping early",
                        extra={"events_read": report.events_read},
                    )
                    break
                if page_completed and time.monotonic() - started >= budget:
                    logger.info(
                        "Cycle time budget exhausted, stopping at page boundary",
                        extra={"events_read": report.events_read},
                    )
                    break
                self._enter_stage("read_events")
        finally:
            await events.aclose()

        return candidate

    async def _handle(self, item: RawEvent | MalformedEventError, report: CycleReport) -> None:
        """Apply one event's effects. Returns normally only if the cursor may pass it."""
        if isinstance(item, MalformedEventError):
            self._skip_malformed(item, report)
            return

        if not item.is_created:
            report.events_filtered += 1
            logger.debug(
                "Filtered non-create event",
                extra={"event_type": item.event_type, "event_id": item.event_id},
            )
            return

        try:
            metadata = FileMetadata.from_raw_event(item, self._clock(), self._retention)
        except MalformedEventError as e:
            self._skip_malformed(e, report)
            return

        set_log_context(file_id=metadata.id)
        await self._call("upsert_metadata", RepositoryError, self.repository.upsert(metadata))
        await self._call("publish", PublishError, self.publisher.publish(metadata))
        report.events_forwarded += 1

        try:
            found = await self._call(
                "mark_forwarded", RepositoryError, self.repository.mark_forwarded(metadata.id)
            )
        except RepositoryError as e:
            report.status_update_failures += 1
            log_exception(
                logger,
                e,
                "Failed to mark metadata as forwarded (non-fatal)",
                level=logging.WARNING,
                include_traceback=False,
                file_id=metadata.id,
            )
        else:
            if not found:
                logger.debug(
                    "Metadata vanished before status update",
                    extra={"file_id": metadata.id},
                )
        finally:
            set_log_context(file_id="")

    @staticmethod
    def _skip_malformed(error: MalformedEventError, report: CycleReport) -> None:
        report.events_malformed += 1
        log_exception(
            logger,
            error,
            "Skipping malformed change feed event",
            level=logging.WARNING,
            include_traceback=False,
            event_id=error.context.get("event_id"),
        )

    def _fail(self, report: CycleReport, started: float, error: str) -> None:
        report.status = STATUS_FAILED
        report.failed_stage = self._stage or "load_cursor"
        report.error = error
        report.duration_ms = round((time.monotonic() - started) * 1000, 2)
        metrics.record_cycle(STATUS_FAILED, report.duration_ms / 1000)
        self._record_event_metrics(report)

    @staticmethod
    def _record_event_metrics(report: CycleReport) -> None:
        metrics.record_event("forwarded", report.events_forwarded)
        metrics.record_event("filtered", report.events_filtered)
        metrics.record_event("malformed", report.events_malformed)

    @staticmethod
    def _report_extra(report: CycleReport) -> dict[str, Any]:
        return {
            "status": report.status,
            "events_read": report.events_read,
            "events_forwarded": report.events_forwarded,
            "events_filtered": report.events_filtered,
            "events_malformed": report.events_malformed,
            "status_update_failures": report.status_update_failures,
            "previous_cursor": report.previous_cursor,
            "committed_cursor": report.committed_cursor,
            "failed_stage": report.failed_stage,
            "duration_ms": report.duration_ms,
        }


__all__ = [
    "CycleReport",
    "IngestionPipeline",
    "IngestionCycleError",
]
