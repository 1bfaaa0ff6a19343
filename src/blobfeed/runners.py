"""Component wiring and job execution templates.

Builds pipeline components from AppConfig and runs each job either once or on
a fixed interval until shutdown, with consistent:
- Logging context
- Resource cleanup
- Error propagation (one-shot runs re-raise, interval runs log and continue)
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import timedelta
from typing import Any

from blobfeed.cursor_store import create_cursor_store
from blobfeed.event_reader import AzureChangeFeedSource, EventReader
from blobfeed.ingestion import CycleReport, IngestionPipeline
from blobfeed.notifications import NotificationHandler
from blobfeed.publisher import create_publisher
from blobfeed.repository import create_metadata_repository
from blobfeed.scheduler import PeriodicJob
from blobfeed.sweeper import CleanupSweeper, SweepReport
from config.config import AppConfig
from core.logging.context import set_log_context

logger = logging.getLogger(__name__)


def build_ingestion_pipeline(config: AppConfig) -> IngestionPipeline:
    ingestion = config.ingestion
    source = AzureChangeFeedSource(config.source.connection_string)
    reader = EventReader(
        source,
        page_size=config.source.page_size,
        max_pages=config.source.max_pages_per_cycle,
        time_budget_seconds=ingestion.cycle_time_budget_seconds,
        fetch_timeout_seconds=ingestion.operation_timeout_seconds,
    )
    return IngestionPipeline(
        config=ingestion,
        cursor_store=create_cursor_store(config.cursor_store),
        reader=reader,
        repository=create_metadata_repository(config.repository),
        publisher=create_publisher(config.publisher),
    )


def build_sweeper(config: AppConfig) -> CleanupSweeper:
    return CleanupSweeper(
        repository=create_metadata_repository(config.repository),
        operation_timeout_seconds=config.cleanup.operation_timeout_seconds,
        batch_size=config.cleanup.batch_size,
    )


def build_notification_handler(config: AppConfig) -> NotificationHandler:
    return NotificationHandler(
        repository=create_metadata_repository(config.repository),
        publisher=create_publisher(config.publisher),
        retention=timedelta(days=config.ingestion.retention_days),
        timeout=config.ingestion.operation_timeout_seconds,
    )


async def _close_quietly(label: str, close: Callable[[], Awaitable[None]]) -> None:
    try:
        await close()
    except Exception as e:
        logger.warning(
            f"Error closing {label}",
            extra={"error": str(e), "error_type": type(e).__name__},
        )


async def _run_until_shutdown(
    name: str,
    job: Callable[[], Awaitable[Any]],
    interval_seconds: float,
    shutdown_event: asyncio.Event,
) -> None:
    periodic = PeriodicJob(name, job, interval_seconds)
    await periodic.start()
    try:
        await shutdown_event.wait()
    finally:
        await periodic.stop()


async def run_ingest(
    config: AppConfig,
    shutdown_event: asyncio.Event,
    interval_seconds: float | None = None,
    pipeline: IngestionPipeline | None = None,
) -> CycleReport | None:
    """Run one ingestion cycle, or cycles every interval_seconds until shutdown.

    One-shot mode returns the cycle report and lets IngestionCycleError propagate.
    """
    set_log_context(job="ingest", partition_id=config.ingestion.partition_id)
    pipeline = pipeline or build_ingestion_pipeline(config)

    try:
        await pipeline.repository.ensure_table()
        await pipeline.publisher.start()

        if interval_seconds is None:
            return await pipeline.run_cycle()

        await _run_until_shutdown("ingest", pipeline.run_cycle, interval_seconds, shutdown_event)
        return None
    finally:
        await _close_quietly("publisher", pipeline.publisher.close)
        await _close_quietly("repository", pipeline.repository.close)
        await _close_quietly("cursor store", pipeline.cursor_store.close)
        await _close_quietly("event source", pipeline.reader.source.close)


async def run_sweep(
    config: AppConfig,
    shutdown_event: asyncio.Event,
    interval_seconds: float | None = None,
    sweeper: CleanupSweeper | None = None,
) -> SweepReport | None:
    """Run one cleanup sweep, or sweeps every interval_seconds until shutdown."""
    set_log_context(job="sweep")
    sweeper = sweeper or build_sweeper(config)

    try:
        await sweeper.repository.ensure_table()

        if interval_seconds is None:
            return await sweeper.sweep()

        await _run_until_shutdown("sweep", sweeper.sweep, interval_seconds, shutdown_event)
        return None
    finally:
        await _close_quietly("repository", sweeper.repository.close)


async def run_notify(
    config: AppConfig,
    payloads: list[Any],
    handler: NotificationHandler | None = None,
) -> int:
    """Handle each notification payload; returns how many were forwarded.

    Every payload is attempted; the first failure is re-raised afterwards.
    """
    set_log_context(job="notify")
    handler = handler or build_notification_handler(config)
    forwarded = 0
    first_error: Exception | None = None

    try:
        await handler.repository.ensure_table()
        await handler.publisher.start()

        for payload in payloads:
            try:
                await handler.handle(payload)
                forwarded += 1
            except Exception as e:
                logger.error(
                    "Notification failed",
                    extra={"error": str(e), "error_type": type(e).__name__},
                )
                if first_error is None:
                    first_error = e
    finally:
        await _close_quietly("publisher", handler.publisher.close)
        await _close_quietly("repository", handler.repository.close)

    if first_error is not None:
        raise first_error
    return forwarded


__all__ = [
    "build_ingestion_pipeline",
    "build_sweeper",
    "build_notification_handler",
    "run_ingest",
    "run_sweep",
    "run_notify",
]
