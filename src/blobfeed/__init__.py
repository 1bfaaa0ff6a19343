"""
Blob change feed ingestion.

Reads an Azure storage account's blob change feed from a committed cursor,
records normalized metadata (with a retention expiry) for every created blob,
forwards it to a downstream queue, and commits the new cursor only once those
effects are durable. A separate sweeper deletes expired metadata.

Main entry points:
    IngestionPipeline.run_cycle()  - one polling cycle
    CleanupSweeper.sweep()         - delete expired records
    NotificationHandler.handle()   - push path for single notifications
"""

from blobfeed.ingestion import CycleReport, IngestionPipeline
from blobfeed.notifications import NotificationHandler
from blobfeed.sweeper import CleanupSweeper, SweepReport

__all__ = [
    "IngestionPipeline",
    "CycleReport",
    "CleanupSweeper",
    "SweepReport",
    "NotificationHandler",
]
