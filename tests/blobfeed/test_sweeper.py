"""Tests for the expired-metadata cleanup sweeper."""

import asyncio
from datetime import timedelta

import pytest

from blobfeed.schemas.metadata import build_file_metadata
from blobfeed.sweeper import CleanupSweeper, SweepReport
from core.errors.exceptions import RepositoryError, SweepError
from fakes import ACCOUNT_URL, FIXED_NOW, InMemoryMetadataRepository


def _record(name: str, ingested_days_ago: int, retention_days: int = 7):
    ingested = FIXED_NOW - timedelta(days=ingested_days_ago)
    return build_file_metadata(
        url=f"{ACCOUNT_URL}/uploads/{name}",
        content_type="text/plain",
        content_length=1,
        blob_type="BlockBlob",
        event_time=ingested,
        now=ingested,
        retention=timedelta(days=retention_days),
    )


def _seed(repository, *records):
    for record in records:
        repository.records[record.id] = record


class VanishingRepository(InMemoryMetadataRepository):
    """Another actor removes listed records before the sweeper deletes them."""

    def __init__(self, vanish: set[str]):
        super().__init__()
        self.vanish = vanish

    async def list_expired(self, as_of):
        async for record in super().list_expired(as_of):
            yield record
        for file_id in self.vanish:
            self.records.pop(file_id, None)


class SlowListRepository(InMemoryMetadataRepository):
    async def list_expired(self, as_of):
        await asyncio.sleep(10)
        yield  # pragma: no cover


class TricklingRepository(InMemoryMetadataRepository):
    """Listing yields one record per delay; deletes must not overlap a listing."""

    def __init__(self, delay: float = 0.0):
        super().__init__()
        self.delay = delay
        self.listings = 0
        self.listing_open = False

    async def list_expired(self, as_of):
        self.listings += 1
        self.listing_open = True
        try:
            async for record in super().list_expired(as_of):
                await asyncio.sleep(self.delay)
                yield record
        finally:
            self.listing_open = False

    async def delete(self, file_id):
        assert not self.listing_open, "delete issued while listing was open"
        return await super().delete(file_id)


class TestSweep:
    async def test_deletes_only_expired_records(self):
        repository = InMemoryMetadataRepository()
        old = _record("old.txt", ingested_days_ago=10)
        fresh = _record("fresh.txt", ingested_days_ago=1)
        _seed(repository, old, fresh)

        report = await CleanupSweeper(repository).sweep(now=FIXED_NOW)

        assert report.scanned == 1
        assert report.deleted == 1
        assert report.already_gone == 0
        assert list(repository.records) == [fresh.id]

    async def test_record_expiring_exactly_now_is_kept(self):
        repository = InMemoryMetadataRepository()
        edge = _record("edge.txt", ingested_days_ago=7)
        _seed(repository, edge)

        report = await CleanupSweeper(repository).sweep(now=edge.expires_at_utc)

        assert report.deleted == 0
        assert edge.id in repository.records

    async def test_empty_repository(self):
        report = await CleanupSweeper(InMemoryMetadataRepository()).sweep(now=FIXED_NOW)
        assert report == SweepReport(scanned=0, deleted=0, already_gone=0, duration_ms=report.duration_ms)

    async def test_vanished_record_counts_as_already_gone(self):
        a = _record("a.txt", ingested_days_ago=10)
        b = _record("b.txt", ingested_days_ago=10)
        repository = VanishingRepository(vanish={b.id})
        _seed(repository, a, b)

        report = await CleanupSweeper(repository).sweep(now=FIXED_NOW)

        assert report.scanned == 2
        assert report.deleted == 1
        assert report.already_gone == 1
        assert repository.records == {}

    async def test_second_sweep_finds_nothing(self):
        repository = InMemoryMetadataRepository()
        _seed(repository, _record("old.txt", ingested_days_ago=10))
        sweeper = CleanupSweeper(repository)

        await sweeper.sweep(now=FIXED_NOW)
        report = await sweeper.sweep(now=FIXED_NOW)

        assert report.scanned == 0


class TestSweepBatching:
    async def test_slow_listing_of_large_backlog_completes(self):
        repository = TricklingRepository(delay=0.01)
        _seed(repository, *(_record(f"{i}.txt", ingested_days_ago=10) for i in range(50)))
        sweeper = CleanupSweeper(repository, operation_timeout_seconds=0.2)

        report = await sweeper.sweep(now=FIXED_NOW)

        assert report.scanned == 50
        assert report.deleted == 50
        assert repository.records == {}

    async def test_deletes_in_batches_between_listings(self):
        repository = TricklingRepository()
        _seed(repository, *(_record(f"{i}.txt", ingested_days_ago=10) for i in range(7)))
        fresh = _record("fresh.txt", ingested_days_ago=1)
        _seed(repository, fresh)

        report = await CleanupSweeper(repository, batch_size=3).sweep(now=FIXED_NOW)

        assert report.scanned == 7
        assert report.deleted == 7
        assert repository.listings == 3
        assert list(repository.records) == [fresh.id]

    async def test_exact_multiple_of_batch_size_ends_on_empty_batch(self):
        repository = TricklingRepository()
        _seed(repository, *(_record(f"{i}.txt", ingested_days_ago=10) for i in range(4)))

        report = await CleanupSweeper(repository, batch_size=2).sweep(now=FIXED_NOW)

        assert report.deleted == 4
        assert repository.listings == 3


class TestSweepFailures:
    async def test_list_failure_raises_sweep_error(self):
        repository = InMemoryMetadataRepository()
        repository.fail_list = True

        with pytest.raises(SweepError) as exc_info:
            await CleanupSweeper(repository).sweep(now=FIXED_NOW)

        assert exc_info.value.report.deleted == 0
        assert isinstance(exc_info.value.cause, RepositoryError)

    async def test_delete_failure_keeps_partial_report(self):
        repository = InMemoryMetadataRepository()
        a = _record("a.txt", ingested_days_ago=10)
        b = _record("b.txt", ingested_days_ago=10)
        _seed(repository, a, b)
        repository.fail_delete_ids = {b.id}

        with pytest.raises(SweepError) as exc_info:
            await CleanupSweeper(repository).sweep(now=FIXED_NOW)

        report = exc_info.value.report
        assert report.scanned == 2
        assert report.deleted == 1
        assert b.id in repository.records

    async def test_list_timeout_names_phase_and_limit(self):
        sweeper = CleanupSweeper(SlowListRepository(), operation_timeout_seconds=0.05)

        with pytest.raises(SweepError) as exc_info:
            await sweeper.sweep(now=FIXED_NOW)

        assert "list_expired timed out after 0.05s" in str(exc_info.value)
        assert isinstance(exc_info.value.cause, RepositoryError)
        assert isinstance(exc_info.value.cause.cause, asyncio.TimeoutError)

    async def test_sweep_error_is_repository_error(self):
        repository = InMemoryMetadataRepository()
        repository.fail_list = True

        with pytest.raises(RepositoryError):
            await CleanupSweeper(repository).sweep(now=FIXED_NOW)
