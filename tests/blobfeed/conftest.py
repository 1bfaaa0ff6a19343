"""Fixtures wiring the in-memory collaborators into an ingestion pipeline."""

import pytest

from blobfeed.event_reader import EventReader
from blobfeed.ingestion import IngestionPipeline
from config.config import IngestionConfig
from fakes import (
    FIXED_NOW,
    FakeEventSource,
    InMemoryCursorStore,
    InMemoryMetadataRepository,
    RecordingPublisher,
)


@pytest.fixture
def source():
    return FakeEventSource()


@pytest.fixture
def cursor_store():
    return InMemoryCursorStore()


@pytest.fixture
def repository():
    return InMemoryMetadataRepository()


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def ingestion_config():
    return IngestionConfig(
        partition_id="default",
        retention_days=7,
        max_events_per_cycle=1000,
        cycle_time_budget_seconds=60,
        operation_timeout_seconds=5,
    )


@pytest.fixture
def make_pipeline(source, cursor_store, repository, publisher, ingestion_config):
    def _make(page_size: int = 10, max_pages: int | None = None, **overrides):
        config = ingestion_config
        for key, value in overrides.items():
            setattr(config, key, value)
        reader = EventReader(source, page_size=page_size, max_pages=max_pages)
        return IngestionPipeline(
            config=config,
            cursor_store=cursor_store,
            reader=reader,
            repository=repository,
            publisher=publisher,
            clock=lambda: FIXED_NOW,
        )

    return _make
