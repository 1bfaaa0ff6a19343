"""In-memory collaborators for driving the ingestion pipeline end to end."""

from datetime import UTC, datetime

from blobfeed.event_reader import EventPage
from blobfeed.publisher import PublishReceipt
from blobfeed.schemas.metadata import FileMetadata, ProcessingStatus
from core.errors.exceptions import CheckpointError, PublishError, RepositoryError

ACCOUNT_URL = "https://acct.blob.core.windows.net"
FIXED_NOW = datetime(2026, 1, 5, 14, 30, tzinfo=UTC)


def make_record(
    name: str,
    event_type: str = "BlobCreated",
    container: str = "uploads",
    content_length: int = 1024,
    event_id: str | None = None,
) -> dict:
    """Change feed record in the shape the Azure SDK yields."""
    return {
        "id": event_id or f"evt-{event_type}-{name}",
        "eventType": event_type,
        "eventTime": "2026-01-05T14:00:00.1234567Z",
        "topic": "/subscriptions/sub/resourceGroups/rg/providers/"
        "Microsoft.Storage/storageAccounts/acct",
        "subject": f"/blobServices/default/containers/{container}/blobs/{name}",
        "data": {
            "api": "PutBlob",
            "url": f"{ACCOUNT_URL}/{container}/{name}",
            "blobType": "BlockBlob",
            "contentType": "application/pdf",
            "contentLength": content_length,
        },
    }


def token_at(position: int) -> str:
    return f"pos:{position}"


def position_of(token: str | None) -> int:
    return 0 if token is None else int(token.split(":", 1)[1])


class FakeEventSource:
    """Change log addressed by position tokens ("pos:N" = resume at record N)."""

    def __init__(self, records: list | None = None):
        self.records = list(records or [])
        self.fetches: list[str | None] = []
        self.fail_on_fetch: int | None = None
        self.error: Exception = ConnectionError("change feed unavailable")
        self.closed = False

    def append(self, *records) -> None:
        self.records.extend(records)

    async def fetch_page(self, continuation_token, page_size):
        self.fetches.append(continuation_token)
        if self.fail_on_fetch is not None and len(self.fetches) == self.fail_on_fetch:
            raise self.error
        start = position_of(continuation_token)
        page = self.records[start : start + page_size]
        if not page:
            return EventPage(records=[], continuation_token=continuation_token)
        return EventPage(records=page, continuation_token=token_at(start + len(page)))

    async def close(self):
        self.closed = True


class InMemoryCursorStore:
    def __init__(self, initial: dict | None = None):
        self.tokens: dict[str, str] = dict(initial or {})
        self.set_calls: list[tuple[str, str]] = []
        self.fail_get = False
        self.fail_set = False
        self.locked: set[str] = set()
        self.acquire_calls = 0
        self.release_calls = 0
        self.fail_acquire = False
        self.closed = False

    async def get(self, partition_id):
        if self.fail_get:
            raise CheckpointError("cursor unreadable")
        return self.tokens.get(partition_id)

    async def set(self, partition_id, token):
        if self.fail_set:
            raise CheckpointError("cursor write failed")
        self.set_calls.append((partition_id, token))
        self.tokens[partition_id] = token

    async def acquire(self, partition_id):
        self.acquire_calls += 1
        if self.fail_acquire:
            raise CheckpointError("lock state unknown")
        if partition_id in self.locked:
            return False
        self.locked.add(partition_id)
        return True

    async def release(self, partition_id):
        self.release_calls += 1
        self.locked.discard(partition_id)

    async def close(self):
        self.closed = True


class InMemoryMetadataRepository:
    def __init__(self):
        self.records: dict[str, FileMetadata] = {}
        self.upsert_calls: list[str] = []
        self.fail_upsert_names: set[str] = set()
        self.fail_mark_forwarded = False
        self.fail_list = False
        self.fail_delete_ids: set[str] = set()
        self.ensured = False
        self.closed = False

    async def ensure_table(self):
        self.ensured = True

    async def upsert(self, metadata):
        if metadata.file_name in self.fail_upsert_names:
            raise RepositoryError(f"upsert failed for {metadata.file_name}")
        self.upsert_calls.append(metadata.id)
        self.records[metadata.id] = metadata

    async def get(self, file_id):
        return self.records.get(file_id)

    async def mark_forwarded(self, file_id):
        if self.fail_mark_forwarded:
            raise RepositoryError("merge failed")
        record = self.records.get(file_id)
        if record is None:
            return False
        self.records[file_id] = record.model_copy(
            update={"processing_status": ProcessingStatus.FORWARDED}
        )
        return True

    async def list_expired(self, as_of):
        if self.fail_list:
            raise RepositoryError("query failed")
        for record in list(self.records.values()):
            if record.expires_at_utc < as_of:
                yield record

    async def delete(self, file_id):
        if file_id in self.fail_delete_ids:
            raise RepositoryError(f"delete failed for {file_id}")
        return self.records.pop(file_id, None) is not None

    async def close(self):
        self.closed = True


class RecordingPublisher:
    def __init__(self):
        self.published: list[FileMetadata] = []
        self.fail_names: set[str] = set()
        self.started = False
        self.closed = False

    async def start(self):
        self.started = True

    async def publish(self, metadata):
        if metadata.file_name in self.fail_names:
            raise PublishError(f"queue rejected {metadata.file_name}")
        self.published.append(metadata)
        return PublishReceipt(
            message_id=metadata.id, destination="memory", published_at=FIXED_NOW
        )

    async def close(self):
        self.closed = True

    @property
    def published_names(self) -> list[str]:
        return [m.file_name for m in self.published]
