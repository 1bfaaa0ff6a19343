"""Metadata repository for normalized file records.

Stores one FileMetadata record per blob, keyed by its deterministic id, each
carrying an expiry instant used by the cleanup sweeper. Supports Azure Table
Storage (production) and local JSON documents (development).

Architecture:
- Protocol-based design; pipeline, sweeper and push handler only see MetadataRepository
- Two implementations: TableMetadataRepository and JsonMetadataRepository
- Factory function selects implementation from RepositoryConfig

Semantics shared by both implementations:
- upsert is last-write-wins on the full record
- mark_forwarded is a partial update and returns False if the record vanished
- delete of a missing record returns False, never raises
- every storage failure surfaces as RepositoryError
"""

import json
import logging
import os
from collections.abc import AsyncIterator
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol

from pydantic import ValidationError

from blobfeed.schemas.metadata import FileMetadata, ProcessingStatus
from core.errors.exceptions import RepositoryError

if TYPE_CHECKING:
    from config.config import RepositoryConfig

DEFAULT_TABLE_NAME = "FileMetadata"
DEFAULT_PARTITION_KEY = "FileMetadata"

logger = logging.getLogger(__name__)


# =============================================================================
# Protocol definition
# =============================================================================


class MetadataRepository(Protocol):
    async def ensure_table(self) -> None:
        """Create the backing table/collection if absent. Idempotent."""
        ...

    async def upsert(self, metadata: FileMetadata) -> None: ...

    async def get(self, file_id: str) -> FileMetadata | None: ...

    async def mark_forwarded(self, file_id: str) -> bool:
        """Flip processing_status to Forwarded. False if the record is gone."""
        ...

    def list_expired(self, as_of: datetime) -> AsyncIterator[FileMetadata]:
        """All records with expires_at_utc < as_of."""
        ...

    async def delete(self, file_id: str) -> bool:
        """Delete a record. False if it was already gone."""
        ...

    async def close(self) -> None: ...


# =============================================================================
# Azure Table Storage implementation
# =============================================================================

_ENTITY_FIELDS = {
    "file_name": "FileName",
    "url": "Url",
    "storage_account": "StorageAccount",
    "content_type": "ContentType",
    "file_size_bytes": "FileSizeBytes",
    "blob_type": "BlobType",
    "event_time_utc": "EventTimeUtc",
    "ingested_at_utc": "IngestedAtUtc",
    "expires_at_utc": "ExpiresAtUtc",
    "processing_status": "ProcessingStatus",
}


def metadata_to_entity(metadata: FileMetadata, partition_key: str) -> dict[str, Any]:
    """Map a FileMetadata record to a table entity (PascalCase properties)."""
    from azure.data.tables import EdmType, EntityProperty

    entity: dict[str, Any] = {"PartitionKey": partition_key, "RowKey": metadata.id}
    for attr, prop in _ENTITY_FIELDS.items():
        value = getattr(metadata, attr)
        if value is None:
            continue
        if isinstance(value, ProcessingStatus):
            value = value.value
        entity[prop] = value
    entity["FileSizeBytes"] = EntityProperty(metadata.file_size_bytes, EdmType.INT64)
    return entity


def entity_to_metadata(entity: dict[str, Any]) -> FileMetadata:
    """Map a table entity back to FileMetadata."""
    from azure.data.tables import EntityProperty

    values: dict[str, Any] = {"id": entity["RowKey"]}
    for attr, prop in _ENTITY_FIELDS.items():
        if prop not in entity:
            continue
        value = entity[prop]
        if isinstance(value, EntityProperty):
            value = value.value
        values[attr] = value
    return FileMetadata.model_validate(values)


class TableMetadataRepository:
    """Azure Table Storage metadata repository.

    PartitionKey is fixed (default "FileMetadata"), RowKey is the file id.
    ExpiresAtUtc is stored as a DateTime property so the expiry query
    compares instants, not strings.
    """

    def __init__(
        self,
        connection_string: str,
        table_name: str = DEFAULT_TABLE_NAME,
        partition_key: str = DEFAULT_PARTITION_KEY,
    ):
        self._connection_string = connection_string
        self._table_name = table_name
        self._partition_key = partition_key
        self._table_client = None

        logger.info(
            "TableMetadataRepository initialized",
            extra={"table_name": table_name, "partition_key": partition_key},
        )

    def _client(self):
        if self._table_client is None:
            from azure.data.tables.aio import TableClient

            self._table_client = TableClient.from_connection_string(
                self._connection_string, table_name=self._table_name
            )
        return self._table_client

    def _error(self, operation: str, exc: Exception, file_id: str | None = None) -> RepositoryError:
        context = {"table": self._table_name, "operation": operation}
        if file_id:
            context["file_id"] = file_id
        return RepositoryError(
            f"Table {operation} failed on {self._table_name}", cause=exc, context=context
        )

    async def ensure_table(self) -> None:
        from azure.core.exceptions import AzureError, ResourceExistsError

        try:
            await self._client().create_table()
            logger.info("Created metadata table", extra={"table_name": self._table_name})
        except ResourceExistsError:
            logger.debug("Metadata table already exists", extra={"table_name": self._table_name})
        except AzureError as e:
            raise self._error("create_table", e) from e

    async def upsert(self, metadata: FileMetadata) -> None:
        from azure.core.exceptions import AzureError
        from azure.data.tables import UpdateMode

        entity = metadata_to_entity(metadata, self._partition_key)
        try:
            await self._client().upsert_entity(entity, mode=UpdateMode.REPLACE)
        except AzureError as e:
            raise self._error("upsert", e, metadata.id) from e

        logger.debug(
            "Upserted file metadata",
            extra={"file_id": metadata.id, "blob_url": metadata.url},
        )

    async def get(self, file_id: str) -> FileMetadata | None:
        from azure.core.exceptions import AzureError, ResourceNotFoundError

        try:
            entity = await self._client().get_entity(
                partition_key=self._partition_key, row_key=file_id
            )
        except ResourceNotFoundError:
            return None
        except AzureError as e:
            raise self._error("get", e, file_id) from e
        return entity_to_metadata(entity)

    async def mark_forwarded(self, file_id: str) -> bool:
        from azure.core.exceptions import AzureError, ResourceNotFoundError
        from azure.data.tables import UpdateMode

        patch = {
            "PartitionKey": self._partition_key,
            "RowKey": file_id,
            "ProcessingStatus": ProcessingStatus.FORWARDED.value,
        }
        try:
            await self._client().update_entity(patch, mode=UpdateMode.MERGE)
        except ResourceNotFoundError:
            return False
        except AzureError as e:
            raise self._error("mark_forwarded", e, file_id) from e
        return True

    async def list_expired(self, as_of: datetime) -> AsyncIterator[FileMetadata]:
        from azure.core.exceptions import AzureError

        entities = self._client().query_entities(
            "PartitionKey eq @pk and ExpiresAtUtc lt @as_of",
            parameters={"pk": self._partition_key, "as_of": as_of},
        )
        try:
            async for entity in entities:
                try:
                    yield entity_to_metadata(entity)
                except (KeyError, ValidationError) as e:
                    logger.warning(
                        "Skipping unreadable metadata entity",
                        extra={"row_key": entity.get("RowKey"), "error": str(e)},
                    )
        except AzureError as e:
            raise self._error("list_expired", e) from e

    async def delete(self, file_id: str) -> bool:
        # delete_entity succeeds silently on a missing row, so look it up first
        from azure.core.exceptions import AzureError, ResourceNotFoundError

        client = self._client()
        try:
            await client.get_entity(
                partition_key=self._partition_key, row_key=file_id, select=["RowKey"]
            )
        except ResourceNotFoundError:
            return False
        except AzureError as e:
            raise self._error("delete", e, file_id) from e

        try:
            await client.delete_entity(partition_key=self._partition_key, row_key=file_id)
        except ResourceNotFoundError:
            return False
        except AzureError as e:
            raise self._error("delete", e, file_id) from e
        return True

    async def close(self) -> None:
        if self._table_client is not None:
            await self._table_client.close()
            self._table_client = None
            logger.debug("Closed TableMetadataRepository")


# =============================================================================
# JSON implementation (local files)
# =============================================================================


class JsonMetadataRepository:
    """Local JSON metadata repository: one document per file id.

    Uses atomic write pattern (write to temp file, then os.replace).
    """

    def __init__(self, storage_path: str | Path):
        self._base_path = Path(storage_path)

        logger.info(
            "JsonMetadataRepository initialized",
            extra={"storage_path": str(self._base_path)},
        )

    def _path(self, file_id: str) -> Path:
        return self._base_path / f"{file_id}.json"

    def _read(self, path: Path) -> FileMetadata | None:
        try:
            with open(path) as f:
                return FileMetadata.from_document(json.load(f))
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError, ValidationError) as e:
            raise RepositoryError(
                f"Failed to read metadata document {path}",
                cause=e,
                context={"path": str(path)},
            ) from e

    def _write(self, metadata: FileMetadata) -> None:
        path = self._path(metadata.id)
        try:
            self._base_path.mkdir(parents=True, exist_ok=True)
            temp_path = path.with_suffix(".tmp")
            with open(temp_path, "w") as f:
                json.dump(metadata.to_document(), f, indent=2)
            os.replace(temp_path, path)
        except OSError as e:
            raise RepositoryError(
                f"Failed to write metadata document {path}",
                cause=e,
                context={"path": str(path), "file_id": metadata.id},
            ) from e

    async def ensure_table(self) -> None:
        try:
            self._base_path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise RepositoryError(
                f"Failed to create metadata directory {self._base_path}",
                cause=e,
                context={"path": str(self._base_path)},
            ) from e

    async def upsert(self, metadata: FileMetadata) -> None:
        self._write(metadata)
        logger.debug(
            "Upserted file metadata",
            extra={"file_id": metadata.id, "blob_url": metadata.url},
        )

    async def get(self, file_id: str) -> FileMetadata | None:
        return self._read(self._path(file_id))

    async def mark_forwarded(self, file_id: str) -> bool:
        metadata = self._read(self._path(file_id))
        if metadata is None:
            return False
        self._write(metadata.model_copy(update={"processing_status": ProcessingStatus.FORWARDED}))
        return True

    async def list_expired(self, as_of: datetime) -> AsyncIterator[FileMetadata]:
        if as_of.tzinfo is None:
            as_of = as_of.replace(tzinfo=UTC)
        if not self._base_path.exists():
            return
        for path in sorted(self._base_path.glob("*.json")):
            metadata = self._read(path)
            if metadata is not None and metadata.is_expired(as_of):
                yield metadata

    async def delete(self, file_id: str) -> bool:
        path = self._path(file_id)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            raise RepositoryError(
                f"Failed to delete metadata document {path}",
                cause=e,
                context={"path": str(path), "file_id": file_id},
            ) from e
        return True

    async def close(self) -> None:
        """No-op for JSON repository."""
        pass


# =============================================================================
# Factory function
# =============================================================================


def create_metadata_repository(config: "RepositoryConfig") -> MetadataRepository:
    """Create a metadata repository from configuration.

    Raises:
        ValueError: If the repository type is unknown
    """
    if config.type == "json":
        return JsonMetadataRepository(storage_path=config.storage_path)
    elif config.type == "table":
        return TableMetadataRepository(
            connection_string=config.connection_string,
            table_name=config.table_name or DEFAULT_TABLE_NAME,
            partition_key=config.partition_key or DEFAULT_PARTITION_KEY,
        )
    else:
        raise ValueError(f"Unknown repository type: '{config.type}'. Must be 'table' or 'json'.")


__all__ = [
    "MetadataRepository",
    "TableMetadataRepository",
    "JsonMetadataRepository",
    "create_metadata_repository",
    "metadata_to_entity",
    "entity_to_metadata",
]
