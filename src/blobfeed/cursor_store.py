"""Cursor store for the change-feed ingestion pipeline.

Holds the last committed change-feed cursor per partition so ingestion can
resume after a restart. Supports local JSON files (development) and Azure
Blob Storage (production).

Architecture:
- Protocol-based design; the pipeline only sees CursorStore
- Two implementations: JsonCursorStore and BlobCursorStore
- Factory function selects implementation from CursorStoreConfig
- Atomic writes for crash safety

Checkpoint format (cursor_{partition}.json):
- partition_id: change-feed partition the cursor belongs to
- token: opaque continuation token
- updated_at: ISO format UTC timestamp when the cursor was written

An absent checkpoint means "start of log". A checkpoint that exists but
cannot be read raises CheckpointError rather than starting fresh, since
starting fresh would rewind the cursor.

Each store also owns the exclusive per-partition ingestion lock, so overlapping
runs in separate processes cannot both commit:
- JsonCursorStore: an O_EXCL lock file, broken once older than stale_lock_seconds
- BlobCursorStore: a renewed lease on the cursor blob; commits carry the lease,
  so a run that lost its lease cannot overwrite the cursor

Usage:
    store = create_cursor_store(config.cursor_store)

    if await store.acquire("default"):
        token = await store.get("default")
        ...
        await store.set("default", new_token)
        await store.release("default")

    await store.close()
"""

import asyncio
import contextlib
import json
import logging
import os
import time
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from core.errors.exceptions import CheckpointError

if TYPE_CHECKING:
    from config.config import CursorStoreConfig

CHECKPOINT_TIMEOUT_SECONDS = 30
DEFAULT_CONTAINER_NAME = "changefeedcheckpoints"
DEFAULT_STALE_LOCK_SECONDS = 900
LEASE_DURATION_SECONDS = 60

logger = logging.getLogger(__name__)


def checkpoint_name(partition_id: str) -> str:
    return f"cursor_{partition_id}.json"


def lock_name(partition_id: str) -> str:
    return f"cursor_{partition_id}.lock"


# =============================================================================
# Checkpoint data structure
# =============================================================================


@dataclass
class CursorCheckpoint:
    """Committed cursor for one change-feed partition."""

    partition_id: str
    token: str
    updated_at: str  # When checkpoint was written (for debugging)

    def to_dict(self) -> dict:
        """Convert to dict for serialization."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "CursorCheckpoint":
        """Create from dict after deserialization."""
        token = data["token"]
        if not isinstance(token, str) or not token:
            raise ValueError("token must be a non-empty string")
        return cls(
            partition_id=data["partition_id"],
            token=token,
            updated_at=data.get("updated_at", ""),
        )

    @classmethod
    def now(cls, partition_id: str, token: str) -> "CursorCheckpoint":
        return cls(
            partition_id=partition_id,
            token=token,
            updated_at=datetime.now(UTC).isoformat(),
        )


# =============================================================================
# Protocol definition
# =============================================================================


class CursorStore(Protocol):
    """Protocol for cursor persistence.

    Both JsonCursorStore and BlobCursorStore implement this.
    """

    async def get(self, partition_id: str) -> str | None:
        """Load the committed cursor token.

        Returns None if no cursor has been committed yet.
        Raises CheckpointError if the cursor exists but cannot be read.
        """
        ...

    async def set(self, partition_id: str, token: str) -> None:
        """Persist a cursor token. Raises CheckpointError on failure."""
        ...

    async def acquire(self, partition_id: str) -> bool:
        """Take the exclusive ingestion lock for a partition.

        Returns False if another run holds it.
        Raises CheckpointError if the lock state cannot be determined.
        """
        ...

    async def release(self, partition_id: str) -> None:
        """Release a lock taken by acquire(). No-op if not held."""
        ...

    async def close(self) -> None:
        """Clean up resources."""
        ...


# =============================================================================
# JSON implementation (local files)
# =============================================================================


class JsonCursorStore:
    """Local JSON file cursor store.

    Stores one JSON file per partition in storage_path.
    Uses atomic write pattern (write to temp file, then os.replace).
    The partition lock is a sibling cursor_{partition}.lock file created with
    O_EXCL; a lock left behind by a crashed run is broken after
    stale_lock_seconds.
    """

    def __init__(
        self,
        storage_path: str | Path,
        stale_lock_seconds: float = DEFAULT_STALE_LOCK_SECONDS,
    ):
        self._base_path = Path(storage_path)
        self._stale_lock_seconds = stale_lock_seconds
        self._held: set[str] = set()

        logger.info(
            "JsonCursorStore initialized",
            extra={"storage_path": str(self._base_path)},
        )

    def _path(self, partition_id: str) -> Path:
        return self._base_path / checkpoint_name(partition_id)

    def _lock_path(self, partition_id: str) -> Path:
        return self._base_path / lock_name(partition_id)

    @staticmethod
    def _create_lock(path: Path) -> bool:
        try:
            fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except FileExistsError:
            return False
        with os.fdopen(fd, "w") as f:
            json.dump({"pid": os.getpid(), "acquired_at": datetime.now(UTC).isoformat()}, f)
        return True

    def _lock_is_stale(self, path: Path) -> bool:
        try:
            age = time.time() - path.stat().st_mtime
        except FileNotFoundError:
            return True
        return age >= self._stale_lock_seconds

    async def acquire(self, partition_id: str) -> bool:
        """Create the partition lock file; False if a live lock already exists."""
        path = self._lock_path(partition_id)
        try:
            self._base_path.mkdir(parents=True, exist_ok=True)
            if not self._create_lock(path):
                if not self._lock_is_stale(path):
                    logger.info(
                        "Cursor lock held by another run",
                        extra={"path": str(path), "partition_id": partition_id},
                    )
                    return False
                logger.warning(
                    "Breaking stale cursor lock",
                    extra={
                        "path": str(path),
                        "partition_id": partition_id,
                        "stale_lock_seconds": self._stale_lock_seconds,
                    },
                )
                path.unlink(missing_ok=True)
                if not self._create_lock(path):
                    return False
        except OSError as e:
            raise CheckpointError(
                f"Failed to acquire cursor lock {path}",
                cause=e,
                context={"path": str(path), "partition_id": partition_id},
            ) from e

        self._held.add(partition_id)
        logger.debug("Acquired cursor lock", extra={"path": str(path)})
        return True

    async def release(self, partition_id: str) -> None:
        if partition_id not in self._held:
            return
        self._held.discard(partition_id)
        path = self._lock_path(partition_id)
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            raise CheckpointError(
                f"Failed to release cursor lock {path}",
                cause=e,
                context={"path": str(path), "partition_id": partition_id},
            ) from e
        logger.debug("Released cursor lock", extra={"path": str(path)})

    async def get(self, partition_id: str) -> str | None:
        """Load cursor from JSON file."""
        path = self._path(partition_id)
        if not path.exists():
            logger.info(
                "No cursor file found, starting from beginning of log",
                extra={"path": str(path), "partition_id": partition_id},
            )
            return None

        try:
            with open(path) as f:
                data = json.load(f)
            checkpoint = CursorCheckpoint.from_dict(data)
        except (OSError, json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            raise CheckpointError(
                f"Failed to read cursor checkpoint {path}",
                cause=e,
                context={"path": str(path), "partition_id": partition_id},
            ) from e

        logger.info(
            "Loaded cursor from JSON file",
            extra={
                "path": str(path),
                "partition_id": partition_id,
                "updated_at": checkpoint.updated_at,
            },
        )
        return checkpoint.token

    async def set(self, partition_id: str, token: str) -> None:
        """Save cursor to JSON file using atomic write."""
        path = self._path(partition_id)
        checkpoint = CursorCheckpoint.now(partition_id, token)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            temp_path = path.with_suffix(".tmp")

            with open(temp_path, "w") as f:
                json.dump(checkpoint.to_dict(), f, indent=2)

            # Atomic replace
            os.replace(temp_path, path)
        except OSError as e:
            raise CheckpointError(
                f"Failed to save cursor checkpoint {path}",
                cause=e,
                context={"path": str(path), "partition_id": partition_id},
            ) from e

        logger.debug(
            "Saved cursor to JSON file",
            extra={"path": str(path), "partition_id": partition_id},
        )

    async def close(self) -> None:
        """Release any locks still held."""
        for partition_id in list(self._held):
            await self.release(partition_id)


# =============================================================================
# Blob implementation (Azure Blob Storage)
# =============================================================================


class BlobCursorStore:
    """Azure Blob Storage cursor store.

    Stores cursors in Azure Blob Storage for production durability.
    Each partition gets its own blob: cursor_{partition}.json

    The partition lock is a LEASE_DURATION_SECONDS lease on that blob, renewed
    in the background while held. set() writes with the lease, so a run whose
    lease lapsed is rejected instead of racing the run that took over.
    """

    def __init__(
        self,
        connection_string: str,
        container_name: str = DEFAULT_CONTAINER_NAME,
        timeout_seconds: float = CHECKPOINT_TIMEOUT_SECONDS,
    ):
        self._connection_string = connection_string
        self._container_name = container_name
        self._timeout = timeout_seconds
        self._blob_service_client = None
        self._container_client = None
        self._leases: dict[str, tuple] = {}

        logger.info(
            "BlobCursorStore initialized",
            extra={"container_name": container_name},
        )

    async def _ensure_client(self) -> None:
        """Lazy initialization of blob clients."""
        if self._container_client is not None:
            return

        from azure.core.exceptions import AzureError, ResourceExistsError
        from azure.storage.blob.aio import BlobServiceClient

        self._blob_service_client = BlobServiceClient.from_connection_string(
            self._connection_string
        )
        container_client = self._blob_service_client.get_container_client(
            self._container_name
        )

        try:
            await asyncio.wait_for(container_client.create_container(), timeout=self._timeout)
            logger.info(
                "Created checkpoint container",
                extra={"container_name": self._container_name},
            )
        except ResourceExistsError:
            pass
        except (AzureError, asyncio.TimeoutError) as e:
            raise CheckpointError(
                f"Failed to provision checkpoint container {self._container_name}",
                cause=e,
                context={"container": self._container_name},
            ) from e

        self._container_client = container_client

    async def get(self, partition_id: str) -> str | None:
        """Load cursor from blob storage."""
        from azure.core.exceptions import AzureError, ResourceNotFoundError

        await self._ensure_client()
        blob_name = checkpoint_name(partition_id)
        blob_client = self._container_client.get_blob_client(blob_name)

        try:
            download_stream = await asyncio.wait_for(
                blob_client.download_blob(), timeout=self._timeout
            )
            content = await download_stream.readall()
        except ResourceNotFoundError:
            logger.info(
                "No cursor found in blob storage, starting from beginning of log",
                extra={"container": self._container_name, "blob": blob_name},
            )
            return None
        except (AzureError, asyncio.TimeoutError) as e:
            raise CheckpointError(
                f"Failed to download cursor blob {blob_name}",
                cause=e,
                context={"container": self._container_name, "blob": blob_name},
            ) from e

        if not content:
            # Placeholder created by acquire() before the first commit
            logger.info(
                "Cursor blob is empty, starting from beginning of log",
                extra={"container": self._container_name, "blob": blob_name},
            )
            return None

        try:
            checkpoint = CursorCheckpoint.from_dict(json.loads(content.decode("utf-8")))
        except (UnicodeDecodeError, json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            raise CheckpointError(
                f"Cursor blob {blob_name} is corrupt",
                cause=e,
                context={"container": self._container_name, "blob": blob_name},
            ) from e

        logger.info(
            "Loaded cursor from blob storage",
            extra={
                "container": self._container_name,
                "blob": blob_name,
                "updated_at": checkpoint.updated_at,
            },
        )
        return checkpoint.token

    async def set(self, partition_id: str, token: str) -> None:
        """Save cursor to blob storage."""
        from azure.core.exceptions import AzureError

        await self._ensure_client()
        blob_name = checkpoint_name(partition_id)
        blob_client = self._container_client.get_blob_client(blob_name)
        content = json.dumps(CursorCheckpoint.now(partition_id, token).to_dict(), indent=2)
        held = self._leases.get(partition_id)
        lease_kwargs = {"lease": held[0]} if held else {}

        try:
            await asyncio.wait_for(
                blob_client.upload_blob(content, overwrite=True, **lease_kwargs),
                timeout=self._timeout,
            )
        except (AzureError, asyncio.TimeoutError) as e:
            raise CheckpointError(
                f"Failed to upload cursor blob {blob_name}",
                cause=e,
                context={"container": self._container_name, "blob": blob_name},
            ) from e

        logger.debug(
            "Saved cursor to blob storage",
            extra={"container": self._container_name, "blob": blob_name},
        )

    async def _ensure_blob_exists(self, blob_client) -> None:
        """Leases need an existing blob; an empty body reads back as no cursor."""
        from azure.core.exceptions import HttpResponseError

        if await asyncio.wait_for(blob_client.exists(), timeout=self._timeout):
            return
        try:
            await asyncio.wait_for(
                blob_client.upload_blob(b"", overwrite=False), timeout=self._timeout
            )
        except HttpResponseError as e:
            # Another run created (and possibly leased) it first
            if e.status_code not in (409, 412):
                raise

    async def acquire(self, partition_id: str) -> bool:
        """Lease the cursor blob; False if another run holds the lease."""
        from azure.core.exceptions import AzureError, HttpResponseError
        from azure.storage.blob.aio import BlobLeaseClient

        if partition_id in self._leases:
            return True

        await self._ensure_client()
        blob_name = checkpoint_name(partition_id)
        blob_client = self._container_client.get_blob_client(blob_name)

        try:
            await self._ensure_blob_exists(blob_client)
            lease = BlobLeaseClient(blob_client)
            await asyncio.wait_for(
                lease.acquire(lease_duration=LEASE_DURATION_SECONDS), timeout=self._timeout
            )
        except HttpResponseError as e:
            if e.status_code == 409:
                logger.info(
                    "Cursor blob leased by another run",
                    extra={"container": self._container_name, "blob": blob_name},
                )
                return False
            raise CheckpointError(
                f"Failed to lease cursor blob {blob_name}",
                cause=e,
                context={"container": self._container_name, "blob": blob_name},
            ) from e
        except (AzureError, asyncio.TimeoutError) as e:
            raise CheckpointError(
                f"Failed to lease cursor blob {blob_name}",
                cause=e,
                context={"container": self._container_name, "blob": blob_name},
            ) from e

        renewal = asyncio.create_task(
            self._keep_lease(blob_name, lease), name=f"cursor-lease-{partition_id}"
        )
        self._leases[partition_id] = (lease, renewal)
        logger.debug(
            "Acquired cursor lease",
            extra={"container": self._container_name, "blob": blob_name},
        )
        return True

    async def _keep_lease(self, blob_name: str, lease) -> None:
        from azure.core.exceptions import AzureError

        while True:
            await asyncio.sleep(LEASE_DURATION_SECONDS / 3)
            try:
                await asyncio.wait_for(lease.renew(), timeout=self._timeout)
            except (AzureError, asyncio.TimeoutError) as e:
                logger.warning(
                    "Failed to renew cursor lease",
                    extra={
                        "container": self._container_name,
                        "blob": blob_name,
                        "error": str(e) or type(e).__name__,
                    },
                )

    async def release(self, partition_id: str) -> None:
        from azure.core.exceptions import AzureError

        held = self._leases.pop(partition_id, None)
        if held is None:
            return
        lease, renewal = held
        renewal.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await renewal

        blob_name = checkpoint_name(partition_id)
        try:
            await asyncio.wait_for(lease.release(), timeout=self._timeout)
        except (AzureError, asyncio.TimeoutError) as e:
            raise CheckpointError(
                f"Failed to release lease on cursor blob {blob_name}",
                cause=e,
                context={"container": self._container_name, "blob": blob_name},
            ) from e
        logger.debug(
            "Released cursor lease",
            extra={"container": self._container_name, "blob": blob_name},
        )

    async def close(self) -> None:
        """Release held leases and close the blob service client."""
        for partition_id in list(self._leases):
            try:
                await self.release(partition_id)
            except CheckpointError as e:
                logger.warning(
                    "Lease left to expire on close",
                    extra={"partition_id": partition_id, "error": str(e)},
                )
        if self._blob_service_client is not None:
            await self._blob_service_client.close()
            self._blob_service_client = None
            self._container_client = None
            logger.debug("Closed BlobCursorStore")


# =============================================================================
# Factory function
# =============================================================================


def create_cursor_store(config: "CursorStoreConfig") -> CursorStore:
    """Create a cursor store from configuration.

    Raises:
        ValueError: If the store type is unknown
    """
    if config.type == "json":
        return JsonCursorStore(storage_path=config.storage_path)
    elif config.type == "blob":
        return BlobCursorStore(
            connection_string=config.connection_string,
            container_name=config.container_name or DEFAULT_CONTAINER_NAME,
        )
    else:
        raise ValueError(f"Unknown cursor store type: '{config.type}'. Must be 'blob' or 'json'.")


__all__ = [
    "CursorCheckpoint",
    "CursorStore",
    "JsonCursorStore",
    "BlobCursorStore",
    "create_cursor_store",
]
