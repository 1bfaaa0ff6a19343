"""Downstream publishers for file metadata.

A publish either gets the message accepted by the queue or raises
PublishError: there is no silent drop and no internal retry loop. Retries
happen by re-running the ingestion cycle from the uncommitted cursor, so
every message carries the file id as its dedup key.

Implementations:
- ServiceBusPublisher: Azure Service Bus queue (message_id = file id)
- EventHubPublisher: Azure Event Hub (file id as `_key` property and partition key)
- JsonLinesPublisher: appends envelopes to a local .jsonl file (development)
"""

import asyncio
import logging
import re
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from blobfeed import metrics
from blobfeed.schemas.metadata import FileMetadata, PublishEnvelope
from core.errors.exceptions import PublishError

if TYPE_CHECKING:
    from config.config import PublisherConfig

logger = logging.getLogger(__name__)


def mask_connection_string(conn_str: str) -> str:
    if not conn_str:
        return ""
    return re.sub(
        r"(SharedAccessKey=)[^;]+",
        r"\1***MASKED***",
        conn_str,
        flags=re.IGNORECASE,
    )


@dataclass
class PublishReceipt:
    """Confirmation that the queue accepted a message."""

    message_id: str
    destination: str
    published_at: datetime


class Publisher(Protocol):
    async def start(self) -> None: ...

    async def publish(self, metadata: FileMetadata) -> PublishReceipt:
        """Send one record. Raises PublishError if the queue did not accept it."""
        ...

    async def close(self) -> None: ...


# =============================================================================
# Azure Service Bus
# =============================================================================


class ServiceBusPublisher:
    """Sends file metadata to an Azure Service Bus queue."""

    name = "servicebus"

    def __init__(self, connection_string: str, queue_name: str):
        self.connection_string = connection_string
        self.queue_name = queue_name
        self._client = None
        self._sender = None

        logger.info(
            "Initialized Service Bus publisher",
            extra={"queue_name": queue_name},
        )

    async def start(self) -> None:
        if self._sender is not None:
            return

        from azure.servicebus.aio import ServiceBusClient

        self._client = ServiceBusClient.from_connection_string(self.connection_string)
        self._sender = self._client.get_queue_sender(queue_name=self.queue_name)
        metrics.update_connection_status(self.name, connected=True)
        logger.info(
            "Service Bus publisher started",
            extra={
                "queue_name": self.queue_name,
                "connection_string_masked": mask_connection_string(self.connection_string),
            },
        )

    async def publish(self, metadata: FileMetadata) -> PublishReceipt:
        from azure.core.exceptions import AzureError
        from azure.servicebus import ServiceBusMessage

        await self.start()
        envelope = PublishEnvelope.from_metadata(metadata)
        message = ServiceBusMessage(
            envelope.body,
            message_id=envelope.message_id,
            content_type=envelope.content_type,
            application_properties=envelope.application_properties,
        )

        try:
            await self._sender.send_messages(message)
        except (AzureError, OSError) as e:
            metrics.record_publish_failure(self.name)
            raise PublishError(
                f"Service Bus send to {self.queue_name} failed",
                cause=e,
                context={"queue_name": self.queue_name, "file_id": metadata.id},
            ) from e

        logger.debug(
            "Message sent to Service Bus queue",
            extra={"queue_name": self.queue_name, "file_id": metadata.id},
        )
        return PublishReceipt(
            message_id=envelope.message_id,
            destination=self.queue_name,
            published_at=datetime.now(UTC),
        )

    async def close(self) -> None:
        if self._client is None:
            return
        try:
            if self._sender is not None:
                await self._sender.close()
            await self._client.close()
        finally:
            metrics.update_connection_status(self.name, connected=False)
            self._sender = None
            self._client = None
            logger.info("Service Bus publisher stopped")


# =============================================================================
# Azure Event Hub
# =============================================================================


class EventHubPublisher:
    """Sends file metadata to an Azure Event Hub.

    Uses TransportType.AmqpOverWebsocket for compatibility with Private Link
    endpoints. The file id is the partition key so replays of the same blob
    land on the same partition.
    """

    name = "eventhub"

    def __init__(self, connection_string: str, eventhub_name: str):
        self.connection_string = connection_string
        self.eventhub_name = eventhub_name
        self._producer = None

        logger.info(
            "Initialized Event Hub publisher",
            extra={"eventhub_name": eventhub_name, "transport": "AmqpOverWebsocket"},
        )

    async def start(self) -> None:
        if self._producer is not None:
            return

        from azure.eventhub import TransportType
        from azure.eventhub.aio import EventHubProducerClient

        self._producer = EventHubProducerClient.from_connection_string(
            conn_str=self.connection_string,
            eventhub_name=self.eventhub_name,
            transport_type=TransportType.AmqpOverWebsocket,
        )
        metrics.update_connection_status(self.name, connected=True)
        logger.info(
            "Event Hub publisher started",
            extra={
                "eventhub_name": self.eventhub_name,
                "connection_string_masked": mask_connection_string(self.connection_string),
            },
        )

    async def publish(self, metadata: FileMetadata) -> PublishReceipt:
        from azure.core.exceptions import AzureError
        from azure.eventhub import EventData
        from azure.eventhub.exceptions import EventHubError

        await self.start()
        envelope = PublishEnvelope.from_metadata(metadata)
        event_data = EventData(envelope.body)
        event_data.content_type = envelope.content_type
        event_data.properties = {"_key": envelope.message_id, **envelope.application_properties}

        try:
            batch = await self._producer.create_batch(partition_key=envelope.message_id)
            batch.add(event_data)
            await self._producer.send_batch(batch)
        except (EventHubError, AzureError, OSError) as e:
            metrics.record_publish_failure(self.name)
            raise PublishError(
                f"Event Hub send to {self.eventhub_name} failed",
                cause=e,
                context={"eventhub_name": self.eventhub_name, "file_id": metadata.id},
            ) from e

        logger.debug(
            "Message sent to Event Hub",
            extra={"eventhub_name": self.eventhub_name, "file_id": metadata.id},
        )
        return PublishReceipt(
            message_id=envelope.message_id,
            destination=self.eventhub_name,
            published_at=datetime.now(UTC),
        )

    async def close(self) -> None:
        if self._producer is None:
            return
        try:
            await self._producer.close()
        finally:
            metrics.update_connection_status(self.name, connected=False)
            self._producer = None
            # EventHubProducerClient uses aiohttp internally with AmqpOverWebsocket
            # and doesn't always close sessions cleanly on exit
            await asyncio.sleep(0.250)
            logger.info("Event Hub publisher stopped")


# =============================================================================
# Local JSON lines
# =============================================================================


class JsonLinesPublisher:
    """Appends one envelope per line to a local file."""

    name = "jsonl"

    def __init__(self, output_path: str | Path):
        self.output_path = Path(output_path)

        logger.info(
            "Initialized JSON lines publisher",
            extra={"output_path": str(self.output_path)},
        )

    async def start(self) -> None:
        try:
            self.output_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise PublishError(
                f"Cannot create outbox directory {self.output_path.parent}",
                cause=e,
                context={"output_path": str(self.output_path)},
            ) from e

    async def publish(self, metadata: FileMetadata) -> PublishReceipt:
        envelope = PublishEnvelope.from_metadata(metadata)
        try:
            self.output_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.output_path, "a", encoding="utf-8") as f:
                f.write(envelope.to_json_line() + "\n")
        except OSError as e:
            metrics.record_publish_failure(self.name)
            raise PublishError(
                f"Failed to append to {self.output_path}",
                cause=e,
                context={"output_path": str(self.output_path), "file_id": metadata.id},
            ) from e

        return PublishReceipt(
            message_id=envelope.message_id,
            destination=str(self.output_path),
            published_at=datetime.now(UTC),
        )

    async def close(self) -> None:
        """No-op for JSON lines publisher."""
        pass


# =============================================================================
# Factory function
# =============================================================================


def create_publisher(config: "PublisherConfig") -> Publisher:
    """Create a publisher from configuration.

    Raises:
        ValueError: If the publisher type is unknown
    """
    if config.type == "servicebus":
        return ServiceBusPublisher(
            connection_string=config.connection_string,
            queue_name=config.queue_name,
        )
    elif config.type == "eventhub":
        return EventHubPublisher(
            connection_string=config.connection_string,
            eventhub_name=config.eventhub_name,
        )
    elif config.type == "jsonl":
        return JsonLinesPublisher(output_path=config.output_path)
    else:
        raise ValueError(
            f"Unknown publisher type: '{config.type}'. "
            "Must be 'servicebus', 'eventhub' or 'jsonl'."
        )


__all__ = [
    "Publisher",
    "PublishReceipt",
    "ServiceBusPublisher",
    "EventHubPublisher",
    "JsonLinesPublisher",
    "create_publisher",
    "mask_connection_string",
]
