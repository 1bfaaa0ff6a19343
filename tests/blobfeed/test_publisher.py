"""Tests for downstream publishers and factory."""

import json
from unittest.mock import AsyncMock, MagicMock

import pytest
from azure.core.exceptions import ServiceRequestError
from azure.eventhub.exceptions import EventHubError

from blobfeed.publisher import (
    EventHubPublisher,
    JsonLinesPublisher,
    ServiceBusPublisher,
    create_publisher,
    mask_connection_string,
)
from blobfeed.schemas.metadata import build_file_metadata
from config.config import PublisherConfig
from core.errors.exceptions import PublishError
from fakes import ACCOUNT_URL, FIXED_NOW

CONN = "Endpoint=sb://ns.servicebus.windows.net/;SharedAccessKeyName=send;SharedAccessKey=secret123"


def _metadata(name: str = "a.pdf"):
    return build_file_metadata(
        url=f"{ACCOUNT_URL}/uploads/{name}",
        content_type="application/pdf",
        content_length=10,
        blob_type="BlockBlob",
        event_time=FIXED_NOW,
        now=FIXED_NOW,
    )


class TestMaskConnectionString:
    def test_masks_key(self):
        masked = mask_connection_string(CONN)
        assert "secret123" not in masked
        assert "SharedAccessKey=***MASKED***" in masked
        assert "SharedAccessKeyName=send" in masked

    def test_empty(self):
        assert mask_connection_string("") == ""


# =============================================================================
# ServiceBusPublisher
# =============================================================================


@pytest.fixture
def servicebus():
    publisher = ServiceBusPublisher(connection_string=CONN, queue_name="file-metadata")
    publisher._client = MagicMock()
    publisher._client.close = AsyncMock()
    publisher._sender = AsyncMock()
    return publisher


class TestServiceBusPublisher:
    async def test_publish_sets_message_id_to_file_id(self, servicebus):
        metadata = _metadata()

        receipt = await servicebus.publish(metadata)

        message = servicebus._sender.send_messages.call_args.args[0]
        assert message.message_id == metadata.id
        assert message.content_type == "application/json"
        assert receipt.message_id == metadata.id
        assert receipt.destination == "file-metadata"

    async def test_publish_failure_raises(self, servicebus):
        servicebus._sender.send_messages.side_effect = ServiceRequestError("offline")

        with pytest.raises(PublishError) as exc_info:
            await servicebus.publish(_metadata())

        assert exc_info.value.context["queue_name"] == "file-metadata"

    async def test_close_releases_clients(self, servicebus):
        sender = servicebus._sender
        client = servicebus._client

        await servicebus.close()

        sender.close.assert_awaited_once()
        client.close.assert_awaited_once()
        assert servicebus._sender is None

    async def test_close_before_start_is_noop(self):
        publisher = ServiceBusPublisher(connection_string=CONN, queue_name="q")
        await publisher.close()


# =============================================================================
# EventHubPublisher
# =============================================================================


@pytest.fixture
def eventhub():
    publisher = EventHubPublisher(connection_string=CONN, eventhub_name="file-metadata")
    producer = AsyncMock()
    producer.create_batch = AsyncMock(return_value=MagicMock())
    publisher._producer = producer
    return publisher


class TestEventHubPublisher:
    async def test_publish_keys_by_file_id(self, eventhub):
        metadata = _metadata()

        await eventhub.publish(metadata)

        producer = eventhub._producer
        producer.create_batch.assert_awaited_once_with(partition_key=metadata.id)
        batch = producer.create_batch.return_value
        event_data = batch.add.call_args.args[0]
        assert event_data.properties["_key"] == metadata.id
        assert event_data.properties["file_id"] == metadata.id
        assert json.loads(event_data.body_as_str())["fileName"] == "a.pdf"
        producer.send_batch.assert_awaited_once_with(batch)

    async def test_publish_failure_raises(self, eventhub):
        eventhub._producer.send_batch.side_effect = EventHubError("link detached")

        with pytest.raises(PublishError):
            await eventhub.publish(_metadata())

    async def test_close(self, eventhub):
        producer = eventhub._producer
        await eventhub.close()
        producer.close.assert_awaited_once()
        assert eventhub._producer is None


# =============================================================================
# JsonLinesPublisher
# =============================================================================


class TestJsonLinesPublisher:
    async def test_appends_one_line_per_message(self, tmp_path):
        out = tmp_path / "outbox" / "meta.jsonl"
        publisher = JsonLinesPublisher(output_path=out)
        await publisher.start()

        await publisher.publish(_metadata("a.pdf"))
        await publisher.publish(_metadata("b.pdf"))

        lines = [json.loads(line) for line in out.read_text().splitlines()]
        assert [line["body"]["fileName"] for line in lines] == ["a.pdf", "b.pdf"]
        assert lines[0]["message_id"] == lines[0]["application_properties"]["file_id"]

    async def test_write_failure_raises(self, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("file")
        publisher = JsonLinesPublisher(output_path=blocker / "meta.jsonl")

        with pytest.raises(PublishError):
            await publisher.publish(_metadata())


# =============================================================================
# Factory tests
# =============================================================================


class TestCreatePublisher:
    def test_servicebus(self):
        publisher = create_publisher(PublisherConfig(type="servicebus", connection_string=CONN, queue_name="q"))
        assert isinstance(publisher, ServiceBusPublisher)

    def test_eventhub(self):
        publisher = create_publisher(PublisherConfig(type="eventhub", connection_string=CONN, eventhub_name="h"))
        assert isinstance(publisher, EventHubPublisher)

    def test_jsonl(self, tmp_path):
        publisher = create_publisher(PublisherConfig(type="jsonl", output_path=str(tmp_path / "o.jsonl")))
        assert isinstance(publisher, JsonLinesPublisher)

    def test_unknown_type(self):
        with pytest.raises(ValueError, match="Unknown publisher type"):
            create_publisher(PublisherConfig(type="kafka"))
