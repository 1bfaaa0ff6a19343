"""Event reader over the blob change feed.

The Azure change feed exposes continuation tokens per page, not per event.
Cursors handed out by the reader are therefore page tokens:

- every event except the last of a page advances to the token the page was
  read from, so committing it replays that page on the next cycle
- the last event of a page advances to the page's continuation token

A committed cursor never points past an event whose effects are not durable;
the price is at-least-once replay of a partially processed page, which the
idempotent file id absorbs.

Usage:
    source = AzureChangeFeedSource(connection_string)
    reader = EventReader(source, page_size=500)

    async for item, cursor in reader.read(from_cursor=token):
        if isinstance(item, MalformedEventError):
            ...
"""

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any, Protocol

from blobfeed.schemas.events import RawEvent
from core.errors.exceptions import MalformedEventError, SourceReadError, wrap_exception

DEFAULT_PAGE_SIZE = 500
DEFAULT_FETCH_TIMEOUT_SECONDS = 30

logger = logging.getLogger(__name__)


@dataclass
class EventPage:
    """One page of raw change-feed records and the token that resumes after it."""

    records: list[Any] = field(default_factory=list)
    continuation_token: str | None = None


class EventSource(Protocol):
    async def fetch_page(self, continuation_token: str | None, page_size: int) -> EventPage:
        """List one page from a token, or from the beginning of the log when None."""
        ...

    async def close(self) -> None: ...


class AzureChangeFeedSource:
    """Change feed of an Azure storage account.

    The change-feed SDK only ships a synchronous client, so page fetches run in
    a worker thread.
    """

    def __init__(self, connection_string: str):
        self._connection_string = connection_string
        self._client = None

    def _get_client(self):
        if self._client is None:
            from azure.storage.blob.changefeed import ChangeFeedClient

            self._client = ChangeFeedClient.from_connection_string(self._connection_string)
        return self._client

    def _fetch_sync(self, continuation_token: str | None, page_size: int) -> EventPage:
        pages = self._get_client().list_changes(results_per_page=page_size).by_page(
            continuation_token=continuation_token
        )
        page = next(pages, None)
        if page is None:
            return EventPage(records=[], continuation_token=None)
        records = list(page)
        return EventPage(records=records, continuation_token=pages.continuation_token)

    async def fetch_page(self, continuation_token: str | None, page_size: int) -> EventPage:
        return await asyncio.to_thread(self._fetch_sync, continuation_token, page_size)

    async def close(self) -> None:
        if self._client is not None:
            await asyncio.to_thread(self._client.close)
            self._client = None


class EventReader:
    """Lazy, ordered, resumable sequence of change events.

    Finite per call: stops on an empty page, a missing continuation token,
    max_pages or the time budget, whichever comes first.
    """

    def __init__(
        self,
        source: EventSource,
        page_size: int = DEFAULT_PAGE_SIZE,
        max_pages: int | None = None,
        time_budget_seconds: float | None = None,
        fetch_timeout_seconds: float = DEFAULT_FETCH_TIMEOUT_SECONDS,
    ):
        self.source = source
        self.page_size = page_size
        self.max_pages = max_pages
        self.time_budget_seconds = time_budget_seconds
        self.fetch_timeout_seconds = fetch_timeout_seconds

    async def _fetch(self, token: str | None) -> EventPage:
        try:
            return await asyncio.wait_for(
                self.source.fetch_page(token, self.page_size),
                timeout=self.fetch_timeout_seconds,
            )
        except SourceReadError:
            raise
        except asyncio.TimeoutError as e:
            raise SourceReadError(
                f"Change feed page fetch timed out after {self.fetch_timeout_seconds}s",
                cause=e,
                context={"has_cursor": token is not None},
            ) from e
        except Exception as e:
            raise wrap_exception(
                e,
                SourceReadError,
                message=f"Change feed page fetch failed: {type(e).__name__}",
                context={"has_cursor": token is not None},
            ) from e

    async def read(
        self, from_cursor: str | None
    ) -> AsyncIterator[tuple[RawEvent | MalformedEventError, str | None]]:
        """
        Yield (event, advancing_cursor) pairs starting at from_cursor.

        Records that cannot be parsed are yielded as MalformedEventError values
        with their advancing cursor, so callers can skip them without wedging.

        Raises:
            SourceReadError: If a page cannot be fetched
        """
        token = from_cursor
        pages_read = 0
        started = time.monotonic()

        while True:
            if self.max_pages is not None and pages_read >= self.max_pages:
                logger.debug("Page limit reached", extra={"pages_read": pages_read})
                return
            if (
                self.time_budget_seconds is not None
                and pages_read > 0
                and time.monotonic() - started >= self.time_budget_seconds
            ):
                logger.debug("Read time budget exhausted", extra={"pages_read": pages_read})
                return

            page = await self._fetch(token)
            pages_read += 1

            if not page.records:
                return

            next_token = page.continuation_token
            last_index = len(page.records) - 1
            for index, record in enumerate(page.records):
                if index == last_index and next_token:
                    advancing = next_token
                else:
                    advancing = token
                try:
                    item = RawEvent.from_change_feed_record(record, advancing)
                except MalformedEventError as e:
                    item = e
                yield item, advancing

            if not next_token or next_token == token:
                return
            token = next_token


__all__ = [
    "EventPage",
    "EventSource",
    "AzureChangeFeedSource",
    "EventReader",
]
