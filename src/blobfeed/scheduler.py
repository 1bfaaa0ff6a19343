"""Fixed-interval runner emulating the ingestion and cleanup timer triggers."""

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from core.logging import log_exception

logger = logging.getLogger(__name__)


class PeriodicJob:
    """Runs a coroutine function every interval_seconds until stopped.

    A failing run is logged and the schedule continues; the next run is the
    retry. Intervals are measured from the end of one run to the start of the
    next, so runs of the same job never overlap.
    """

    def __init__(
        self,
        name: str,
        job: Callable[[], Awaitable[Any]],
        interval_seconds: float,
        run_immediately: bool = True,
    ):
        self.name = name
        self._job = job
        self._interval = interval_seconds
        self._run_immediately = run_immediately
        self._task: asyncio.Task | None = None
        self.runs = 0
        self.failures = 0

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.is_running:
            return
        self._task = asyncio.create_task(self._run(), name=f"periodic-{self.name}")
        logger.info(
            "Periodic job started",
            extra={"job": self.name, "interval_seconds": self._interval},
        )

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
            logger.info("Periodic job stopped", extra={"job": self.name, "runs": self.runs})

    async def _run(self) -> None:
        if not self._run_immediately:
            await asyncio.sleep(self._interval)
        while True:
            await self._run_once()
            await asyncio.sleep(self._interval)

    async def _run_once(self) -> None:
        self.runs += 1
        try:
            await self._job()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.failures += 1
            log_exception(
                logger,
                e,
                f"Periodic job '{self.name}' failed, retrying next interval",
                include_traceback=False,
            )


__all__ = ["PeriodicJob"]
