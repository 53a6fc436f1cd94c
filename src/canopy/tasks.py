"""PeriodicTask — background maintenance loop for sweeps and purges."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)


class PeriodicTask:
    """Runs *fn* every *interval* seconds on the current event loop.

    A run that fails is logged and the loop carries on.  A run requested
    while the previous one is still in flight is skipped, not queued.
    """

    def __init__(
        self,
        name: str,
        interval: float,
        fn: Callable[[], Awaitable[Any]],
    ) -> None:
        if interval <= 0:
            raise ValueError(f"Interval must be positive: {interval}")
        self.name = name
        self.interval = interval
        self._fn = fn
        self._task: asyncio.Task[None] | None = None
        self._in_flight = False
        self.runs = 0
        self.failures = 0

    @property
    def started(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    def start(self) -> None:
        if self.started:
            return
        self._task = asyncio.create_task(self._loop(), name=f"canopy:{self.name}")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            await self.run_once()

    async def run_once(self) -> bool:
        """Run *fn* now unless a run is already in flight.  Returns whether it ran."""
        if self._in_flight:
            logger.debug("Skipping %s: previous run still in flight", self.name)
            return False
        self._in_flight = True
        try:
            await self._fn()
            self.runs += 1
        except Exception:
            self.failures += 1
            logger.warning("Periodic task %s failed", self.name, exc_info=True)
        finally:
            self._in_flight = False
        return True
