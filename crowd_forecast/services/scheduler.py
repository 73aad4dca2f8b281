"""Cooperative fixed-delay scheduling on the asyncio event loop."""

from __future__ import annotations

import asyncio
import inspect
from typing import Awaitable, Callable, Optional, Union

from crowd_forecast.utils.logger import get_logger


logger = get_logger(__name__)

TickCallback = Callable[[], Union[Awaitable[object], object]]


class PeriodicScheduler:
    """Runs a callback, waits ``interval_seconds`` after it finishes, repeats.

    The delay counts from completion, so a slow tick pushes the next one back
    instead of overlapping it. Exceptions raised by a tick are logged and the
    loop carries on; ``tick()`` can be awaited directly in tests.
    """

    def __init__(self, name: str, interval_seconds: float, on_tick: TickCallback) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be > 0")
        self._name = name
        self._interval_seconds = interval_seconds
        self._on_tick = on_tick
        self._task: Optional[asyncio.Task[None]] = None
        self._stopping = asyncio.Event()
        self.ticks_completed = 0
        self.ticks_failed = 0

    @property
    def name(self) -> str:
        return self._name

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def tick(self) -> bool:
        """Run the callback once; returns False when it raised."""
        try:
            result = self._on_tick()
            if inspect.isawaitable(result):
                await result
        except asyncio.CancelledError:
            raise
        except Exception:
            self.ticks_failed += 1
            logger.exception("[%s] tick failed; retrying next interval", self._name)
            return False
        self.ticks_completed += 1
        return True

    async def run_forever(self) -> None:
        logger.info("[%s] scheduler started | interval=%ss", self._name, self._interval_seconds)
        while not self._stopping.is_set():
            await self.tick()
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self._interval_seconds)
            except asyncio.TimeoutError:
                continue
        logger.info("[%s] scheduler stopped", self._name)

    def start(self) -> None:
        if self.running:
            logger.warning("[%s] scheduler is already running", self._name)
            return
        self._stopping = asyncio.Event()
        self._task = asyncio.get_running_loop().create_task(
            self.run_forever(), name=f"scheduler:{self._name}"
        )

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stopping.set()
        try:
            await self._task
        finally:
            self._task = None
