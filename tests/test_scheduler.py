from __future__ import annotations

import asyncio

import pytest

from crowd_forecast.domain.errors import UpstreamFetchError
from crowd_forecast.services.scheduler import PeriodicScheduler


def test_tick_runs_sync_and_async_callbacks() -> None:
    calls: list[str] = []

    async def async_tick() -> None:
        calls.append("async")

    sync_scheduler = PeriodicScheduler("sync", 1.0, lambda: calls.append("sync"))
    async_scheduler = PeriodicScheduler("async", 1.0, async_tick)

    assert asyncio.run(sync_scheduler.tick()) is True
    assert asyncio.run(async_scheduler.tick()) is True
    assert calls == ["sync", "async"]


def test_failed_tick_is_logged_and_counted() -> None:
    async def failing() -> None:
        raise UpstreamFetchError("upstream down")

    scheduler = PeriodicScheduler("poller", 1.0, failing)

    assert asyncio.run(scheduler.tick()) is False
    assert scheduler.ticks_failed == 1
    assert scheduler.ticks_completed == 0


def test_loop_keeps_running_after_failures_until_stopped() -> None:
    outcomes: list[int] = []

    async def sometimes_failing() -> None:
        outcomes.append(len(outcomes))
        if len(outcomes) % 2 == 0:
            raise RuntimeError("transient")

    async def scenario() -> PeriodicScheduler:
        scheduler = PeriodicScheduler("cycle", 0.01, sometimes_failing)
        scheduler.start()
        assert scheduler.running
        while len(outcomes) < 4:
            await asyncio.sleep(0.01)
        await scheduler.stop()
        return scheduler

    scheduler = asyncio.run(scenario())

    assert not scheduler.running
    assert scheduler.ticks_failed >= 2
    assert scheduler.ticks_completed >= 2


def test_non_positive_interval_rejected() -> None:
    with pytest.raises(ValueError):
        PeriodicScheduler("bad", 0, lambda: None)
