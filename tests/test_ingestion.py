from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import datetime, timezone

import httpx
import pytest

from crowd_forecast.domain.errors import UpstreamFetchError
from crowd_forecast.domain.models import Observation
from crowd_forecast.repository.data_repository import DataRepository
from crowd_forecast.services.ingestion_service import (
    HttpObservationSource,
    ObservationPoller,
    parse_observation,
)
from crowd_forecast.utils.config import get_settings


UPSTREAM_URL = "http://upstream.test/generator/snapshot"
RECEIVED_AT = datetime(2026, 3, 9, 10, 0, tzinfo=timezone.utc)


def _build_test_settings(tmp_path, filename: str, **overrides):
    return replace(
        get_settings(),
        database_path=tmp_path / filename,
        zone_catalog_path=None,
        schedulers_enabled=False,
        **overrides,
    )


def _source(handler) -> HttpObservationSource:
    return HttpObservationSource(UPSTREAM_URL, transport=httpx.MockTransport(handler))


def test_parse_observation_accepts_field_aliases() -> None:
    row = {"building_id": "B8", "current_count": 31, "ts": "2026-03-09T09:59:00Z"}
    observation = parse_observation(row, RECEIVED_AT)

    assert observation == Observation(
        "B8", 31, datetime(2026, 3, 9, 9, 59, tzinfo=timezone.utc)
    )


def test_parse_observation_stamps_rows_without_timestamp() -> None:
    observation = parse_observation({"zoneId": "Z1", "count": 4}, RECEIVED_AT)
    assert observation.observed_at == RECEIVED_AT


def test_fetch_skips_invalid_rows() -> None:
    rows = [
        {"zone_id": "B1", "count": 10, "timestamp": "2026-03-09T10:00:00+00:00"},
        {"zone_id": "B2", "count": -5},
        {"count": 3},
        {"zone_id": "B3", "count": "many"},
    ]
    source = _source(lambda request: httpx.Response(200, json=rows))

    observations = asyncio.run(source.fetch())

    assert [item.zone_id for item in observations] == ["B1"]


def test_fetch_accepts_wrapped_payload() -> None:
    payload = {"data": [{"building_id": "B9", "count": 77}]}
    source = _source(lambda request: httpx.Response(200, json=payload))
    observations = asyncio.run(source.fetch())
    assert observations[0].count == 77


def test_fetch_raises_on_server_error() -> None:
    source = _source(lambda request: httpx.Response(503, text="maintenance"))
    with pytest.raises(UpstreamFetchError):
        asyncio.run(source.fetch())


def test_poll_once_is_idempotent(tmp_path) -> None:
    settings = _build_test_settings(tmp_path, "poller_test.db")
    repository = DataRepository(settings)
    repository.initialize_database()
    rows = [
        {"zone_id": "B1", "count": 10, "timestamp": "2026-03-09T10:00:00+00:00"},
        {"zone_id": "B9", "count": 140, "timestamp": "2026-03-09T10:00:00+00:00"},
    ]
    poller = ObservationPoller(
        _source(lambda request: httpx.Response(200, json=rows)),
        repository,
        settings,
    )

    first = asyncio.run(poller.poll_once())
    second = asyncio.run(poller.poll_once())

    assert (first.fetched, first.inserted) == (2, 2)
    assert (second.fetched, second.inserted) == (2, 0)
    assert repository.count_observations() == 2


def test_poll_once_times_out_slow_source(tmp_path) -> None:
    settings = _build_test_settings(
        tmp_path,
        "poller_timeout_test.db",
        poll_interval_seconds=0.3,
        upstream_timeout_seconds=0.05,
    )
    repository = DataRepository(settings)
    repository.initialize_database()

    class SlowSource:
        async def fetch(self) -> list[Observation]:
            await asyncio.sleep(1.0)
            return []

    poller = ObservationPoller(SlowSource(), repository, settings)

    with pytest.raises(UpstreamFetchError):
        asyncio.run(poller.poll_once())
