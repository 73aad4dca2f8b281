"""Upstream occupancy polling."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

import httpx

from crowd_forecast.domain.constraints import validate_observation_count
from crowd_forecast.domain.errors import ForecastError, UpstreamFetchError
from crowd_forecast.domain.models import Observation, as_utc
from crowd_forecast.domain.ports import ObservationHistory, ObservationSource
from crowd_forecast.utils.config import Settings, get_settings
from crowd_forecast.utils.logger import get_logger


logger = get_logger(__name__)

_ZONE_KEYS = ("zoneId", "zone_id", "building_id", "buildingId")
_COUNT_KEYS = ("count", "current_count")
_TIMESTAMP_KEYS = ("timestamp", "ts")


def _first(row: dict[str, Any], keys: tuple[str, ...]) -> Any:
    for key in keys:
        value = row.get(key)
        if value is not None and value != "":
            return value
    return None


def _parse_timestamp(raw: Any, default: datetime) -> datetime:
    if raw is None:
        return default
    text = str(raw).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return as_utc(datetime.fromisoformat(text))


def parse_observation(row: Any, received_at: datetime) -> Observation:
    """Map one upstream row onto an ``Observation``.

    Rows without a timestamp are stamped with ``received_at``.
    """
    if not isinstance(row, dict):
        raise ValueError(f"row must be an object, got {type(row).__name__}")
    zone_id = _first(row, _ZONE_KEYS)
    if zone_id is None:
        raise ValueError("row has no zone identifier")
    count = validate_observation_count(_first(row, _COUNT_KEYS))
    observed_at = _parse_timestamp(_first(row, _TIMESTAMP_KEYS), received_at)
    return Observation(zone_id=str(zone_id), count=count, observed_at=observed_at)


class HttpObservationSource:
    """Reads the upstream snapshot endpoint.

    Accepts either a bare JSON list of rows or ``{"data": [...]}``. Invalid
    rows are skipped with a warning; an unreachable or non-JSON endpoint
    raises ``UpstreamFetchError``.
    """

    def __init__(
        self,
        url: str,
        timeout_seconds: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._url = url
        self._timeout_seconds = timeout_seconds
        self._transport = transport

    async def fetch(self) -> list[Observation]:
        try:
            async with httpx.AsyncClient(
                timeout=self._timeout_seconds,
                transport=self._transport,
            ) as client:
                response = await client.get(self._url)
                response.raise_for_status()
                payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise UpstreamFetchError(f"Upstream fetch failed for {self._url}: {exc}") from exc

        if isinstance(payload, dict):
            payload = payload.get("data", [])
        if not isinstance(payload, list):
            raise UpstreamFetchError("Upstream payload is not a list of observations")

        received_at = datetime.now(timezone.utc)
        observations: list[Observation] = []
        for row in payload:
            try:
                observations.append(parse_observation(row, received_at))
            except (ForecastError, ValueError) as exc:
                logger.warning("Skipping upstream row %s: %s", row, exc)
        return observations


@dataclass
class PollReport:
    fetched: int
    inserted: int


class ObservationPoller:
    """Copies upstream observations into the history store.

    Writes are idempotent on (zone, timestamp), so a re-delivered snapshot
    adds nothing. The fetch is bounded by a timeout shorter than the poll
    interval so a hung upstream never delays the next tick.
    """

    def __init__(
        self,
        source: ObservationSource,
        history: ObservationHistory,
        settings: Optional[Settings] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._source = source
        self._history = history
        self.last_report: Optional[PollReport] = None

    @property
    def fetch_timeout_seconds(self) -> float:
        interval = self._settings.poll_interval_seconds
        return max(0.1, min(self._settings.upstream_timeout_seconds, interval - 0.1))

    async def poll_once(self) -> PollReport:
        try:
            observations = await asyncio.wait_for(
                self._source.fetch(),
                timeout=self.fetch_timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            raise UpstreamFetchError(
                f"Upstream fetch timed out after {self.fetch_timeout_seconds}s"
            ) from exc

        inserted = self._history.save_observations(observations)
        report = PollReport(fetched=len(observations), inserted=inserted)
        self.last_report = report
        logger.info(
            "Poll completed | fetched=%s | inserted=%s", report.fetched, report.inserted
        )
        return report
