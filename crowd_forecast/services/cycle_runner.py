"""Scheduled forecast cycle: collect, update, forecast, publish."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional, Sequence

from crowd_forecast.domain.errors import ForecastError, InsufficientHistoryError
from crowd_forecast.domain.models import Observation, Prediction, as_utc
from crowd_forecast.domain.ports import ObservationHistory, PersistenceSink
from crowd_forecast.services.forecast_service import ForecastService, degraded_predictions
from crowd_forecast.services.model_store import ModelStore
from crowd_forecast.utils.config import Settings, get_settings
from crowd_forecast.utils.logger import get_logger


logger = get_logger(__name__)


class CycleState(str, enum.Enum):
    IDLE = "idle"
    COLLECTING = "collecting"
    UPDATING = "updating"
    FORECASTING = "forecasting"
    PUBLISHING = "publishing"


@dataclass
class CycleReport:
    started_at: datetime
    zones_processed: int = 0
    zones_degraded: list[str] = field(default_factory=list)
    observations_applied: int = 0
    predictions: list[Prediction] = field(default_factory=list)
    persisted: bool = False

    @property
    def prediction_count(self) -> int:
        return len(self.predictions)


@dataclass
class _ZoneBatch:
    zone_id: str
    fresh: list[Observation]
    window: list[Observation]
    history_error: Optional[Exception] = None


class ForecastCycleRunner:
    """Processes every zone sequentially once per tick.

    Zones are independent: a zone whose history is too short, whose history
    read fails or whose model raises is published with last-observed
    predictions and the cycle moves on. Only the runner and
    ``ForecastService.submit_observation`` mutate model state.
    """

    def __init__(
        self,
        store: ModelStore,
        forecast_service: ForecastService,
        history: ObservationHistory,
        sink: Optional[PersistenceSink] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._store = store
        self._forecast_service = forecast_service
        self._history = history
        self._sink = sink
        self.state = CycleState.IDLE
        self.last_report: Optional[CycleReport] = None

    def _transition(self, state: CycleState) -> None:
        logger.debug("Forecast cycle %s -> %s", self.state.value, state.value)
        self.state = state

    async def run_cycle(self, now: Optional[datetime] = None) -> CycleReport:
        """Run one full tick; the scheduler awaits this."""
        moment = as_utc(now or datetime.now(timezone.utc))
        report = CycleReport(started_at=moment)
        horizons = list(self._settings.forecast_horizons)
        try:
            self._transition(CycleState.COLLECTING)
            batches = self._collect(moment)

            self._transition(CycleState.UPDATING)
            for batch in batches:
                report.observations_applied += self._apply(batch)

            self._transition(CycleState.FORECASTING)
            for batch in batches:
                predictions, degraded = self._forecast(batch, horizons, moment)
                report.predictions.extend(predictions)
                report.zones_processed += 1
                if degraded:
                    report.zones_degraded.append(batch.zone_id)

            self._transition(CycleState.PUBLISHING)
            report.persisted = self._publish(report.predictions, moment)
        finally:
            self._transition(CycleState.IDLE)

        self.last_report = report
        logger.info(
            "Forecast cycle completed | zones=%s | degraded=%s | observations=%s | predictions=%s",
            report.zones_processed,
            len(report.zones_degraded),
            report.observations_applied,
            report.prediction_count,
        )
        return report

    def _zone_ids(self, moment: datetime) -> list[str]:
        since = moment - timedelta(minutes=self._settings.forecast_history_minutes)
        active = self._history.list_active_zone_ids(since)
        return sorted(set(self._store.zone_ids()).union(active))

    def _collect(self, moment: datetime) -> list[_ZoneBatch]:
        window_start = moment - timedelta(minutes=self._settings.forecast_history_minutes)
        batches: list[_ZoneBatch] = []
        for zone_id in self._zone_ids(moment):
            last_updated = (
                self._store.get(zone_id).last_updated if self._store.has_zone(zone_id) else None
            )
            try:
                fresh = self._history.list_observations(zone_id, after=last_updated)
                fresh = [item for item in fresh if item.observed_at <= moment]
                window = [
                    item
                    for item in self._history.list_observations(zone_id, since=window_start)
                    if item.observed_at <= moment
                ]
            except ForecastError as exc:
                logger.error("History fetch failed for %s: %s", zone_id, exc)
                batches.append(_ZoneBatch(zone_id, [], [], history_error=exc))
                continue
            batches.append(_ZoneBatch(zone_id, fresh, window))
        return batches

    def _apply(self, batch: _ZoneBatch) -> int:
        """Apply fresh observations in timestamp order, then refit if possible."""
        applied = 0
        try:
            for observation in batch.fresh:
                self._store.update(batch.zone_id, observation.count, observation.observed_at)
                applied += 1
            if len(batch.window) >= self._settings.forecast_min_update_points:
                self._store.refit(
                    batch.zone_id,
                    [float(item.count) for item in batch.window],
                    last_updated=batch.window[-1].observed_at,
                )
        except (ForecastError, ValueError) as exc:
            logger.error("Model update failed for %s: %s", batch.zone_id, exc)
            batch.history_error = exc
        return applied

    def _forecast(
        self,
        batch: _ZoneBatch,
        horizons: Sequence[int],
        moment: datetime,
    ) -> tuple[list[Prediction], bool]:
        zone_id = batch.zone_id
        try:
            if batch.history_error is not None:
                raise batch.history_error
            if len(batch.window) < self._settings.forecast_min_update_points:
                raise InsufficientHistoryError(
                    zone_id,
                    len(batch.window),
                    self._settings.forecast_min_update_points,
                )
            forecasts = self._forecast_service.forecast_zone(zone_id, horizons, moment)
            predictions = list(forecasts.values())
            return predictions, any(item.degraded for item in predictions)
        except InsufficientHistoryError as exc:
            logger.info("Degraded forecast for %s: %s", zone_id, exc)
        except Exception as exc:  # one zone never aborts the cycle
            logger.exception("Forecast failed for %s: %s", zone_id, exc)
        return self._fallback(batch, horizons, moment), True

    def _fallback(
        self,
        batch: _ZoneBatch,
        horizons: Sequence[int],
        moment: datetime,
    ) -> list[Prediction]:
        zone = self._store.register_or_get_default(batch.zone_id)
        if batch.window:
            last_count = float(batch.window[-1].count)
        elif self._store.has_zone(batch.zone_id):
            last_count = self._store.get(batch.zone_id).last_value
        else:
            last_count = 0.0
        return list(degraded_predictions(zone, last_count, horizons, moment).values())

    def _publish(self, predictions: list[Prediction], moment: datetime) -> bool:
        self._forecast_service.cache.put(predictions, moment)
        if self._sink is None or not predictions:
            return False
        try:
            self._sink.save_predictions(predictions)
        except Exception as exc:  # persistence is best effort
            logger.warning("Failed to persist %s predictions: %s", len(predictions), exc)
            return False
        return True
