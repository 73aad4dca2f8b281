"""Forecast pipeline and the query/submission interface used by the API layer."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Sequence

from crowd_forecast.domain.constraints import validate_horizon, validate_observation_count
from crowd_forecast.domain.errors import ForecastError, InvalidObservationError
from crowd_forecast.domain.models import (
    DEGRADED_MODEL_TAG,
    CachedPredictions,
    ModelState,
    Observation,
    Prediction,
    Zone,
    as_utc,
)
from crowd_forecast.domain.ports import ObservationHistory, PredictionArchive
from crowd_forecast.services.model_store import ModelStore
from crowd_forecast.services.prediction_cache import PredictionCache
from crowd_forecast.services.preprocessing import inverse_log1p
from crowd_forecast.services.seasonal_service import SeasonalBaselineEstimator
from crowd_forecast.services.smoothing import round_count
from crowd_forecast.utils.config import Settings, get_settings
from crowd_forecast.utils.logger import get_logger


logger = get_logger(__name__)


def model_tag(state: ModelState, seasonal_applied: bool) -> str:
    tag = "holt" if state.phi == 1.0 else "holt-damped"
    if state.log_transformed:
        tag += "+log1p"
    if seasonal_applied:
        tag += "+seasonal"
    return tag


def degraded_predictions(
    zone: Zone,
    last_count: float,
    horizons: Sequence[int],
    now: datetime,
) -> dict[int, Prediction]:
    """Predict the last observed count for every horizon."""
    current = zone.clamp(round_count(last_count))
    return {
        horizon: Prediction(
            zone_id=zone.zone_id,
            zone_name=zone.name,
            horizon_minutes=horizon,
            current_count=current,
            predicted_count=current,
            model_tag=DEGRADED_MODEL_TAG,
            created_at=now,
        )
        for horizon in horizons
    }


@dataclass
class BatchSubmission:
    accepted: int = 0
    rejected: list[str] = field(default_factory=list)
    states: dict[str, ModelState] = field(default_factory=dict)


def clamp_bound(zone: Zone, value: float) -> float:
    """Confidence bounds share the [0, capacity] range of the counts."""
    value = max(0.0, value)
    if zone.capacity is not None:
        value = min(float(zone.capacity), value)
    return round(value, 2)


class ForecastService:
    """Turns model state into clamped, optionally seasonal, predictions."""

    def __init__(
        self,
        store: ModelStore,
        settings: Optional[Settings] = None,
        history: Optional[ObservationHistory] = None,
        cache: Optional[PredictionCache] = None,
        seasonal: Optional[SeasonalBaselineEstimator] = None,
        archive: Optional[PredictionArchive] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._store = store
        self._history = history
        self._archive = archive
        self._cache = cache or PredictionCache(
            bucket_minutes=self._settings.cache_bucket_minutes,
            max_buckets=self._settings.cache_max_buckets,
        )
        self._seasonal = seasonal or SeasonalBaselineEstimator.from_settings(self._settings)

    @property
    def store(self) -> ModelStore:
        return self._store

    @property
    def cache(self) -> PredictionCache:
        return self._cache

    def steps_for(self, horizon_minutes: int) -> int:
        return max(1, round(horizon_minutes / self._settings.sampling_interval_minutes))

    def seasonal_baseline(self, zone_id: str, now: datetime) -> Optional[float]:
        """Mean count for the current time-of-day bucket, or None."""
        if not self._settings.seasonal_blend_enabled or self._history is None:
            return None
        try:
            observations = self._history.list_observations(
                zone_id,
                since=self._seasonal.lookback_start(now),
            )
        except ForecastError as exc:
            logger.warning("Seasonal history unavailable for %s: %s", zone_id, exc)
            return None
        return self._seasonal.baseline(observations, now)

    def forecast_zone(
        self,
        zone_id: str,
        horizons: Sequence[int],
        now: Optional[datetime] = None,
    ) -> dict[int, Prediction]:
        """Forecast every horizon for one zone.

        Raises ``ModelNotFoundError`` for zones the store has never seen.
        """
        for horizon in horizons:
            validate_horizon(horizon)
        moment = as_utc(now or datetime.now(timezone.utc))
        zone = self._store.get_zone(zone_id)
        state = self._store.get(zone_id)

        if (
            state.data_points_processed < self._settings.forecast_min_update_points
            or state.last_value_only
        ):
            return degraded_predictions(zone, state.last_value, horizons, moment)

        seasonal = self.seasonal_baseline(zone_id, moment)

        current = zone.clamp(round_count(state.last_value))
        predictions: dict[int, Prediction] = {}
        for horizon in horizons:
            steps = self.steps_for(horizon)
            projection = self._store.project(
                zone_id, steps, self._settings.forecast_confidence_z
            )
            value, lower, upper = projection.value, projection.lower, projection.upper
            if projection.state.log_transformed:
                value, lower, upper = (
                    inverse_log1p(value),
                    inverse_log1p(lower),
                    inverse_log1p(upper),
                )
            trend_forecast = round_count(value)
            if seasonal is not None:
                predicted = self._seasonal.blend(seasonal, trend_forecast, horizon)
            else:
                predicted = trend_forecast
            predictions[horizon] = Prediction(
                zone_id=zone.zone_id,
                zone_name=zone.name,
                horizon_minutes=horizon,
                current_count=current,
                predicted_count=zone.clamp(predicted),
                model_tag=model_tag(projection.state, seasonal is not None),
                created_at=moment,
                confidence_lower=clamp_bound(zone, lower),
                confidence_upper=clamp_bound(zone, upper),
            )
        return predictions

    def get_prediction(self, zone_id: str, horizon_minutes: int) -> Prediction:
        return self.forecast_zone(zone_id, [horizon_minutes])[horizon_minutes]

    def get_multi_horizon_predictions(
        self,
        zone_id: str,
        horizons: Optional[Sequence[int]] = None,
    ) -> dict[int, Prediction]:
        return self.forecast_zone(zone_id, list(horizons or self._settings.forecast_horizons))

    def get_all_predictions(self, horizon_minutes: int) -> list[Prediction]:
        """One prediction per known zone, highest predicted count first."""
        validate_horizon(horizon_minutes)
        predictions: list[Prediction] = []
        for zone_id in self._store.zone_ids():
            try:
                predictions.append(self.get_prediction(zone_id, horizon_minutes))
            except (ForecastError, ValueError) as exc:
                logger.error("Error getting prediction for %s: %s", zone_id, exc)
        return sorted(predictions, key=lambda item: item.predicted_count, reverse=True)

    def submit_observation(
        self,
        zone_id: str,
        count: object,
        timestamp: Optional[datetime] = None,
    ) -> ModelState:
        """Feed one observation straight into the store, bypassing the poller.

        History persistence is best effort; the in-memory model advances
        even when storage is down.
        """
        value = validate_observation_count(count)
        moment = as_utc(timestamp or datetime.now(timezone.utc))
        state = self._store.update(zone_id, value, moment)
        if self._history is not None:
            try:
                self._history.save_observations([Observation(zone_id, value, moment)])
            except Exception as exc:  # history is advisory for this path
                logger.warning("Failed to record observation for %s: %s", zone_id, exc)
        return state

    def get_cached_predictions(
        self,
        max_age_minutes: Optional[float] = None,
    ) -> Optional[CachedPredictions]:
        if max_age_minutes is None:
            max_age_minutes = self._settings.cache_default_max_age_minutes
        return self._cache.get(max_age_minutes)

    def submit_observations(self, observations: Sequence[Observation]) -> BatchSubmission:
        """Submit a batch, applying each zone's rows in timestamp order.

        An invalid row is rejected on its own; the rest of the batch applies.
        """
        result = BatchSubmission()
        ordered = sorted(
            observations,
            key=lambda item: (item.zone_id, as_utc(item.observed_at)),
        )
        for observation in ordered:
            try:
                state = self.submit_observation(
                    observation.zone_id,
                    observation.count,
                    observation.observed_at,
                )
            except InvalidObservationError as exc:
                logger.warning("Rejected batch row for %s: %s", observation.zone_id, exc)
                result.rejected.append(f"{observation.zone_id}: {exc}")
                continue
            result.accepted += 1
            result.states[observation.zone_id] = state
        logger.info(
            "Batch submission | accepted=%s | rejected=%s",
            result.accepted,
            len(result.rejected),
        )
        return result

    def get_latest_persisted_predictions(self, zone_id: Optional[str] = None) -> list[Prediction]:
        """Newest stored prediction per (zone, horizon), read from the archive."""
        if self._archive is None:
            return []
        return self._archive.list_latest_predictions(zone_id)
