"""Per-zone ownership of smoothing models.

The store is the only place that creates, restores, updates or refits a
zone's model. Zones unknown at ingestion time are registered on the spot with
fallback configuration instead of being rejected, since the upstream source
can introduce zones before the catalog knows about them.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timezone
from threading import RLock
from typing import Any, Optional, Sequence

from crowd_forecast.domain.constraints import SmoothingConfig, validate_observation_count
from crowd_forecast.domain.errors import ModelNotFoundError
from crowd_forecast.domain.models import ModelState, Zone, as_utc
from crowd_forecast.domain.ports import PersistenceSink
from crowd_forecast.services.hyperparameter_service import HyperparameterSelector
from crowd_forecast.services.preprocessing import Preprocessor
from crowd_forecast.services.smoothing import SmoothingModel
from crowd_forecast.utils.config import Settings, get_settings
from crowd_forecast.utils.logger import get_logger


logger = get_logger(__name__)


# (alpha, beta) seeds per zone type; anything else uses the configured defaults.
TYPE_COEFFICIENTS: dict[str, tuple[float, float]] = {
    "lecture": (0.15, 0.08),
    "lecture_hall": (0.15, 0.08),
    "lab": (0.25, 0.12),
    "computer_lab": (0.25, 0.12),
    "library": (0.18, 0.15),
    "study_area": (0.18, 0.15),
    "cafeteria": (0.3, 0.1),
    "dining": (0.3, 0.1),
    "auditorium": (0.2, 0.05),
    "hall": (0.2, 0.05),
}


def default_coefficients(
    zone_type: Optional[str],
    capacity: Optional[int],
    fallback: tuple[float, float] = (0.2, 0.1),
) -> tuple[float, float]:
    """Seed (alpha, beta) from zone type and size.

    Large zones react a little slower, small zones a little faster; results
    stay within alpha in [0.1, 0.4] and beta in [0.05, 0.3].
    """
    alpha, beta = TYPE_COEFFICIENTS.get((zone_type or "").lower(), fallback)
    if capacity is not None:
        if capacity > 500:
            alpha, beta = alpha * 0.9, beta * 0.9
        elif capacity < 50:
            alpha, beta = alpha * 1.1, beta * 1.1
    alpha = max(0.1, min(0.4, alpha))
    beta = max(0.05, min(0.3, beta))
    return round(alpha, 4), round(beta, 4)


@dataclass
class ZoneModel:
    zone: Zone
    base_config: SmoothingConfig
    model: SmoothingModel


@dataclass(frozen=True)
class Projection:
    """A raw model-space forecast plus the state it was computed from."""

    zone: Zone
    state: ModelState
    value: float
    lower: float
    upper: float


class ModelStore:
    """Owns one ``SmoothingModel`` per zone."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        sink: Optional[PersistenceSink] = None,
        preprocessor: Optional[Preprocessor] = None,
        selector: Optional[HyperparameterSelector] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._sink = sink
        self._preprocessor = preprocessor or Preprocessor.from_settings(self._settings)
        self._selector = selector or HyperparameterSelector(
            min_points=self._settings.hyperparameter_min_points,
        )
        self._models: dict[str, ZoneModel] = {}
        self._lock = RLock()
        self._initialized_at = datetime.now(timezone.utc)

    @property
    def preprocessor(self) -> Preprocessor:
        return self._preprocessor

    def has_zone(self, zone_id: str) -> bool:
        with self._lock:
            return zone_id in self._models

    def zone_ids(self) -> list[str]:
        with self._lock:
            return sorted(self._models)

    def zones(self) -> list[Zone]:
        with self._lock:
            return [self._models[zone_id].zone for zone_id in sorted(self._models)]

    def get(self, zone_id: str) -> ModelState:
        return self._require(zone_id).model.state

    def get_zone(self, zone_id: str) -> Zone:
        return self._require(zone_id).zone

    def _require(self, zone_id: str) -> ZoneModel:
        with self._lock:
            entry = self._models.get(zone_id)
            if entry is None:
                raise ModelNotFoundError(f"zone {zone_id} has no model")
            return entry

    def initialize_zones(self, zones: Sequence[Zone]) -> None:
        logger.info("Initializing models for %s zones", len(zones))
        for zone in zones:
            self.upsert(zone)

    def upsert(self, zone: Zone) -> ModelState:
        """Register a zone, or correct its metadata keeping model history."""
        with self._lock:
            existing = self._models.get(zone.zone_id)
            if existing is not None:
                if existing.zone != zone:
                    logger.info(
                        "Zone metadata corrected | zone_id=%s | capacity=%s -> %s",
                        zone.zone_id,
                        existing.zone.capacity,
                        zone.capacity,
                    )
                existing.zone = zone
                return existing.model.state

            alpha, beta = default_coefficients(
                zone.zone_type,
                zone.capacity,
                fallback=(self._settings.default_alpha, self._settings.default_beta),
            )
            base_config = SmoothingConfig(
                alpha=alpha,
                beta=beta,
                phi=1.0,
                trend_clamp=self._settings.forecast_trend_clamp,
            )
            model = SmoothingModel(
                base_config,
                log_transformed=self._preprocessor.log1p_enabled,
            )
            self._restore(zone.zone_id, model)
            self._models[zone.zone_id] = ZoneModel(zone=zone, base_config=base_config, model=model)
            logger.info(
                "Zone model registered | zone_id=%s | alpha=%.3f | beta=%.3f | capacity=%s",
                zone.zone_id,
                alpha,
                beta,
                zone.capacity,
            )
            return model.state

    def register_or_get_default(self, zone_id: str) -> Zone:
        """Return the zone, registering it with fallback configuration if new."""
        with self._lock:
            entry = self._models.get(zone_id)
            if entry is not None:
                return entry.zone
            zone = Zone(
                zone_id=zone_id,
                name=f"Zone {zone_id}",
                capacity=self._settings.default_zone_capacity,
                zone_type=self._settings.default_zone_type,
            )
            logger.warning("Unknown zone %s registered with default configuration", zone_id)
            self.upsert(zone)
            return zone

    def _restore(self, zone_id: str, model: SmoothingModel) -> None:
        if self._sink is None:
            return
        try:
            saved = self._sink.load_model_state(zone_id)
        except Exception as exc:  # storage outages fall back to a fresh model
            logger.warning("Could not restore model for %s: %s", zone_id, exc)
            return
        if saved is None:
            return
        if saved.log_transformed != self._preprocessor.log1p_enabled:
            logger.info(
                "Discarding saved state for %s: transform setting changed", zone_id
            )
            return
        model.restore(saved)
        logger.info(
            "Restored model for %s | points=%s", zone_id, saved.data_points_processed
        )

    def _persist(self, zone_id: str, state: ModelState) -> None:
        if self._sink is None:
            return
        try:
            self._sink.save_model_state(zone_id, state)
        except Exception as exc:  # forecasting never waits on storage durability
            logger.warning(
                "Failed to save model state for %s: %s (continuing in memory)",
                zone_id,
                exc,
            )

    def update(
        self,
        zone_id: str,
        count: object,
        timestamp: Optional[datetime] = None,
    ) -> ModelState:
        """Fold one observation into the zone's model.

        Observations at or before the model's last update are ignored so
        repeated deliveries never move the state twice.
        """
        value = validate_observation_count(count)
        moment = as_utc(timestamp or datetime.now(timezone.utc))
        with self._lock:
            self.register_or_get_default(zone_id)
            entry = self._models[zone_id]
            state = entry.model.state
            if state.last_updated is not None and moment <= state.last_updated:
                logger.debug(
                    "Ignoring stale observation | zone_id=%s | observed_at=%s | last_updated=%s",
                    zone_id,
                    moment.isoformat(),
                    state.last_updated.isoformat(),
                )
                return state
            state = entry.model.update(
                self._preprocessor.transform_value(value),
                value,
                moment,
            )
        self._persist(zone_id, state)
        return state

    def refit(
        self,
        zone_id: str,
        values: Sequence[Optional[float]],
        *,
        last_updated: Optional[datetime] = None,
        search: Optional[bool] = None,
    ) -> ModelState:
        """Re-derive a zone's state from a raw history window."""
        if not values:
            raise ValueError("refit requires at least one value")
        cleaned = self._preprocessor.clean(values)
        search_enabled = (
            self._settings.hyperparameter_search_enabled if search is None else search
        )
        with self._lock:
            self.register_or_get_default(zone_id)
            entry = self._models[zone_id]
            config = entry.base_config
            if search_enabled:
                config = self._selector.select(cleaned, config).config
            elif len(cleaned) < self._settings.hyperparameter_min_points:
                config = replace(config, phi=1.0)
            last_raw = values[-1]
            state = entry.model.fit(
                cleaned,
                config=config,
                last_value=float(last_raw) if last_raw is not None else 0.0,
                last_updated=as_utc(last_updated) if last_updated else None,
                log_transformed=self._preprocessor.log1p_enabled,
            )
        self._persist(zone_id, state)
        return state

    def project(self, zone_id: str, steps: int, z: float = 1.96) -> Projection:
        """Model-space h-step forecast and interval for one zone."""
        with self._lock:
            entry = self._require(zone_id)
            value = entry.model.forecast(steps)
            lower, upper = entry.model.confidence_interval(value, steps, z)
            return Projection(
                zone=entry.zone,
                state=entry.model.state,
                value=value,
                lower=lower,
                upper=upper,
            )

    def save_all_models(self) -> None:
        with self._lock:
            snapshot = [(zone_id, entry.model.state) for zone_id, entry in self._models.items()]
        for zone_id, state in snapshot:
            self._persist(zone_id, state)
        logger.info("Saved %s model states", len(snapshot))

    def get_diagnostics(self, zone_id: str) -> dict[str, Any]:
        entry = self._require(zone_id)
        return {
            "zone": {
                "zone_id": entry.zone.zone_id,
                "name": entry.zone.name,
                "capacity": entry.zone.capacity,
                "zone_type": entry.zone.zone_type,
            },
            "base_alpha": entry.base_config.alpha,
            "base_beta": entry.base_config.beta,
            "state": entry.model.state.to_dict(),
        }

    def get_summary_stats(self) -> dict[str, Any]:
        with self._lock:
            states = [entry.model.state for entry in self._models.values()]
        total_points = sum(state.data_points_processed for state in states)
        initialized = sum(1 for state in states if state.is_initialized)
        return {
            "total_models": len(states),
            "initialized_models": initialized,
            "uninitialized_models": len(states) - initialized,
            "total_data_points": total_points,
            "average_data_points_per_model": total_points / len(states) if states else 0.0,
            "uptime_seconds": (datetime.now(timezone.utc) - self._initialized_at).total_seconds(),
        }
