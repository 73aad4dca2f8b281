"""Domain models for per-zone occupancy forecasting."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional


DEGRADED_MODEL_TAG = "last-observed"


def as_utc(moment: datetime) -> datetime:
    """Treat naive timestamps as UTC and normalise aware ones to UTC."""
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


@dataclass(frozen=True)
class Zone:
    zone_id: str
    name: str
    capacity: Optional[int] = None
    zone_type: Optional[str] = None

    def clamp(self, value: int) -> int:
        """Clamp a count into [0, capacity]; unknown capacity is unbounded."""
        value = max(0, value)
        if self.capacity is None:
            return value
        return min(self.capacity, value)


@dataclass(frozen=True)
class Observation:
    zone_id: str
    count: int
    observed_at: datetime


@dataclass(frozen=True)
class ModelState:
    """Snapshot of one zone's smoothing state.

    `level` and `trend` live in log1p space when `log_transformed` is set;
    `last_value` is always the raw observed count.
    """

    level: float
    trend: float
    alpha: float
    beta: float
    phi: float = 1.0
    data_points_processed: int = 0
    last_updated: Optional[datetime] = None
    rmse: Optional[float] = None
    last_value: float = 0.0
    last_value_only: bool = False
    log_transformed: bool = False

    @property
    def is_initialized(self) -> bool:
        return self.data_points_processed > 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "level": self.level,
            "trend": self.trend,
            "alpha": self.alpha,
            "beta": self.beta,
            "phi": self.phi,
            "data_points_processed": self.data_points_processed,
            "last_updated": self.last_updated.isoformat() if self.last_updated else None,
            "rmse": self.rmse,
            "last_value": self.last_value,
            "last_value_only": self.last_value_only,
            "log_transformed": self.log_transformed,
        }


@dataclass(frozen=True)
class Prediction:
    zone_id: str
    zone_name: str
    horizon_minutes: int
    current_count: int
    predicted_count: int
    model_tag: str
    created_at: datetime
    confidence_lower: Optional[float] = None
    confidence_upper: Optional[float] = None

    @property
    def degraded(self) -> bool:
        return self.model_tag == DEGRADED_MODEL_TAG

    def to_dict(self) -> dict[str, Any]:
        return {
            "zone_id": self.zone_id,
            "zone_name": self.zone_name,
            "horizon_minutes": self.horizon_minutes,
            "current_count": self.current_count,
            "predicted_count": self.predicted_count,
            "confidence_lower": self.confidence_lower,
            "confidence_upper": self.confidence_upper,
            "model_tag": self.model_tag,
            "created_at": self.created_at.isoformat(),
        }


@dataclass(frozen=True)
class CachedPredictions:
    predictions: list[Prediction]
    cached_at: datetime
    age_minutes: float
