"""Robust cleaning of raw occupancy series before smoothing."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional, Sequence

import numpy as np

from crowd_forecast.domain.constraints import validate_winsor_bounds
from crowd_forecast.utils.config import Settings, get_settings


def fill_nulls(series: Iterable[Optional[float]]) -> np.ndarray:
    """Replace missing values with 0 without dropping any position."""
    values = np.asarray(
        [np.nan if value is None else value for value in series],
        dtype=float,
    )
    return np.nan_to_num(values, nan=0.0, posinf=0.0, neginf=0.0)


def winsor_bounds(
    series: Sequence[float],
    lower: float = 5.0,
    upper: float = 95.0,
) -> tuple[float, float]:
    """Return the (lower, upper) percentiles, interpolated linearly between ranks."""
    validate_winsor_bounds(lower, upper)
    values = np.asarray(series, dtype=float)
    if values.size == 0:
        raise ValueError("winsor bounds need at least one value")
    low, high = np.percentile(values, [lower, upper])
    return float(low), float(high)


def winsorize(
    series: Sequence[float],
    lower: float = 5.0,
    upper: float = 95.0,
) -> np.ndarray:
    """Clip values into the [lower, upper] percentile range.

    Clipping again at the bounds computed on the first pass changes nothing.
    """
    validate_winsor_bounds(lower, upper)
    values = np.asarray(series, dtype=float)
    if values.size == 0:
        return values
    low, high = winsor_bounds(values, lower, upper)
    return np.clip(values, low, high)


def transform_log1p(series: Sequence[float]) -> np.ndarray:
    values = np.asarray(series, dtype=float)
    return np.log1p(np.maximum(values, 0.0))


def inverse_log1p(value: float) -> float:
    return float(np.expm1(value))


@dataclass(frozen=True)
class Preprocessor:
    """Null-fill, winsorize and optionally log1p a series, in that order."""

    winsorize_enabled: bool = True
    winsor_lower: float = 5.0
    winsor_upper: float = 95.0
    log1p_enabled: bool = False

    def __post_init__(self) -> None:
        validate_winsor_bounds(self.winsor_lower, self.winsor_upper)

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "Preprocessor":
        settings = settings or get_settings()
        return cls(
            winsorize_enabled=settings.preprocess_winsorize,
            winsor_lower=settings.preprocess_winsor_lower,
            winsor_upper=settings.preprocess_winsor_upper,
            log1p_enabled=settings.preprocess_log1p,
        )

    def clean(self, series: Iterable[Optional[float]]) -> list[float]:
        values = fill_nulls(series)
        if values.size == 0:
            return []
        if self.winsorize_enabled:
            values = winsorize(values, self.winsor_lower, self.winsor_upper)
        if self.log1p_enabled:
            values = transform_log1p(values)
        return [float(value) for value in values]

    def transform_value(self, value: float) -> float:
        """Map a single raw count into the space the model state lives in."""
        if self.log1p_enabled:
            return float(np.log1p(max(0.0, value)))
        return float(value)
