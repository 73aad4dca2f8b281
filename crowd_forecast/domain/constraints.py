"""Domain-level validation rules for model parameters and incoming counts."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional

from crowd_forecast.domain.errors import InvalidConfigurationError, InvalidObservationError


@dataclass(frozen=True)
class SmoothingConfig:
    alpha: float
    beta: float
    phi: float = 1.0
    trend_clamp: Optional[float] = None


@dataclass(frozen=True)
class BlendConfig:
    weight_short: float
    weight_long: float
    switch_minutes: int
    bin_minutes: int
    lookback_days: int


def validate_smoothing_config(config: SmoothingConfig) -> None:
    if not 0.0 < config.alpha < 1.0:
        raise InvalidConfigurationError("alpha must be in (0, 1)")
    if not 0.0 < config.beta < 1.0:
        raise InvalidConfigurationError("beta must be in (0, 1)")
    if not 0.0 < config.phi <= 1.0:
        raise InvalidConfigurationError("phi must be in (0, 1]")
    if config.trend_clamp is not None and config.trend_clamp <= 0.0:
        raise InvalidConfigurationError("trend_clamp must be > 0 when set")


def validate_blend_config(config: BlendConfig) -> None:
    if not 0.0 <= config.weight_short <= 1.0:
        raise InvalidConfigurationError("weight_short must be between 0 and 1")
    if not 0.0 <= config.weight_long <= 1.0:
        raise InvalidConfigurationError("weight_long must be between 0 and 1")
    if config.switch_minutes <= 0:
        raise InvalidConfigurationError("switch_minutes must be > 0")
    if not 0 < config.bin_minutes <= 1440 or 1440 % config.bin_minutes != 0:
        raise InvalidConfigurationError("bin_minutes must divide a 24h day")
    if config.lookback_days <= 0:
        raise InvalidConfigurationError("lookback_days must be > 0")


def validate_winsor_bounds(lower: float, upper: float) -> None:
    if not 0.0 <= lower <= 100.0 or not 0.0 <= upper <= 100.0:
        raise InvalidConfigurationError("winsor percentiles must be within [0, 100]")
    if lower > upper:
        raise InvalidConfigurationError("winsor lower percentile must not exceed upper")


def validate_horizon(horizon_minutes: int) -> None:
    if isinstance(horizon_minutes, bool) or int(horizon_minutes) != horizon_minutes:
        raise InvalidConfigurationError("horizon_minutes must be an integer")
    if horizon_minutes <= 0:
        raise InvalidConfigurationError("horizon_minutes must be > 0")


def validate_observation_count(count: object) -> int:
    """Return the count as an int; anything but a whole number >= 0 raises."""
    if isinstance(count, bool) or not isinstance(count, (int, float)):
        raise InvalidObservationError(f"count must be numeric, got {count!r}")
    if not math.isfinite(count):
        raise InvalidObservationError(f"count must be finite, got {count!r}")
    if count < 0:
        raise InvalidObservationError(f"count must be >= 0, got {count!r}")
    if count != int(count):
        raise InvalidObservationError(f"count must be a whole number, got {count!r}")
    return int(count)
