"""Tests for smoothing, blending and observation validation rules."""

from __future__ import annotations

import math

import pytest

from crowd_forecast.domain.constraints import (
    BlendConfig,
    SmoothingConfig,
    validate_blend_config,
    validate_horizon,
    validate_observation_count,
    validate_smoothing_config,
    validate_winsor_bounds,
)
from crowd_forecast.domain.errors import InvalidConfigurationError, InvalidObservationError


def valid_blend(**overrides) -> BlendConfig:
    """Return a valid baseline BlendConfig, optionally overriding fields."""
    defaults = {
        "weight_short": 0.3,
        "weight_long": 0.6,
        "switch_minutes": 60,
        "bin_minutes": 15,
        "lookback_days": 7,
    }
    defaults.update(overrides)
    return BlendConfig(**defaults)


# --- Smoothing coefficients ---

def test_valid_smoothing_config_passes() -> None:
    validate_smoothing_config(SmoothingConfig(alpha=0.4, beta=0.2, phi=0.98))


@pytest.mark.parametrize("alpha", [0.0, 1.0, -0.1, 1.5])
def test_alpha_outside_open_interval_raises(alpha: float) -> None:
    with pytest.raises(InvalidConfigurationError):
        validate_smoothing_config(SmoothingConfig(alpha=alpha, beta=0.2))


@pytest.mark.parametrize("beta", [0.0, 1.0])
def test_beta_outside_open_interval_raises(beta: float) -> None:
    with pytest.raises(InvalidConfigurationError):
        validate_smoothing_config(SmoothingConfig(alpha=0.2, beta=beta))


def test_phi_of_one_is_allowed_but_zero_is_not() -> None:
    validate_smoothing_config(SmoothingConfig(alpha=0.2, beta=0.1, phi=1.0))
    with pytest.raises(InvalidConfigurationError):
        validate_smoothing_config(SmoothingConfig(alpha=0.2, beta=0.1, phi=0.0))


def test_non_positive_trend_clamp_raises() -> None:
    with pytest.raises(InvalidConfigurationError):
        validate_smoothing_config(SmoothingConfig(alpha=0.2, beta=0.1, trend_clamp=0.0))


def test_configuration_error_is_a_value_error() -> None:
    with pytest.raises(ValueError):
        validate_smoothing_config(SmoothingConfig(alpha=2.0, beta=0.1))


# --- Blend configuration ---

def test_valid_blend_config_passes() -> None:
    validate_blend_config(valid_blend())


def test_bin_that_does_not_divide_a_day_raises() -> None:
    with pytest.raises(InvalidConfigurationError):
        validate_blend_config(valid_blend(bin_minutes=7))


def test_blend_weight_above_one_raises() -> None:
    with pytest.raises(InvalidConfigurationError):
        validate_blend_config(valid_blend(weight_long=1.2))


def test_zero_lookback_raises() -> None:
    with pytest.raises(InvalidConfigurationError):
        validate_blend_config(valid_blend(lookback_days=0))


# --- Winsor bounds and horizons ---

def test_inverted_winsor_bounds_raise() -> None:
    with pytest.raises(InvalidConfigurationError):
        validate_winsor_bounds(95.0, 5.0)


@pytest.mark.parametrize("horizon", [0, -15, 1.5, True])
def test_invalid_horizon_raises(horizon) -> None:
    with pytest.raises(InvalidConfigurationError):
        validate_horizon(horizon)


# --- Observation counts ---

def test_whole_observation_counts_are_returned_as_int() -> None:
    assert validate_observation_count(12) == 12
    assert validate_observation_count(12.0) == 12
    assert isinstance(validate_observation_count(12.0), int)


@pytest.mark.parametrize("count", [-1, "12", None, True, math.nan, math.inf, 3.7, 0.5])
def test_invalid_observation_count_raises(count) -> None:
    with pytest.raises(InvalidObservationError):
        validate_observation_count(count)
