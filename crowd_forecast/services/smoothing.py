"""Damped double exponential smoothing (Holt's linear method with damping).

One model covers every variant the forecaster needs:

* ``phi == 1.0`` is classic undamped Holt: ``F(t+h) = L + h*T``.
* ``0 < phi < 1`` damps the trend geometrically so long horizons converge to
  ``L + T*phi/(1-phi)`` instead of growing without bound.

Update equations for an observation ``x`` with previous state ``(L, T)``::

    yhat  = L + phi*T
    L'    = alpha*x + (1-alpha)*(L + phi*T)
    T'    = beta*(L' - L) + (1-beta)*phi*T
"""

from __future__ import annotations

import math
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Optional, Sequence

import numpy as np

from crowd_forecast.domain.constraints import SmoothingConfig, validate_smoothing_config
from crowd_forecast.domain.models import ModelState


INITIAL_TREND_DIFFS = 5
MIN_SMOOTHING_POINTS = 3
DEFAULT_RMSE = 1.0


@dataclass(frozen=True)
class FitResult:
    level: float
    trend: float
    rmse: Optional[float]
    sse: float
    points: int
    last_value_only: bool


def initial_trend(values: Sequence[float]) -> float:
    """Mean of the first (up to five) consecutive differences."""
    if len(values) < 2:
        return 0.0
    head = np.asarray(values[: INITIAL_TREND_DIFFS + 1], dtype=float)
    return float(np.mean(np.diff(head)))


def _bounded(trend: float, trend_clamp: Optional[float]) -> float:
    if trend_clamp is None:
        return trend
    return max(-trend_clamp, min(trend_clamp, trend))


def smoothing_step(
    level: float,
    trend: float,
    value: float,
    config: SmoothingConfig,
) -> tuple[float, float, float]:
    """Apply one update and return ``(level, trend, one_step_forecast)``."""
    damped_trend = config.phi * trend
    expected = level + damped_trend
    new_level = config.alpha * value + (1.0 - config.alpha) * expected
    new_trend = config.beta * (new_level - level) + (1.0 - config.beta) * damped_trend
    return new_level, _bounded(new_trend, config.trend_clamp), expected


def fit_series(values: Sequence[float], config: SmoothingConfig) -> FitResult:
    """Run the smoothing recursion over a whole series.

    Series shorter than three points are not smoothed: the level is pinned to
    the last value and the trend to zero.
    """
    if not values:
        raise ValueError("cannot fit an empty series")

    if len(values) < MIN_SMOOTHING_POINTS:
        return FitResult(
            level=float(values[-1]),
            trend=0.0,
            rmse=None,
            sse=0.0,
            points=len(values),
            last_value_only=True,
        )

    level = float(values[0])
    trend = _bounded(initial_trend(values), config.trend_clamp)
    sse = 0.0
    for value in values[1:]:
        level, trend, expected = smoothing_step(level, trend, float(value), config)
        sse += (float(value) - expected) ** 2

    residual_count = len(values) - 1
    rmse = math.sqrt(sse / residual_count) if sse > 0.0 else None
    return FitResult(
        level=level,
        trend=trend,
        rmse=rmse,
        sse=sse,
        points=len(values),
        last_value_only=False,
    )


def damped_forecast(level: float, trend: float, phi: float, steps: int) -> float:
    if phi == 1.0:
        return level + steps * trend
    return level + trend * phi * (1.0 - phi**steps) / (1.0 - phi)


def round_count(value: float) -> int:
    """Round half up and floor at zero."""
    return max(0, int(math.floor(value + 0.5)))


class SmoothingModel:
    """Owns one zone's ``ModelState`` and is the only code that changes it."""

    def __init__(
        self,
        config: SmoothingConfig,
        state: Optional[ModelState] = None,
        *,
        log_transformed: bool = False,
    ) -> None:
        validate_smoothing_config(config)
        self._config = config
        self._state = state or ModelState(
            level=0.0,
            trend=0.0,
            alpha=config.alpha,
            beta=config.beta,
            phi=config.phi,
            log_transformed=log_transformed,
        )

    @property
    def state(self) -> ModelState:
        return self._state

    @property
    def config(self) -> SmoothingConfig:
        return self._config

    def restore(self, state: ModelState) -> None:
        self._config = replace(
            self._config,
            alpha=state.alpha,
            beta=state.beta,
            phi=state.phi,
        )
        validate_smoothing_config(self._config)
        self._state = state

    def fit(
        self,
        values: Sequence[float],
        *,
        config: Optional[SmoothingConfig] = None,
        last_value: Optional[float] = None,
        last_updated: Optional[datetime] = None,
        log_transformed: Optional[bool] = None,
    ) -> ModelState:
        """Re-derive the state from a (preprocessed) history window."""
        if config is not None:
            validate_smoothing_config(config)
            self._config = config
        result = fit_series(values, self._config)
        self._state = ModelState(
            level=result.level,
            trend=result.trend,
            alpha=self._config.alpha,
            beta=self._config.beta,
            phi=self._config.phi,
            data_points_processed=max(result.points, self._state.data_points_processed),
            last_updated=last_updated or self._state.last_updated,
            rmse=result.rmse,
            last_value=float(values[-1]) if last_value is None else float(last_value),
            last_value_only=result.last_value_only,
            log_transformed=(
                self._state.log_transformed if log_transformed is None else log_transformed
            ),
        )
        return self._state

    def update(self, value: float, raw_value: float, timestamp: datetime) -> ModelState:
        """Fold one observation into the state.

        ``value`` is already in model space (log1p applied when the state is
        log transformed); ``raw_value`` is kept as the last observed count.
        """
        state = self._state
        if not state.is_initialized:
            level, trend = float(value), 0.0
        else:
            level, trend, _ = smoothing_step(state.level, state.trend, float(value), self._config)

        points = state.data_points_processed + 1
        self._state = replace(
            state,
            level=level,
            trend=trend,
            data_points_processed=points,
            last_updated=timestamp,
            last_value=float(raw_value),
            last_value_only=state.last_value_only and points < MIN_SMOOTHING_POINTS,
        )
        return self._state

    def forecast(self, steps: int) -> float:
        """Raw h-step forecast in model space."""
        if steps <= 0:
            raise ValueError("forecast steps must be positive")
        state = self._state
        if state.last_value_only:
            return state.level
        return damped_forecast(state.level, state.trend, state.phi, steps)

    def _default_rmse(self, forecast: float) -> float:
        """One count of error, expressed in the space the state lives in."""
        if not self._state.log_transformed:
            return DEFAULT_RMSE
        base = max(0.0, forecast)
        return math.log1p(math.expm1(base) + DEFAULT_RMSE) - base

    def confidence_interval(
        self,
        forecast: float,
        steps: int,
        z: float = 1.96,
    ) -> tuple[float, float]:
        rmse = self._state.rmse or self._default_rmse(forecast)
        se = rmse * math.sqrt(max(1, steps))
        return max(0.0, forecast - z * se), forecast + z * se
