"""Time-of-day seasonal baseline and horizon-aware blending."""

from __future__ import annotations

import math
from datetime import datetime, timedelta, timezone
from typing import Optional, Sequence

import pandas as pd

from crowd_forecast.domain.constraints import BlendConfig, validate_blend_config
from crowd_forecast.domain.models import Observation
from crowd_forecast.utils.config import Settings, get_settings


class SeasonalBaselineEstimator:
    """Averages historical counts per time-of-day bucket.

    The baseline looked up at forecast time is the bucket containing *now*,
    not the forecast target time: the trend forecast already carries the
    horizon, the baseline contributes the current time-of-day pattern.
    """

    def __init__(self, config: BlendConfig) -> None:
        validate_blend_config(config)
        self._config = config

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "SeasonalBaselineEstimator":
        settings = settings or get_settings()
        return cls(
            BlendConfig(
                weight_short=settings.seasonal_weight_short,
                weight_long=settings.seasonal_weight_long,
                switch_minutes=settings.seasonal_switch_minutes,
                bin_minutes=settings.seasonal_bin_minutes,
                lookback_days=settings.seasonal_lookback_days,
            )
        )

    @property
    def config(self) -> BlendConfig:
        return self._config

    def lookback_start(self, now: datetime) -> datetime:
        return now - timedelta(days=self._config.lookback_days)

    def bin_index(self, moment: datetime) -> int:
        if moment.tzinfo is not None:
            moment = moment.astimezone(timezone.utc)
        return (moment.hour * 60 + moment.minute) // self._config.bin_minutes

    def bins(self, observations: Sequence[Observation], now: datetime) -> dict[int, float]:
        """Return the bucket -> mean count mapping over the lookback window."""
        if not observations:
            return {}
        frame = pd.DataFrame(
            {
                "observed_at": pd.to_datetime(
                    [item.observed_at for item in observations], utc=True
                ),
                "count": [float(item.count) for item in observations],
            }
        )
        since = pd.Timestamp(self.lookback_start(now))
        until = pd.Timestamp(now)
        if since.tzinfo is None:
            since = since.tz_localize("UTC")
            until = until.tz_localize("UTC")
        frame = frame[(frame["observed_at"] >= since) & (frame["observed_at"] <= until)]
        if frame.empty:
            return {}

        minute_of_day = frame["observed_at"].dt.hour * 60 + frame["observed_at"].dt.minute
        frame = frame.assign(bin=minute_of_day // self._config.bin_minutes)
        means = frame.groupby("bin")["count"].mean()
        return {int(bucket): float(value) for bucket, value in means.items()}

    def baseline(self, observations: Sequence[Observation], now: datetime) -> Optional[float]:
        """Mean count for the bucket containing ``now``; None when it is empty."""
        return self.bins(observations, now).get(self.bin_index(now))

    def weight_for(self, horizon_minutes: int) -> float:
        if horizon_minutes <= self._config.switch_minutes:
            return self._config.weight_short
        return self._config.weight_long

    def blend(
        self,
        seasonal: Optional[float],
        trend_forecast: float,
        horizon_minutes: int,
    ) -> int:
        """Blend the seasonal baseline with a trend forecast.

        A missing baseline leaves the trend forecast untouched rather than
        pulling it towards zero.
        """
        if seasonal is None or not math.isfinite(seasonal):
            return int(math.floor(trend_forecast + 0.5))
        weight = self.weight_for(horizon_minutes)
        blended = weight * seasonal + (1.0 - weight) * trend_forecast
        return int(math.floor(blended + 0.5))
