"""Environment-driven runtime settings."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Optional


PROJECT_ROOT = Path(__file__).resolve().parents[2]

_TRUE_VALUES = ("1", "true", "yes", "on")


def _env_str(name: str, default: str) -> str:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return value.strip()


def _env_int(name: str, default: int) -> int:
    return int(_env_str(name, str(default)))


def _env_float(name: str, default: float) -> float:
    return float(_env_str(name, str(default)))


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in _TRUE_VALUES


def _env_optional_float(name: str) -> Optional[float]:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return None
    return float(raw)


def _env_int_list(name: str, default: tuple[int, ...]) -> tuple[int, ...]:
    """Parse a comma separated list of positive integers, ignoring junk."""
    raw = os.getenv(name)
    if not raw:
        return default
    values = []
    for item in raw.split(","):
        item = item.strip()
        if item.isdigit() and int(item) > 0:
            values.append(int(item))
    return tuple(values) or default


@dataclass(frozen=True)
class Settings:
    app_name: str
    app_version: str
    log_level: str

    database_path: Path
    database_timeout_seconds: float
    zone_catalog_path: Optional[Path]

    upstream_url: str
    upstream_timeout_seconds: float
    poll_interval_seconds: float
    cycle_interval_seconds: float
    schedulers_enabled: bool

    forecast_horizons: tuple[int, ...]
    sampling_interval_minutes: int
    forecast_history_minutes: int
    forecast_min_update_points: int
    forecast_confidence_z: float
    forecast_trend_clamp: Optional[float]

    default_alpha: float
    default_beta: float
    default_zone_capacity: int
    default_zone_type: str

    hyperparameter_search_enabled: bool
    hyperparameter_min_points: int

    preprocess_winsorize: bool
    preprocess_winsor_lower: float
    preprocess_winsor_upper: float
    preprocess_log1p: bool

    seasonal_blend_enabled: bool
    seasonal_lookback_days: int
    seasonal_bin_minutes: int
    seasonal_weight_short: float
    seasonal_weight_long: float
    seasonal_switch_minutes: int

    cache_bucket_minutes: int
    cache_max_buckets: int
    cache_default_max_age_minutes: float

    retention_days: int

    synthetic_random_seed: int
    synthetic_seed_days: int
    synthetic_sample_minutes: int


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Build settings once per process from the environment."""
    catalog_path = os.getenv("ZONE_CATALOG_PATH")
    return Settings(
        app_name=_env_str("APP_NAME", "Crowd Occupancy Forecasting"),
        app_version=_env_str("APP_VERSION", "1.0.0"),
        log_level=_env_str("LOG_LEVEL", "INFO"),
        database_path=Path(
            _env_str("DATABASE_PATH", str(PROJECT_ROOT / "data" / "crowd_forecast.db"))
        ),
        database_timeout_seconds=_env_float("DATABASE_TIMEOUT_SECONDS", 5.0),
        zone_catalog_path=Path(catalog_path) if catalog_path else None,
        upstream_url=_env_str(
            "UPSTREAM_URL", "http://localhost:3897/generator/snapshot"
        ),
        upstream_timeout_seconds=_env_float("UPSTREAM_TIMEOUT_SECONDS", 10.0),
        poll_interval_seconds=_env_float("POLL_INTERVAL_SECONDS", 60.0),
        cycle_interval_seconds=_env_float("CYCLE_INTERVAL_SECONDS", 60.0),
        schedulers_enabled=_env_bool("SCHEDULERS_ENABLED", True),
        forecast_horizons=_env_int_list("PREDICTION_INTERVALS", (15, 30, 60, 120)),
        sampling_interval_minutes=_env_int("SAMPLING_INTERVAL_MINUTES", 1),
        forecast_history_minutes=_env_int("MIN_HISTORY_MINUTES", 60),
        forecast_min_update_points=_env_int("FORECAST_MIN_UPDATE_POINTS", 2),
        forecast_confidence_z=_env_float("FORECAST_CONFIDENCE_Z", 1.96),
        forecast_trend_clamp=_env_optional_float("FORECAST_TREND_CLAMP"),
        default_alpha=_env_float("ALPHA", 0.2),
        default_beta=_env_float("BETA", 0.1),
        default_zone_capacity=_env_int("DEFAULT_ZONE_CAPACITY", 200),
        default_zone_type=_env_str("DEFAULT_ZONE_TYPE", "academic"),
        hyperparameter_search_enabled=_env_bool("HYPERPARAMETER_SEARCH", True),
        hyperparameter_min_points=_env_int("HYPERPARAMETER_MIN_POINTS", 6),
        preprocess_winsorize=_env_bool("WINSORIZE", True),
        preprocess_winsor_lower=_env_float("WINSOR_LO", 5.0),
        preprocess_winsor_upper=_env_float("WINSOR_HI", 95.0),
        preprocess_log1p=_env_bool("LOG1P_TRANSFORM", False),
        seasonal_blend_enabled=_env_bool("SEASONAL_BLEND", True),
        seasonal_lookback_days=_env_int("SEASONAL_LOOKBACK_DAYS", 7),
        seasonal_bin_minutes=_env_int("SEASONAL_BIN_MINUTES", 15),
        seasonal_weight_short=_env_float("BLEND_WEIGHT_SHORT", 0.3),
        seasonal_weight_long=_env_float("BLEND_WEIGHT_LONG", 0.6),
        seasonal_switch_minutes=_env_int("BLEND_SWITCH_MIN", 60),
        cache_bucket_minutes=_env_int("CACHE_BUCKET_MINUTES", 5),
        cache_max_buckets=_env_int("CACHE_MAX_BUCKETS", 10),
        cache_default_max_age_minutes=_env_float("CACHE_MAX_AGE_MINUTES", 10.0),
        retention_days=_env_int("RETENTION_DAYS", 30),
        synthetic_random_seed=_env_int("SYNTHETIC_RANDOM_SEED", 42),
        synthetic_seed_days=_env_int("SYNTHETIC_SEED_DAYS", 2),
        synthetic_sample_minutes=_env_int("SYNTHETIC_SAMPLE_MINUTES", 15),
    )
