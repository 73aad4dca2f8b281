from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from crowd_forecast.domain.errors import InvalidConfigurationError
from crowd_forecast.domain.models import Prediction
from crowd_forecast.services.prediction_cache import PredictionCache


NOW = datetime(2026, 3, 9, 10, 7, 30, tzinfo=timezone.utc)


def _prediction(zone_id: str, horizon: int, predicted: int, created_at: datetime) -> Prediction:
    return Prediction(
        zone_id=zone_id,
        zone_name=zone_id,
        horizon_minutes=horizon,
        current_count=predicted,
        predicted_count=predicted,
        model_tag="holt",
        created_at=created_at,
    )


def test_cache_key_floors_to_bucket() -> None:
    cache = PredictionCache(bucket_minutes=5)
    assert cache.cache_key(NOW) == "2026-03-09T10:05:00+00:00"


def test_same_bucket_replaces_previous_batch() -> None:
    cache = PredictionCache()
    cache.put([_prediction("B1", 15, 10, NOW)], NOW)
    later = NOW + timedelta(minutes=1)
    cache.put([_prediction("B1", 15, 12, later)], later)

    assert len(cache) == 1
    cached = cache.get(10, now=later)
    assert [item.predicted_count for item in cached.predictions] == [12]


def test_oldest_bucket_evicted_beyond_bound() -> None:
    cache = PredictionCache(bucket_minutes=5, max_buckets=3)
    for index in range(5):
        moment = NOW + timedelta(minutes=5 * index)
        cache.put([_prediction("B1", 15, index, moment)], moment)

    assert len(cache) == 3
    # Buckets 0 and 1 are gone; 3 and 4 lie in the future relative to now.
    oldest_kept = cache.get(60, now=NOW + timedelta(minutes=10, seconds=1))
    assert oldest_kept.predictions[0].predicted_count == 2


def test_get_returns_freshest_within_age() -> None:
    cache = PredictionCache()
    cache.put([_prediction("B1", 15, 1, NOW)], NOW)
    newer = NOW + timedelta(minutes=5)
    cache.put([_prediction("B1", 15, 2, newer)], newer)

    cached = cache.get(10, now=newer + timedelta(minutes=2))

    assert cached.predictions[0].predicted_count == 2
    assert cached.age_minutes == pytest.approx(2.0)
    assert cached.cached_at == newer


def test_get_misses_when_everything_is_too_old() -> None:
    cache = PredictionCache()
    cache.put([_prediction("B1", 15, 1, NOW)], NOW)
    assert cache.get(10, now=NOW + timedelta(minutes=11)) is None


def test_clear_empties_cache() -> None:
    cache = PredictionCache()
    cache.put([_prediction("B1", 15, 1, NOW)], NOW)
    cache.clear()
    assert cache.get(10, now=NOW) is None


def test_invalid_bucket_size_rejected() -> None:
    with pytest.raises(InvalidConfigurationError):
        PredictionCache(bucket_minutes=7)
