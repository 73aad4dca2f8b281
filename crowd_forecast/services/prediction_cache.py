"""Short-lived in-memory store of the latest forecast cycles."""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timezone
from threading import RLock
from typing import Optional, Sequence

from crowd_forecast.domain.errors import InvalidConfigurationError
from crowd_forecast.domain.models import CachedPredictions, Prediction, as_utc


@dataclass(frozen=True)
class _CacheEntry:
    cached_at: datetime
    predictions: dict[tuple[str, int], Prediction]


class PredictionCache:
    """Bounded map of time-bucketed prediction batches.

    Keys are cycle timestamps floored to ``bucket_minutes``; a later cycle in
    the same bucket replaces the earlier one. Once more than ``max_buckets``
    keys exist the oldest inserted bucket is dropped. Losing an entry only
    produces a miss.
    """

    def __init__(self, bucket_minutes: int = 5, max_buckets: int = 10) -> None:
        if bucket_minutes <= 0 or 60 % bucket_minutes != 0:
            raise InvalidConfigurationError("bucket_minutes must divide an hour")
        if max_buckets <= 0:
            raise InvalidConfigurationError("max_buckets must be > 0")
        self._bucket_minutes = bucket_minutes
        self._max_buckets = max_buckets
        self._entries: OrderedDict[str, _CacheEntry] = OrderedDict()
        self._lock = RLock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def cache_key(self, moment: datetime) -> str:
        moment = as_utc(moment)
        floored = moment.replace(
            minute=(moment.minute // self._bucket_minutes) * self._bucket_minutes,
            second=0,
            microsecond=0,
        )
        return floored.isoformat()

    def put(self, predictions: Sequence[Prediction], now: Optional[datetime] = None) -> str:
        """Store one cycle's batch, keeping the newest per (zone, horizon)."""
        moment = as_utc(now or datetime.now(timezone.utc))
        key = self.cache_key(moment)
        grouped = {
            (prediction.zone_id, prediction.horizon_minutes): prediction
            for prediction in predictions
        }
        with self._lock:
            self._entries.pop(key, None)
            self._entries[key] = _CacheEntry(cached_at=moment, predictions=grouped)
            while len(self._entries) > self._max_buckets:
                self._entries.popitem(last=False)
        return key

    def get(
        self,
        max_age_minutes: float,
        now: Optional[datetime] = None,
    ) -> Optional[CachedPredictions]:
        """Freshest batch no older than ``max_age_minutes``, else None."""
        moment = as_utc(now or datetime.now(timezone.utc))
        with self._lock:
            entries = list(self._entries.values())
        freshest: Optional[_CacheEntry] = None
        for entry in entries:
            age = (moment - entry.cached_at).total_seconds() / 60.0
            if age < 0 or age > max_age_minutes:
                continue
            if freshest is None or entry.cached_at > freshest.cached_at:
                freshest = entry
        if freshest is None:
            return None
        age_minutes = (moment - freshest.cached_at).total_seconds() / 60.0
        return CachedPredictions(
            predictions=list(freshest.predictions.values()),
            cached_at=freshest.cached_at,
            age_minutes=round(age_minutes, 2),
        )

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
