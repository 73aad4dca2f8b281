"""Collaborator contracts the forecasting core depends on."""

from __future__ import annotations

from datetime import datetime
from typing import Optional, Protocol, Sequence

from crowd_forecast.domain.models import ModelState, Observation, Prediction


class ObservationSource(Protocol):
    """Yields the observations available on each poll."""

    async def fetch(self) -> list[Observation]:
        ...


class PersistenceSink(Protocol):
    def save_model_state(self, zone_id: str, state: ModelState) -> None:
        ...

    def load_model_state(self, zone_id: str) -> Optional[ModelState]:
        ...

    def save_predictions(self, predictions: Sequence[Prediction]) -> None:
        ...


class ObservationHistory(Protocol):
    def save_observations(self, observations: Sequence[Observation]) -> int:
        ...

    def list_observations(
        self,
        zone_id: str,
        *,
        since: Optional[datetime] = None,
        after: Optional[datetime] = None,
    ) -> list[Observation]:
        ...

    def list_active_zone_ids(self, since: datetime) -> list[str]:
        ...


class PredictionArchive(Protocol):
    def list_latest_predictions(self, zone_id: Optional[str] = None) -> list[Prediction]:
        ...
