from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest

from crowd_forecast.domain.errors import (
    InvalidObservationError,
    ModelNotFoundError,
    PersistenceError,
)
from crowd_forecast.domain.models import ModelState, Zone
from crowd_forecast.services.model_store import ModelStore, default_coefficients
from crowd_forecast.utils.config import get_settings


START = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class RecordingSink:
    def __init__(self, saved: Optional[dict[str, ModelState]] = None) -> None:
        self.saved: dict[str, ModelState] = dict(saved or {})
        self.writes = 0

    def save_model_state(self, zone_id: str, state: ModelState) -> None:
        self.writes += 1
        self.saved[zone_id] = state

    def load_model_state(self, zone_id: str) -> Optional[ModelState]:
        return self.saved.get(zone_id)

    def save_predictions(self, predictions) -> None:
        return None


class FailingSink(RecordingSink):
    def save_model_state(self, zone_id: str, state: ModelState) -> None:
        raise PersistenceError("disk full")

    def load_model_state(self, zone_id: str) -> Optional[ModelState]:
        raise PersistenceError("database locked")


def _build_test_settings(**overrides):
    return replace(get_settings(), **overrides)


def test_type_coefficients_are_capacity_adjusted_and_bounded() -> None:
    assert default_coefficients("lecture", 200) == (0.15, 0.08)
    assert default_coefficients("cafeteria", 40) == (0.33, 0.11)
    assert default_coefficients("auditorium", 800) == (0.18, 0.05)
    assert default_coefficients("unknown", None, fallback=(0.2, 0.1)) == (0.2, 0.1)


def test_unknown_zone_is_auto_registered_on_update() -> None:
    settings = _build_test_settings()
    store = ModelStore(settings=settings)

    state = store.update("Z99", 12, START)

    assert store.has_zone("Z99")
    zone = store.get_zone("Z99")
    assert zone.capacity == settings.default_zone_capacity
    assert zone.zone_type == settings.default_zone_type
    assert state.level == 12.0
    assert state.data_points_processed == 1


def test_get_unknown_zone_raises_model_not_found() -> None:
    store = ModelStore(settings=_build_test_settings())
    with pytest.raises(ModelNotFoundError):
        store.get("nope")


def test_stale_and_duplicate_observations_are_ignored() -> None:
    store = ModelStore(settings=_build_test_settings())
    store.update("B9", 10, START)
    store.update("B9", 20, START + timedelta(minutes=1))
    before = store.get("B9")

    store.update("B9", 500, START + timedelta(minutes=1))
    store.update("B9", 500, START)

    assert store.get("B9") == before


def test_invalid_observation_is_rejected_without_touching_state() -> None:
    store = ModelStore(settings=_build_test_settings())
    store.update("B9", 10, START)
    before = store.get("B9")

    with pytest.raises(InvalidObservationError):
        store.update("B9", -3, START + timedelta(minutes=1))

    assert store.get("B9") == before


def test_persistence_failure_does_not_stop_update() -> None:
    store = ModelStore(settings=_build_test_settings(), sink=FailingSink())
    store.update("B9", 10, START)
    state = store.update("B9", 14, START + timedelta(minutes=1))

    assert state.data_points_processed == 2
    assert state.last_value == 14.0


def test_state_is_restored_from_sink_on_registration() -> None:
    saved = ModelState(
        level=55.0,
        trend=1.5,
        alpha=0.4,
        beta=0.2,
        phi=0.95,
        data_points_processed=30,
        last_updated=START,
        last_value=56.0,
    )
    store = ModelStore(settings=_build_test_settings(), sink=RecordingSink({"B8": saved}))
    store.upsert(Zone("B8", "Canteen", 80, "cafeteria"))

    assert store.get("B8") == saved


def test_saved_state_in_other_transform_space_is_discarded() -> None:
    saved = ModelState(level=3.2, trend=0.1, alpha=0.2, beta=0.1, data_points_processed=9,
                       log_transformed=True)
    store = ModelStore(
        settings=_build_test_settings(preprocess_log1p=False),
        sink=RecordingSink({"B8": saved}),
    )
    store.upsert(Zone("B8", "Canteen", 80, "cafeteria"))

    assert store.get("B8").data_points_processed == 0


def test_capacity_correction_keeps_model_history() -> None:
    store = ModelStore(settings=_build_test_settings())
    store.update("Z7", 10, START)
    store.update("Z7", 12, START + timedelta(minutes=1))
    before = store.get("Z7")

    store.upsert(Zone("Z7", "Annex", 30, "lab"))

    assert store.get_zone("Z7").capacity == 30
    assert store.get("Z7") == before


def test_refit_persists_and_tracks_last_raw_value() -> None:
    sink = RecordingSink()
    store = ModelStore(settings=_build_test_settings(), sink=sink)
    values = [20.0, 22.0, 25.0, 24.0, 28.0, 31.0, 30.0, 34.0]

    state = store.refit("B9", values, last_updated=START)

    assert state.data_points_processed == len(values)
    assert state.last_value == 34.0
    assert state.last_updated == START
    assert sink.saved["B9"] == state


def test_refit_without_search_on_short_window_is_undamped() -> None:
    store = ModelStore(settings=_build_test_settings(hyperparameter_search_enabled=False))
    state = store.refit("B9", [5.0, 6.0, 8.0], search=False)
    assert state.phi == 1.0


def test_save_all_models_writes_every_zone() -> None:
    sink = RecordingSink()
    store = ModelStore(settings=_build_test_settings(), sink=sink)
    store.initialize_zones([Zone("A", "A"), Zone("B", "B")])
    sink.writes = 0

    store.save_all_models()

    assert sink.writes == 2
    assert set(sink.saved) == {"A", "B"}


def test_summary_and_diagnostics_report_model_state() -> None:
    store = ModelStore(settings=_build_test_settings())
    store.initialize_zones([Zone("A", "A", 50, "lab"), Zone("B", "B")])
    store.update("A", 10, START)

    summary = store.get_summary_stats()
    assert summary["total_models"] == 2
    assert summary["initialized_models"] == 1
    assert summary["total_data_points"] == 1

    diagnostics = store.get_diagnostics("A")
    assert diagnostics["zone"]["capacity"] == 50
    assert diagnostics["state"]["data_points_processed"] == 1
