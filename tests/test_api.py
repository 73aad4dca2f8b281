from __future__ import annotations

import asyncio
from dataclasses import replace

from fastapi.testclient import TestClient

from app import create_app
from crowd_forecast.repository.data_repository import SYNTHETIC_ZONES
from crowd_forecast.utils.config import get_settings


def _build_test_settings(tmp_path, filename: str):
    base = get_settings()
    return replace(
        base,
        database_path=tmp_path / filename,
        zone_catalog_path=None,
        schedulers_enabled=False,
    )


def test_health_reports_registered_models(tmp_path):
    app = create_app(_build_test_settings(tmp_path, "api_health.db"))
    with TestClient(app) as client:
        response = client.get("/health")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "ok"
    assert body["cycle_state"] == "idle"
    assert body["models"]["total_models"] == len(SYNTHETIC_ZONES)


def test_all_predictions_sorted_and_within_capacity(tmp_path):
    app = create_app(_build_test_settings(tmp_path, "api_all.db"))
    capacities = {zone.zone_id: zone.capacity for zone in SYNTHETIC_ZONES}
    with TestClient(app) as client:
        asyncio.run(app.state.cycle_runner.run_cycle())
        response = client.get("/predictions", params={"horizon": 30})

    assert response.status_code == 200
    predictions = response.json()["predictions"]
    assert len(predictions) == len(SYNTHETIC_ZONES)
    counts = [item["predicted_count"] for item in predictions]
    assert counts == sorted(counts, reverse=True)
    for item in predictions:
        assert 0 <= item["predicted_count"] <= capacities[item["zone_id"]]


def test_cached_predictions_fall_back_to_live_values(tmp_path):
    settings = _build_test_settings(tmp_path, "api_cache.db")
    app = create_app(settings)
    expected = len(SYNTHETIC_ZONES) * len(settings.forecast_horizons)
    with TestClient(app) as client:
        miss = client.get("/predictions/cached")
        asyncio.run(app.state.cycle_runner.run_cycle())
        hit = client.get("/predictions/cached", params={"max_age_minutes": 5})

    assert miss.status_code == 200
    assert miss.json()["cached"] is False
    assert len(miss.json()["predictions"]) == expected
    assert hit.json()["cached"] is True
    assert len(hit.json()["predictions"]) == expected


def test_multi_horizon_endpoint_returns_configured_horizons(tmp_path):
    settings = _build_test_settings(tmp_path, "api_multi.db")
    app = create_app(settings)
    with TestClient(app) as client:
        response = client.get("/predictions/B9")

    assert response.status_code == 200
    horizons = sorted(int(key) for key in response.json()["predictions"])
    assert horizons == sorted(settings.forecast_horizons)


def test_submitted_observation_makes_unknown_zone_queryable(tmp_path):
    app = create_app(_build_test_settings(tmp_path, "api_submit.db"))
    with TestClient(app) as client:
        before = client.get("/predictions/Z99/15")
        submitted = client.post("/observations", json={"zone_id": "Z99", "count": 23})
        after = client.get("/predictions/Z99/15")

    assert before.status_code == 404
    assert submitted.status_code == 202
    assert submitted.json()["data_points_processed"] == 1
    assert after.status_code == 200
    assert after.json()["predicted_count"] == 23
    assert after.json()["model_tag"] == "last-observed"


def test_invalid_inputs_are_rejected(tmp_path):
    app = create_app(_build_test_settings(tmp_path, "api_invalid.db"))
    with TestClient(app) as client:
        negative = client.post("/observations", json={"zone_id": "B1", "count": -4})
        zero_horizon = client.get("/predictions/B1/0")

    assert negative.status_code == 422
    assert zero_horizon.status_code == 400


def test_zone_diagnostics_endpoint(tmp_path):
    app = create_app(_build_test_settings(tmp_path, "api_diagnostics.db"))
    with TestClient(app) as client:
        found = client.get("/zones/B8/diagnostics")
        missing = client.get("/zones/nope/diagnostics")

    assert found.status_code == 200
    assert found.json()["zone"]["capacity"] == 80
    assert missing.status_code == 404


def test_manual_cycle_publishes_cached_and_persisted_predictions(tmp_path):
    settings = _build_test_settings(tmp_path, "api_cycle.db")
    app = create_app(settings)
    expected = len(SYNTHETIC_ZONES) * len(settings.forecast_horizons)
    with TestClient(app) as client:
        before = client.get("/predictions/latest")
        cycle = client.post("/cycles/run")
        cached = client.get("/predictions/cached")
        latest = client.get("/predictions/latest")
        latest_b1 = client.get("/predictions/latest", params={"zone_id": "B1"})

    assert before.status_code == 200
    assert before.json()["predictions"] == []
    assert cycle.status_code == 200
    assert cycle.json()["prediction_count"] == expected
    assert cycle.json()["persisted"] is True
    assert cached.json()["cached"] is True
    assert len(latest.json()["predictions"]) == expected
    assert {item["zone_id"] for item in latest_b1.json()["predictions"]} == {"B1"}


def test_batch_submission_orders_rows_and_rejects_fractional_counts(tmp_path):
    app = create_app(_build_test_settings(tmp_path, "api_batch.db"))
    rows = [
        {"zone_id": "Z50", "count": 12, "timestamp": "2026-03-09T10:02:00Z"},
        {"zone_id": "Z50", "count": 8, "timestamp": "2026-03-09T10:00:00Z"},
        {"zone_id": "Z51", "count": 3.7, "timestamp": "2026-03-09T10:00:00Z"},
        {"zone_id": "Z50", "count": 10, "timestamp": "2026-03-09T10:01:00Z"},
    ]
    with TestClient(app) as client:
        response = client.post("/observations/batch", json={"observations": rows})
        diagnostics = client.get("/zones/Z50/diagnostics")
        rejected_zone = client.get("/zones/Z51/diagnostics")
        fractional = client.post("/observations", json={"zone_id": "Z50", "count": 2.5})

    assert response.status_code == 202
    body = response.json()
    assert body["accepted"] == 3
    assert len(body["rejected"]) == 1
    assert body["zones"] == ["Z50"]
    assert diagnostics.json()["state"]["data_points_processed"] == 3
    assert rejected_zone.status_code == 404
    assert fractional.status_code == 400
