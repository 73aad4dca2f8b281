#!/usr/bin/env python3
"""Validate local crowd forecasting environment readiness."""

from __future__ import annotations

import asyncio
import importlib
import shutil
import sys
import tempfile
from dataclasses import replace
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from crowd_forecast.repository.data_repository import SYNTHETIC_ZONES, DataRepository
from crowd_forecast.services.cycle_runner import ForecastCycleRunner
from crowd_forecast.services.forecast_service import ForecastService
from crowd_forecast.services.model_store import ModelStore
from crowd_forecast.utils.config import get_settings

SEPARATOR_LINE = "=" * 44


def _print_result(name: str, success: bool, detail: str = "") -> tuple[bool, str]:
    if success:
        return True, f"[PASS] {name}{detail}"
    return False, f"[FAIL] {name}: {detail}"


def main() -> int:
    results: list[str] = []
    all_passed = True
    temp_dir = tempfile.mkdtemp(prefix="crowd-forecast-env-")

    # CHECK 1: Python version >= 3.10
    if sys.version_info >= (3, 10):
        ok, line = _print_result("Python " + sys.version.split()[0], True)
    else:
        ok, line = _print_result(
            "Python version >= 3.10",
            False,
            f"found {sys.version.split()[0]}",
        )
    results.append(line)
    all_passed = all_passed and ok

    # CHECK 2: Required packages importable with versions
    package_specs = [
        ("fastapi", "fastapi"),
        ("uvicorn", "uvicorn"),
        ("pydantic", "pydantic"),
        ("numpy", "numpy"),
        ("pandas", "pandas"),
        ("sklearn", "scikit-learn"),
        ("httpx", "httpx"),
        ("pytest", "pytest"),
    ]
    from importlib.metadata import PackageNotFoundError, version

    import_errors: list[str] = []
    for module_name, dist_name in package_specs:
        try:
            importlib.import_module(module_name)
            version(dist_name)
        except (ImportError, PackageNotFoundError) as exc:
            import_errors.append(f"{module_name} ({exc})")
    if import_errors:
        ok, line = _print_result(
            "Required packages",
            False,
            "missing/unimportable -> " + "; ".join(import_errors),
        )
    else:
        ok, line = _print_result("Required packages: all importable", True)
    results.append(line)
    all_passed = all_passed and ok

    try:
        validation_settings = replace(
            get_settings(),
            database_path=Path(temp_dir) / "crowd_forecast_validation.db",
            zone_catalog_path=None,
        )
        repository = DataRepository(validation_settings)

        # CHECK 3: Database initialization
        try:
            repository.initialize_database()
            ok, line = _print_result("Database initialization", True)
        except Exception as exc:
            ok, line = _print_result("Database initialization", False, str(exc))
        results.append(line)
        all_passed = all_passed and ok

        # CHECK 4: Synthetic catalog and history seeding
        try:
            repository.seed_synthetic_data()
            zones = repository.list_zones()
            observations = repository.count_observations()
            if len(zones) != len(SYNTHETIC_ZONES):
                raise RuntimeError(f"expected {len(SYNTHETIC_ZONES)} zones, got {len(zones)}")
            if observations == 0:
                raise RuntimeError("no observations seeded")
            ok, line = _print_result(
                "Synthetic dataset",
                True,
                f": {len(zones)} zones, {observations} observations",
            )
        except Exception as exc:
            ok, line = _print_result("Synthetic dataset", False, str(exc))
        results.append(line)
        all_passed = all_passed and ok

        # CHECK 5: One forecast cycle end to end
        store = ModelStore(settings=validation_settings, sink=repository)
        service = ForecastService(store=store, settings=validation_settings, history=repository)
        runner = ForecastCycleRunner(
            store=store,
            forecast_service=service,
            history=repository,
            sink=repository,
            settings=validation_settings,
        )
        try:
            store.initialize_zones(repository.list_zones())
            report = asyncio.run(runner.run_cycle())
            expected = len(SYNTHETIC_ZONES) * len(validation_settings.forecast_horizons)
            if report.prediction_count != expected:
                raise RuntimeError(
                    f"expected {expected} predictions, got {report.prediction_count}"
                )
            ok, line = _print_result(
                "Forecast cycle",
                True,
                f": {report.prediction_count} predictions, {len(report.zones_degraded)} degraded",
            )
        except Exception as exc:
            ok, line = _print_result("Forecast cycle", False, str(exc))
        results.append(line)
        all_passed = all_passed and ok

        # CHECK 6: Cached predictions readable
        try:
            cached = service.get_cached_predictions()
            if cached is None or not cached.predictions:
                raise RuntimeError("cache miss right after a cycle")
            capacities = {zone.zone_id: zone.capacity for zone in SYNTHETIC_ZONES}
            for prediction in cached.predictions:
                capacity = capacities[prediction.zone_id]
                if not 0 <= prediction.predicted_count <= capacity:
                    raise RuntimeError(f"{prediction.zone_id} prediction outside [0, {capacity}]")
            ok, line = _print_result("Prediction cache", True)
        except Exception as exc:
            ok, line = _print_result("Prediction cache", False, str(exc))
        results.append(line)
        all_passed = all_passed and ok

    finally:
        shutil.rmtree(temp_dir, ignore_errors=True)

    print(SEPARATOR_LINE)
    print(" Crowd Forecast Environment Validation")
    print(SEPARATOR_LINE)
    for line in results:
        print(f" {line}")
    print(SEPARATOR_LINE)
    if all_passed:
        print(" All checks passed. Environment is ready.")
        print(SEPARATOR_LINE)
        return 0
    print(" One or more checks failed.")
    print(SEPARATOR_LINE)
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
