"""
app.py: FastAPI application factory and startup lifecycle.

This is the ASGI application object imported by uvicorn.
It wires the forecasting services, registers routers, runs startup
initialization and owns the two background loops (poller, forecast cycle).

Usage (via launcher):
    python main.py

Usage (direct uvicorn):
    uvicorn app:app --reload
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from crowd_forecast.controllers.prediction_controller import router as prediction_router
from crowd_forecast.repository.data_repository import DataRepository, load_zone_catalog
from crowd_forecast.services.cycle_runner import ForecastCycleRunner
from crowd_forecast.services.forecast_service import ForecastService
from crowd_forecast.services.hyperparameter_service import HyperparameterSelector
from crowd_forecast.services.ingestion_service import HttpObservationSource, ObservationPoller
from crowd_forecast.services.model_store import ModelStore
from crowd_forecast.services.prediction_cache import PredictionCache
from crowd_forecast.services.preprocessing import Preprocessor
from crowd_forecast.services.scheduler import PeriodicScheduler
from crowd_forecast.services.seasonal_service import SeasonalBaselineEstimator
from crowd_forecast.utils.config import Settings, get_settings
from crowd_forecast.utils.logger import get_logger


logger = get_logger(__name__)


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """
    Build and wire the FastAPI application.

    Every collaborator is constructed here and exposed via app.state, so the
    dependency graph is traceable from this one function.
    """
    settings = settings or get_settings()

    # --- Repository (history, catalog and persistence sink) ---
    repository = DataRepository(settings)

    # --- Forecasting core ---
    store = ModelStore(
        settings=settings,
        sink=repository,
        preprocessor=Preprocessor.from_settings(settings),
        selector=HyperparameterSelector(min_points=settings.hyperparameter_min_points),
    )
    cache = PredictionCache(
        bucket_minutes=settings.cache_bucket_minutes,
        max_buckets=settings.cache_max_buckets,
    )
    forecast_service = ForecastService(
        store=store,
        settings=settings,
        history=repository,
        cache=cache,
        seasonal=SeasonalBaselineEstimator.from_settings(settings),
        archive=repository,
    )
    cycle_runner = ForecastCycleRunner(
        store=store,
        forecast_service=forecast_service,
        history=repository,
        sink=repository,
        settings=settings,
    )
    poller = ObservationPoller(
        source=HttpObservationSource(
            settings.upstream_url,
            timeout_seconds=settings.upstream_timeout_seconds,
        ),
        history=repository,
        settings=settings,
    )

    # --- Background loops (fixed delay after each completed tick) ---
    schedulers = [
        PeriodicScheduler("poller", settings.poll_interval_seconds, poller.poll_once),
        PeriodicScheduler("forecast-cycle", settings.cycle_interval_seconds, cycle_runner.run_cycle),
    ]

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Initialise storage and models, then run the loops until shutdown."""
        _startup(app)
        if settings.schedulers_enabled:
            for scheduler in schedulers:
                scheduler.start()
        try:
            yield
        finally:
            for scheduler in schedulers:
                await scheduler.stop()
            store.save_all_models()
            logger.info("Shutdown complete")

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        lifespan=lifespan,
    )

    # --- Routers ---
    app.include_router(prediction_router)

    # --- Inject services into app.state for dependency resolution ---
    app.state.settings = settings
    app.state.repository = repository
    app.state.model_store = store
    app.state.forecast_service = forecast_service
    app.state.cycle_runner = cycle_runner
    app.state.poller = poller
    app.state.schedulers = schedulers

    return app


def _startup(app: FastAPI) -> None:
    """
    Idempotent startup sequence. Safe to re-run on server restarts.

    Order matters:
      1. Schema must exist before seeding.
      2. The zone catalog must be seeded before models are registered.
      3. Model registration restores persisted state, so it runs last.
    """
    settings: Settings = app.state.settings
    repository: DataRepository = app.state.repository
    store: ModelStore = app.state.model_store

    logger.info("Startup: initializing database schema")
    repository.initialize_database()

    if settings.zone_catalog_path is not None:
        logger.info("Startup: loading zone catalog from %s", settings.zone_catalog_path)
        for zone in load_zone_catalog(settings.zone_catalog_path):
            repository.upsert_zone(zone)
    else:
        logger.info("Startup: seeding synthetic catalog and history (skipped if Zones not empty)")
        repository.seed_synthetic_data()

    logger.info("Startup: purging data older than %s days", settings.retention_days)
    repository.purge_older_than(settings.retention_days)

    logger.info("Startup: registering zone models")
    store.initialize_zones(repository.list_zones())

    logger.info("Startup complete; system ready")


# Module-level app object for uvicorn
app = create_app()
