"""Shared FastAPI dependency providers for controller layer."""

from __future__ import annotations

from fastapi import HTTPException, Request, status

from crowd_forecast.services.cycle_runner import ForecastCycleRunner
from crowd_forecast.services.forecast_service import ForecastService


def get_forecast_service(request: Request) -> ForecastService:
    service = getattr(request.app.state, "forecast_service", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Forecast service is not initialized",
        )
    return service


def get_cycle_runner(request: Request) -> ForecastCycleRunner:
    runner = getattr(request.app.state, "cycle_runner", None)
    if runner is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Forecast cycle runner is not initialized",
        )
    return runner
