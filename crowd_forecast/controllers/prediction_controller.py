"""HTTP controller layer for occupancy predictions."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, ConfigDict, Field

from crowd_forecast.controllers.dependencies import get_cycle_runner, get_forecast_service
from crowd_forecast.domain.errors import (
    ForecastError,
    InvalidConfigurationError,
    InvalidObservationError,
    ModelNotFoundError,
)
from crowd_forecast.domain.models import Observation, Prediction
from crowd_forecast.services.cycle_runner import ForecastCycleRunner
from crowd_forecast.services.forecast_service import ForecastService
from crowd_forecast.utils.logger import get_logger


logger = get_logger(__name__)

router = APIRouter(tags=["predictions"])


class PredictionResponse(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    zone_id: str
    zone_name: str
    horizon_minutes: int = Field(gt=0)
    current_count: int = Field(ge=0)
    predicted_count: int = Field(ge=0)
    confidence_lower: Optional[float] = None
    confidence_upper: Optional[float] = None
    model_tag: str
    created_at: datetime

    @classmethod
    def from_domain(cls, prediction: Prediction) -> "PredictionResponse":
        return cls(**prediction.to_dict())


class MultiHorizonResponse(BaseModel):
    zone_id: str
    predictions: dict[int, PredictionResponse]


class PredictionListResponse(BaseModel):
    horizon_minutes: int
    predictions: list[PredictionResponse]


class CachedPredictionsResponse(BaseModel):
    cached: bool
    cached_at: Optional[datetime] = None
    age_minutes: Optional[float] = None
    predictions: list[PredictionResponse]


class ObservationRequest(BaseModel):
    zone_id: str = Field(min_length=1)
    count: float = Field(ge=0)
    timestamp: Optional[datetime] = None


class ObservationBatchRequest(BaseModel):
    observations: list[ObservationRequest] = Field(min_length=1)


class BatchSubmissionResponse(BaseModel):
    accepted: int
    rejected: list[str]
    zones: list[str]


class LatestPredictionsResponse(BaseModel):
    predictions: list[PredictionResponse]


class CycleReportResponse(BaseModel):
    started_at: datetime
    zones_processed: int
    zones_degraded: list[str]
    observations_applied: int
    prediction_count: int
    persisted: bool


class ModelStateResponse(BaseModel):
    zone_id: str
    level: float
    trend: float
    alpha: float
    beta: float
    phi: float
    data_points_processed: int
    last_updated: Optional[datetime] = None


class HealthResponse(BaseModel):
    status: str
    cycle_state: str
    models: dict[str, Any]
    last_cycle_at: Optional[datetime] = None


def _translate(exc: Exception) -> HTTPException:
    if isinstance(exc, (InvalidObservationError, InvalidConfigurationError)):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    if isinstance(exc, ModelNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, ForecastError):
        return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))
    logger.exception("Unexpected prediction failure")
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail="Failed to generate prediction",
    )


@router.get("/health", response_model=HealthResponse)
async def health(
    service: ForecastService = Depends(get_forecast_service),
    runner: ForecastCycleRunner = Depends(get_cycle_runner),
) -> HealthResponse:
    report = runner.last_report
    return HealthResponse(
        status="ok",
        cycle_state=runner.state.value,
        models=service.store.get_summary_stats(),
        last_cycle_at=report.started_at if report else None,
    )


@router.get("/predictions/cached", response_model=CachedPredictionsResponse)
async def get_cached_predictions(
    max_age_minutes: Optional[float] = Query(default=None, gt=0),
    service: ForecastService = Depends(get_forecast_service),
) -> CachedPredictionsResponse:
    """Latest cycle output; a miss is answered with live predictions."""
    try:
        cached = service.get_cached_predictions(max_age_minutes)
        if cached is not None:
            return CachedPredictionsResponse(
                cached=True,
                cached_at=cached.cached_at,
                age_minutes=cached.age_minutes,
                predictions=[PredictionResponse.from_domain(item) for item in cached.predictions],
            )
        live: list[PredictionResponse] = []
        for zone_id in service.store.zone_ids():
            for prediction in service.get_multi_horizon_predictions(zone_id).values():
                live.append(PredictionResponse.from_domain(prediction))
        return CachedPredictionsResponse(cached=False, predictions=live)
    except Exception as exc:
        raise _translate(exc) from exc


@router.get("/predictions/latest", response_model=LatestPredictionsResponse)
async def get_latest_persisted_predictions(
    zone_id: Optional[str] = Query(default=None, min_length=1),
    service: ForecastService = Depends(get_forecast_service),
) -> LatestPredictionsResponse:
    """Newest stored prediction per zone and horizon."""
    try:
        predictions = service.get_latest_persisted_predictions(zone_id)
    except Exception as exc:
        raise _translate(exc) from exc
    return LatestPredictionsResponse(
        predictions=[PredictionResponse.from_domain(item) for item in predictions],
    )


@router.get("/predictions", response_model=PredictionListResponse)
async def get_all_predictions(
    horizon: int = Query(default=60, gt=0),
    service: ForecastService = Depends(get_forecast_service),
) -> PredictionListResponse:
    try:
        predictions = service.get_all_predictions(horizon)
    except Exception as exc:
        raise _translate(exc) from exc
    return PredictionListResponse(
        horizon_minutes=horizon,
        predictions=[PredictionResponse.from_domain(item) for item in predictions],
    )


@router.get("/predictions/{zone_id}", response_model=MultiHorizonResponse)
async def get_multi_horizon_predictions(
    zone_id: str,
    service: ForecastService = Depends(get_forecast_service),
) -> MultiHorizonResponse:
    try:
        predictions = service.get_multi_horizon_predictions(zone_id)
    except Exception as exc:
        raise _translate(exc) from exc
    return MultiHorizonResponse(
        zone_id=zone_id,
        predictions={
            horizon: PredictionResponse.from_domain(item)
            for horizon, item in predictions.items()
        },
    )


@router.get("/predictions/{zone_id}/{horizon}", response_model=PredictionResponse)
async def get_prediction(
    zone_id: str,
    horizon: int,
    service: ForecastService = Depends(get_forecast_service),
) -> PredictionResponse:
    try:
        return PredictionResponse.from_domain(service.get_prediction(zone_id, horizon))
    except Exception as exc:
        raise _translate(exc) from exc


@router.post(
    "/observations",
    response_model=ModelStateResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def submit_observation(
    payload: ObservationRequest,
    service: ForecastService = Depends(get_forecast_service),
) -> ModelStateResponse:
    try:
        state = service.submit_observation(payload.zone_id, payload.count, payload.timestamp)
    except Exception as exc:
        raise _translate(exc) from exc
    return ModelStateResponse(
        zone_id=payload.zone_id,
        level=state.level,
        trend=state.trend,
        alpha=state.alpha,
        beta=state.beta,
        phi=state.phi,
        data_points_processed=state.data_points_processed,
        last_updated=state.last_updated,
    )


@router.post(
    "/observations/batch",
    response_model=BatchSubmissionResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def submit_observation_batch(
    payload: ObservationBatchRequest,
    service: ForecastService = Depends(get_forecast_service),
) -> BatchSubmissionResponse:
    received_at = datetime.now(timezone.utc)
    observations = [
        Observation(item.zone_id, item.count, item.timestamp or received_at)
        for item in payload.observations
    ]
    try:
        result = service.submit_observations(observations)
    except Exception as exc:
        raise _translate(exc) from exc
    return BatchSubmissionResponse(
        accepted=result.accepted,
        rejected=result.rejected,
        zones=sorted(result.states),
    )


@router.post("/cycles/run", response_model=CycleReportResponse)
async def run_forecast_cycle(
    runner: ForecastCycleRunner = Depends(get_cycle_runner),
) -> CycleReportResponse:
    """Run one forecast cycle now instead of waiting for the next tick."""
    try:
        report = await runner.run_cycle()
    except Exception as exc:
        raise _translate(exc) from exc
    return CycleReportResponse(
        started_at=report.started_at,
        zones_processed=report.zones_processed,
        zones_degraded=report.zones_degraded,
        observations_applied=report.observations_applied,
        prediction_count=report.prediction_count,
        persisted=report.persisted,
    )


@router.get("/zones/{zone_id}/diagnostics")
async def get_zone_diagnostics(
    zone_id: str,
    service: ForecastService = Depends(get_forecast_service),
) -> dict[str, Any]:
    try:
        return service.store.get_diagnostics(zone_id)
    except Exception as exc:
        raise _translate(exc) from exc
