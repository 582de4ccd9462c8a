from typing import List, Optional

from fastapi import APIRouter, Body, Depends, Header, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.cache import ExperimentCache, get_experiment_cache
from app.core.database import get_db
from app.middleware import get_request_logger
from app.models.schemas import (
    AssignmentResponse,
    CompleteExperimentRequest,
    CreateExperimentRequest,
    ExperimentListResponse,
    ExperimentResponse,
    ExperimentResultsResponse,
    ExperimentStatusEnum,
    ExperimentTypeEnum,
    TrackEvent,
    TrackEventResponse,
    UpdateExperimentRequest,
    UserExperimentAssignment,
)
from app.services.experiments.service import ExperimentService

router = APIRouter()


async def get_experiment_service(
    db: AsyncSession = Depends(get_db),
    cache: ExperimentCache = Depends(get_experiment_cache),
    logger=Depends(get_request_logger),
) -> ExperimentService:
    return ExperimentService(db, cache=cache, logger=logger)


@router.post("", response_model=ExperimentResponse, status_code=201)
async def create_experiment(
    request: CreateExperimentRequest, service: ExperimentService = Depends(get_experiment_service)
):
    return await service.create_experiment(request)


@router.get("", response_model=ExperimentListResponse)
async def list_experiments(
    status: Optional[ExperimentStatusEnum] = Query(None, description="Filter by status"),
    type: Optional[ExperimentTypeEnum] = Query(None, description="Filter by experiment type"),
    service: ExperimentService = Depends(get_experiment_service),
):
    experiments = await service.list_experiments(status=status, experiment_type=type)
    return ExperimentListResponse(experiments=experiments, total=len(experiments))


@router.get("/active", response_model=ExperimentListResponse)
async def list_active_experiments(service: ExperimentService = Depends(get_experiment_service)):
    experiments = await service.list_active_experiments()
    return ExperimentListResponse(experiments=experiments, total=len(experiments))


@router.get("/assignments", response_model=List[UserExperimentAssignment])
async def list_user_assignments(
    user_id: str = Header(..., alias="X-User-ID"),
    service: ExperimentService = Depends(get_experiment_service),
):
    return await service.list_user_assignments(user_id)


@router.get("/{experiment_id}", response_model=ExperimentResponse)
async def get_experiment(
    experiment_id: str, service: ExperimentService = Depends(get_experiment_service)
):
    return await service.get_experiment(experiment_id)


@router.patch("/{experiment_id}", response_model=ExperimentResponse)
async def update_experiment(
    experiment_id: str,
    request: UpdateExperimentRequest,
    service: ExperimentService = Depends(get_experiment_service),
):
    return await service.update_experiment(experiment_id, request)


@router.post("/{experiment_id}/start", response_model=ExperimentResponse)
async def start_experiment(
    experiment_id: str, service: ExperimentService = Depends(get_experiment_service)
):
    return await service.start_experiment(experiment_id)


@router.post("/{experiment_id}/pause", response_model=ExperimentResponse)
async def pause_experiment(
    experiment_id: str, service: ExperimentService = Depends(get_experiment_service)
):
    return await service.pause_experiment(experiment_id)


@router.post("/{experiment_id}/complete", response_model=ExperimentResponse)
async def complete_experiment(
    experiment_id: str,
    request: Optional[CompleteExperimentRequest] = None,
    service: ExperimentService = Depends(get_experiment_service),
):
    winner = request.winner if request else None
    return await service.complete_experiment(experiment_id, winner)


@router.delete("/{experiment_id}", response_model=ExperimentResponse)
async def delete_experiment(
    experiment_id: str, service: ExperimentService = Depends(get_experiment_service)
):
    return await service.delete_experiment(experiment_id)


@router.get("/{experiment_id}/assignment", response_model=AssignmentResponse)
async def get_assignment(
    experiment_id: str,
    user_id: str = Header(..., alias="X-User-ID"),
    service: ExperimentService = Depends(get_experiment_service),
):
    return await service.get_or_create_assignment(user_id, experiment_id)


@router.post("/{experiment_id}/track", response_model=TrackEventResponse)
async def track_event(
    experiment_id: str,
    event: TrackEvent = Body(...),
    user_id: str = Header(..., alias="X-User-ID"),
    service: ExperimentService = Depends(get_experiment_service),
):
    assignment = await service.track_event(user_id, experiment_id, event)
    return TrackEventResponse(tracked=assignment is not None, assignment=assignment)


@router.get("/{experiment_id}/results", response_model=ExperimentResultsResponse)
async def get_results(
    experiment_id: str, service: ExperimentService = Depends(get_experiment_service)
):
    return await service.get_results(experiment_id)
