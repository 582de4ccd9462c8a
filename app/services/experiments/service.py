import math
import uuid
from typing import List, Optional, Sequence

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from app.core.cache import (
    ACTIVE_EXPERIMENTS_KEY,
    ExperimentCache,
    assignment_key,
    assignment_pattern,
    experiment_key,
)
from app.core.exceptions import (
    ExperimentServiceError,
    NotFoundError,
    StateConflictError,
    ValidationError,
)
from app.models.experiment import (
    Experiment,
    ExperimentStatus,
    ExperimentType,
    UserAssignment,
)
from app.models.schemas import (
    AssignmentResponse,
    CreateExperimentRequest,
    ExperimentRef,
    ExperimentResponse,
    ExperimentResultsResponse,
    ExperimentStatusEnum,
    ExperimentTypeEnum,
    SignificanceResponse,
    TrackEvent,
    UpdateExperimentRequest,
    UserExperimentAssignment,
    Variant,
    VariantResultResponse,
)
from app.services.experiments.assignment import AssignmentEngine
from app.services.experiments.results import ResultsAggregator
from app.services.experiments.sources import Clock, RandomSource, SystemClock, UniformRandomSource
from app.services.experiments.stats import calculate_significance, determine_winner
from app.services.experiments.store import ExperimentStore
from app.services.experiments.tracking import EventTracker

settings = get_settings()

# Fields a patch may change; results, winner, status and dates belong to the lifecycle
UPDATABLE_FIELDS = ("name", "description", "type", "variants", "target_audience", "goals")


def validate_variants(variants: Sequence[Variant]) -> None:
    if len(variants) < 2:
        raise ValidationError(
            "An experiment needs at least two variants", details={"variants": len(variants)}
        )

    names = [v.name for v in variants]
    if len(set(names)) != len(names):
        raise ValidationError("Variant names must be unique", details={"variants": names})

    total = sum(v.traffic_allocation for v in variants)
    if not math.isclose(total, 100, abs_tol=1e-9):
        raise ValidationError(
            "Variant traffic allocations must sum to 100", details={"total": total}
        )


class ExperimentService:
    """
    Experiment lifecycle plus the assignment, tracking and results operations.

    State machine: draft -> running <-> paused, and any non-completed state
    -> completed (terminal). Every mutation invalidates the cache entries it
    could have made stale before returning.
    """

    def __init__(
        self,
        db: AsyncSession,
        cache: Optional[ExperimentCache] = None,
        clock: Optional[Clock] = None,
        random_source: Optional[RandomSource] = None,
        logger=None,
    ):
        self.db = db
        self.logger = logger or structlog.get_logger("experiments")
        self.cache = cache or ExperimentCache(None, logger=self.logger)
        self.clock = clock or SystemClock()
        self.store = ExperimentStore(db)
        self.assignments = AssignmentEngine(
            self.store, random_source or UniformRandomSource(), logger=self.logger
        )
        self.tracker = EventTracker(self.store, self.assignments, self.clock, logger=self.logger)
        self.aggregator = ResultsAggregator(self.store)

    async def _load(self, experiment_id: str) -> Experiment:
        experiment = await self.store.get_experiment(experiment_id)
        if experiment is None:
            raise NotFoundError("Experiment", experiment_id)
        return experiment

    async def _invalidate(self, experiment_id: str) -> None:
        await self.cache.invalidate(ACTIVE_EXPERIMENTS_KEY, experiment_key(experiment_id))
        await self.cache.invalidate_pattern(assignment_pattern(experiment_id))

    # Lifecycle

    async def create_experiment(self, request: CreateExperimentRequest) -> ExperimentResponse:
        self.logger.info("creating_experiment", name=request.name)
        validate_variants(request.variants)

        if await self.store.find_experiment_by_name(request.name):
            raise ValidationError("Experiment name already exists", details={"name": request.name})

        experiment = Experiment(
            id=str(uuid.uuid4()),
            name=request.name,
            description=request.description,
            type=ExperimentType(request.type.value),
            status=ExperimentStatus.DRAFT,
            variants=[v.model_dump() for v in request.variants],
            target_audience=request.target_audience.model_dump(mode="json"),
            goals=request.goals.model_dump(mode="json"),
            winner=None,
        )
        experiment = await self.store.insert_experiment(experiment)

        await self.cache.invalidate(ACTIVE_EXPERIMENTS_KEY)
        self.logger.info("experiment_created", experiment_id=experiment.id)
        return self.to_response(experiment)

    async def update_experiment(
        self, experiment_id: str, request: UpdateExperimentRequest
    ) -> ExperimentResponse:
        self.logger.info("updating_experiment", experiment_id=experiment_id)
        experiment = await self._load(experiment_id)

        if experiment.status == ExperimentStatus.COMPLETED:
            raise StateConflictError("Cannot update a completed experiment", "completed")

        patch = request.model_dump(exclude_unset=True, include=set(UPDATABLE_FIELDS))

        if patch.get("variants") is not None:
            validate_variants(request.variants)
        if patch.get("name") and patch["name"] != experiment.name:
            if await self.store.find_experiment_by_name(patch["name"]):
                raise ValidationError(
                    "Experiment name already exists", details={"name": patch["name"]}
                )

        if patch.get("name"):
            experiment.name = patch["name"]
        if "description" in patch:
            experiment.description = patch["description"]
        if patch.get("type"):
            experiment.type = ExperimentType(request.type.value)
        if patch.get("variants"):
            experiment.variants = [v.model_dump() for v in request.variants]
            self.store.sync_result_rows(experiment)
        if patch.get("target_audience"):
            experiment.target_audience = request.target_audience.model_dump(mode="json")
        if patch.get("goals"):
            experiment.goals = request.goals.model_dump(mode="json")

        experiment = await self.store.save_experiment(experiment)
        await self._invalidate(experiment_id)
        return self.to_response(experiment)

    async def start_experiment(self, experiment_id: str) -> ExperimentResponse:
        self.logger.info("starting_experiment", experiment_id=experiment_id)
        experiment = await self._load(experiment_id)

        if experiment.status == ExperimentStatus.RUNNING:
            raise StateConflictError("Experiment is already running", "running")
        if experiment.status == ExperimentStatus.COMPLETED:
            raise StateConflictError("Cannot start a completed experiment", "completed")

        experiment.status = ExperimentStatus.RUNNING
        # Resuming from pause also resets the start date
        experiment.start_date = self.clock.now()

        experiment = await self.store.save_experiment(experiment)
        await self._invalidate(experiment_id)
        return self.to_response(experiment)

    async def pause_experiment(self, experiment_id: str) -> ExperimentResponse:
        self.logger.info("pausing_experiment", experiment_id=experiment_id)
        experiment = await self._load(experiment_id)

        if experiment.status != ExperimentStatus.RUNNING:
            raise StateConflictError("Experiment is not running", experiment.status.value)

        experiment.status = ExperimentStatus.PAUSED

        experiment = await self.store.save_experiment(experiment)
        await self._invalidate(experiment_id)
        return self.to_response(experiment)

    async def complete_experiment(
        self, experiment_id: str, winner: Optional[str] = None
    ) -> ExperimentResponse:
        self.logger.info("completing_experiment", experiment_id=experiment_id, winner=winner)
        experiment = await self._load(experiment_id)

        if experiment.status == ExperimentStatus.COMPLETED:
            raise StateConflictError("Experiment is already completed", "completed")

        if winner:
            if experiment.find_variant(winner) is None:
                raise ValidationError(
                    "Invalid winner variant",
                    details={"winner": winner, "variants": experiment.variant_names},
                )
        else:
            winner = determine_winner(
                experiment.variant_names, experiment.primary_goal, experiment.results
            )

        experiment.status = ExperimentStatus.COMPLETED
        experiment.end_date = self.clock.now()
        experiment.winner = winner

        experiment = await self.store.save_experiment(experiment)
        await self._invalidate(experiment_id)
        self.logger.info("experiment_completed", experiment_id=experiment_id, winner=winner)
        return self.to_response(experiment)

    async def delete_experiment(self, experiment_id: str) -> ExperimentResponse:
        self.logger.info("deleting_experiment", experiment_id=experiment_id)
        experiment = await self._load(experiment_id)

        if experiment.status == ExperimentStatus.RUNNING:
            raise StateConflictError("Cannot delete a running experiment", "running")

        response = self.to_response(experiment)
        await self.store.delete_experiment(experiment)
        await self._invalidate(experiment_id)
        return response

    # Reads

    async def get_experiment(self, experiment_id: str) -> ExperimentResponse:
        key = experiment_key(experiment_id)
        cached = await self.cache.get(key)
        if cached is not None:
            self.logger.debug("experiment_cache_hit", experiment_id=experiment_id)
            return ExperimentResponse.model_validate(cached)

        response = self.to_response(await self._load(experiment_id))
        await self.cache.set(key, response.model_dump(mode="json"), settings.CACHE_TTL_EXPERIMENT)
        return response

    async def list_experiments(
        self,
        status: Optional[ExperimentStatusEnum] = None,
        experiment_type: Optional[ExperimentTypeEnum] = None,
    ) -> List[ExperimentResponse]:
        experiments = await self.store.list_experiments(
            status=ExperimentStatus(status.value) if status else None,
            experiment_type=ExperimentType(experiment_type.value) if experiment_type else None,
        )
        return [self.to_response(e) for e in experiments]

    async def list_active_experiments(self) -> List[ExperimentResponse]:
        cached = await self.cache.get(ACTIVE_EXPERIMENTS_KEY)
        if cached is not None:
            return [ExperimentResponse.model_validate(item) for item in cached]

        experiments = await self.store.list_active_experiments(self.clock.now())
        responses = [self.to_response(e) for e in experiments]
        await self.cache.set(
            ACTIVE_EXPERIMENTS_KEY,
            [r.model_dump(mode="json") for r in responses],
            settings.CACHE_TTL_ACTIVE_EXPERIMENTS,
        )
        return responses

    # Assignment and tracking

    async def get_or_create_assignment(
        self, user_id: str, experiment_id: str
    ) -> AssignmentResponse:
        key = assignment_key(experiment_id, user_id)
        cached = await self.cache.get(key)
        if cached is not None:
            return AssignmentResponse.model_validate(cached)

        experiment, assignment = await self.assignments.get_or_create_assignment(
            user_id, experiment_id
        )
        response = self.to_assignment_response(assignment, experiment)
        await self.cache.set(key, response.model_dump(mode="json"), settings.CACHE_TTL_ASSIGNMENT)
        return response

    async def list_user_assignments(self, user_id: str) -> List[UserExperimentAssignment]:
        """
        The user's variant in every active experiment.

        Experiments share one session, so they are visited one at a time; an
        experiment that fails is logged and left out of the list.
        """
        assignments = []
        for experiment in await self.list_active_experiments():
            try:
                assignment = await self.get_or_create_assignment(user_id, experiment.id)
            except ExperimentServiceError as e:
                self.logger.error(
                    "assignment_lookup_failed",
                    experiment_id=experiment.id,
                    user_id=user_id,
                    error=e.message,
                )
                continue

            assignments.append(
                UserExperimentAssignment(
                    experiment=ExperimentRef(
                        id=experiment.id, name=experiment.name, type=experiment.type
                    ),
                    variant=assignment.variant,
                    variant_details=assignment.variant_details,
                )
            )
        return assignments

    async def track_event(
        self, user_id: str, experiment_id: str, event: TrackEvent
    ) -> Optional[AssignmentResponse]:
        assignment = await self.tracker.track_event(user_id, experiment_id, event)
        if assignment is None:
            return None

        await self.cache.invalidate(
            assignment_key(experiment_id, user_id), experiment_key(experiment_id)
        )
        experiment = await self._load(experiment_id)
        return self.to_assignment_response(assignment, experiment)

    # Results

    async def get_results(self, experiment_id: str) -> ExperimentResultsResponse:
        experiment = await self._load(experiment_id)
        variant_results = await self.aggregator.compute_results(experiment)
        significance = calculate_significance(variant_results)

        return ExperimentResultsResponse(
            experiment=self.to_response(experiment),
            results_by_variant=[
                VariantResultResponse(
                    variant=r.name,
                    users=r.users,
                    impressions=r.impressions,
                    conversions=r.conversions,
                    revenue=r.revenue,
                    engagements=r.engagements,
                    conversion_rate=r.conversion_rate,
                    average_revenue=r.average_revenue,
                )
                for r in variant_results
            ],
            significance=SignificanceResponse(
                is_significant=significance.is_significant,
                confidence_level=significance.confidence_level,
                winner=significance.winner,
                control=significance.control,
                variation=significance.variation,
                improvement=significance.improvement,
                z_score=significance.z_score,
            ),
            winner=experiment.winner or significance.winner,
        )

    # Serialisation

    def to_response(self, experiment: Experiment) -> ExperimentResponse:
        return ExperimentResponse(
            id=experiment.id,
            name=experiment.name,
            description=experiment.description,
            type=ExperimentTypeEnum(experiment.type.value),
            status=ExperimentStatusEnum(experiment.status.value),
            variants=experiment.variants,
            target_audience=experiment.target_audience or {},
            goals=experiment.goals or {},
            results=experiment.results,
            winner=experiment.winner,
            start_date=experiment.start_date,
            end_date=experiment.end_date,
            created_at=experiment.created_at,
            updated_at=experiment.updated_at,
        )

    def to_assignment_response(
        self, assignment: UserAssignment, experiment: Experiment
    ) -> AssignmentResponse:
        details = experiment.find_variant(assignment.variant)
        return AssignmentResponse(
            id=assignment.id,
            user_id=assignment.user_id,
            experiment_id=assignment.experiment_id,
            variant=assignment.variant,
            impressions=assignment.impressions,
            conversions=assignment.conversions,
            revenue=assignment.revenue,
            engagements=assignment.engagements,
            last_activity=assignment.last_activity,
            created_at=assignment.created_at,
            variant_details=Variant.model_validate(details) if details else None,
        )
