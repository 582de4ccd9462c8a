from typing import Optional, Tuple

import structlog

from app.core.exceptions import NotFoundError
from app.models.experiment import EVENT_METRICS, EventType, ExperimentStatus, UserAssignment
from app.models.schemas import RevenueEvent, TrackEvent
from app.services.experiments.assignment import AssignmentEngine
from app.services.experiments.sources import Clock
from app.services.experiments.store import ExperimentStore


def event_increment(event: TrackEvent) -> Tuple[str, float]:
    """Counter column and delta for a tracked event."""
    metric = EVENT_METRICS[EventType(event.event_type)]
    if isinstance(event, RevenueEvent):
        return metric, event.amount or 0.0
    return metric, 1


class EventTracker:
    """
    Records user activity against an assignment and the experiment totals.

    Both counters are bumped with in-database increments. The experiment
    totals are an eventually consistent aggregate of the assignment rows.
    """

    def __init__(
        self,
        store: ExperimentStore,
        assignments: AssignmentEngine,
        clock: Clock,
        logger=None,
    ):
        self.store = store
        self.assignments = assignments
        self.clock = clock
        self.logger = logger or structlog.get_logger("experiments.tracking")

    async def track_event(
        self, user_id: str, experiment_id: str, event: TrackEvent
    ) -> Optional[UserAssignment]:
        experiment = await self.store.get_experiment(experiment_id)
        if experiment is None:
            raise NotFoundError("Experiment", experiment_id)

        # Tracking must never break a client flow because an experiment was paused
        if experiment.status != ExperimentStatus.RUNNING:
            self.logger.info(
                "event_skipped_not_running",
                experiment_id=experiment_id,
                user_id=user_id,
                status=experiment.status.value,
            )
            return None

        assignment = await self.assignments.ensure_assignment(experiment, user_id)
        variant = assignment.variant
        metric, delta = event_increment(event)

        await self.store.increment_assignment(
            user_id, experiment_id, metric, delta, self.clock.now()
        )
        await self.store.increment_result(experiment_id, variant, metric, delta)
        await self.store.commit()

        self.logger.info(
            "event_tracked",
            experiment_id=experiment_id,
            user_id=user_id,
            variant=variant,
            event_type=event.event_type,
            delta=delta,
        )

        return await self.store.find_assignment(user_id, experiment_id)
