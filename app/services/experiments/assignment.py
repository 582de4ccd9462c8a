from typing import Any, Dict, Sequence, Tuple

import structlog

from app.core.exceptions import NotFoundError, StateConflictError
from app.models.experiment import Experiment, ExperimentStatus, UserAssignment
from app.services.experiments.sources import RandomSource
from app.services.experiments.store import ExperimentStore


def pick_variant(variants: Sequence[Dict[str, Any]], draw: float) -> str:
    """
    Map a draw in [0, 100) onto the variants' cumulative traffic allocation.

    Variants are walked in declaration order; the first whose running total
    reaches the draw wins. Falls back to the first variant if float drift
    leaves the draw uncovered.
    """
    cumulative = 0.0
    for variant in variants:
        cumulative += variant["traffic_allocation"]
        if draw <= cumulative:
            return variant["name"]
    return variants[0]["name"]


class AssignmentEngine:
    def __init__(self, store: ExperimentStore, random_source: RandomSource, logger=None):
        self.store = store
        self.random = random_source
        self.logger = logger or structlog.get_logger("experiments.assignment")

    async def get_or_create_assignment(
        self, user_id: str, experiment_id: str
    ) -> Tuple[Experiment, UserAssignment]:
        experiment = await self.store.get_experiment(experiment_id)
        if experiment is None:
            raise NotFoundError("Experiment", experiment_id)

        if experiment.status != ExperimentStatus.RUNNING:
            raise StateConflictError("Experiment is not running", experiment.status.value)

        assignment = await self.ensure_assignment(experiment, user_id)
        return experiment, assignment

    async def ensure_assignment(self, experiment: Experiment, user_id: str) -> UserAssignment:
        """Return the user's sticky assignment, drawing a variant on first contact."""
        existing = await self.store.find_assignment(user_id, experiment.id)
        if existing is not None:
            return existing

        variant = pick_variant(experiment.variants, self.random.next())
        assignment, created = await self.store.find_or_insert_assignment(
            user_id, experiment.id, variant
        )

        if created:
            self.logger.info(
                "assignment_created",
                experiment_id=experiment.id,
                user_id=user_id,
                variant=assignment.variant,
            )
        else:
            self.logger.info(
                "assignment_conflict_resolved",
                experiment_id=experiment.id,
                user_id=user_id,
                drawn=variant,
                variant=assignment.variant,
            )

        return assignment
