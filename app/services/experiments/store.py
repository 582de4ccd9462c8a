import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.core.exceptions import StoreUnavailableError, ValidationError
from app.models.experiment import (
    METRICS,
    Experiment,
    ExperimentResult,
    ExperimentStatus,
    ExperimentType,
    UserAssignment,
)


class ExperimentStore:
    """
    Persistence for experiments, their per-variant totals and user assignments.

    Cross-request coordination relies only on the database: the unique
    (user_id, experiment_id) constraint for assignments and
    ``col = col + delta`` updates for counters.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    @asynccontextmanager
    async def _guard(self, operation: str):
        try:
            yield
        except (OperationalError, InterfaceError, PoolTimeoutError) as e:
            raise StoreUnavailableError(operation, str(e)) from e

    def _experiment_query(self):
        return (
            select(Experiment)
            .options(selectinload(Experiment.result_rows))
            .execution_options(populate_existing=True)
        )

    # Experiments

    async def get_experiment(self, experiment_id: str) -> Optional[Experiment]:
        async with self._guard("get_experiment"):
            result = await self.db.execute(
                self._experiment_query().where(Experiment.id == experiment_id)
            )
            return result.scalar_one_or_none()

    async def find_experiment_by_name(self, name: str) -> Optional[Experiment]:
        async with self._guard("find_experiment_by_name"):
            result = await self.db.execute(self._experiment_query().where(Experiment.name == name))
            return result.scalar_one_or_none()

    async def list_experiments(
        self,
        status: Optional[ExperimentStatus] = None,
        experiment_type: Optional[ExperimentType] = None,
    ) -> List[Experiment]:
        query = self._experiment_query().order_by(Experiment.created_at.desc())

        if status:
            query = query.where(Experiment.status == status)
        if experiment_type:
            query = query.where(Experiment.type == experiment_type)

        async with self._guard("list_experiments"):
            result = await self.db.execute(query)
            return list(result.scalars().all())

    async def list_active_experiments(self, now: datetime) -> List[Experiment]:
        query = (
            self._experiment_query()
            .where(Experiment.status == ExperimentStatus.RUNNING)
            .where(or_(Experiment.end_date.is_(None), Experiment.end_date > now))
            .order_by(Experiment.created_at.asc())
        )
        async with self._guard("list_active_experiments"):
            result = await self.db.execute(query)
            return list(result.scalars().all())

    async def insert_experiment(self, experiment: Experiment) -> Experiment:
        self.sync_result_rows(experiment)
        self.db.add(experiment)
        async with self._guard("insert_experiment"):
            try:
                await self.db.commit()
            except IntegrityError as e:
                await self.db.rollback()
                raise ValidationError(
                    "Experiment name already exists", details={"name": experiment.name}
                ) from e
            return await self.get_experiment(experiment.id)

    async def save_experiment(self, experiment: Experiment) -> Experiment:
        experiment_id, name = experiment.id, experiment.name
        async with self._guard("save_experiment"):
            try:
                await self.db.commit()
            except IntegrityError as e:
                await self.db.rollback()
                raise ValidationError(
                    "Experiment name already exists", details={"name": name}
                ) from e
            return await self.get_experiment(experiment_id)

    def sync_result_rows(self, experiment: Experiment) -> None:
        """Keep one zeroed totals row per declared variant."""
        names = experiment.variant_names
        rows = list(experiment.result_rows or [])
        kept = [row for row in rows if row.variant_name in names]
        existing = {row.variant_name for row in kept}
        for name in names:
            if name not in existing:
                kept.append(
                    ExperimentResult(
                        variant_name=name, impressions=0, conversions=0, revenue=0.0, engagements=0
                    )
                )
        experiment.result_rows = kept

    async def delete_experiment(self, experiment: Experiment) -> None:
        async with self._guard("delete_experiment"):
            await self.db.execute(
                delete(UserAssignment).where(UserAssignment.experiment_id == experiment.id)
            )
            await self.db.delete(experiment)
            await self.db.commit()

    # Assignments

    async def find_assignment(self, user_id: str, experiment_id: str) -> Optional[UserAssignment]:
        async with self._guard("find_assignment"):
            result = await self.db.execute(
                select(UserAssignment)
                .where(
                    UserAssignment.user_id == user_id,
                    UserAssignment.experiment_id == experiment_id,
                )
                .execution_options(populate_existing=True)
            )
            return result.scalar_one_or_none()

    async def find_or_insert_assignment(
        self, user_id: str, experiment_id: str, variant: str
    ) -> Tuple[UserAssignment, bool]:
        """
        Insert an assignment unless one already exists for the user.

        Returns the stored row and whether this call created it. When a
        concurrent writer wins the unique constraint, its row is returned.
        """
        existing = await self.find_assignment(user_id, experiment_id)
        if existing is not None:
            return existing, False

        assignment = UserAssignment(
            id=str(uuid.uuid4()),
            user_id=user_id,
            experiment_id=experiment_id,
            variant=variant,
            impressions=0,
            conversions=0,
            revenue=0.0,
            engagements=0,
        )
        self.db.add(assignment)

        async with self._guard("insert_assignment"):
            try:
                await self.db.commit()
            except IntegrityError:
                await self.db.rollback()
                # Rollback expires every loaded instance; reload the experiment too
                await self.get_experiment(experiment_id)
                winner = await self.find_assignment(user_id, experiment_id)
                if winner is None:
                    raise
                return winner, False

        return await self.find_assignment(user_id, experiment_id), True

    async def increment_assignment(
        self, user_id: str, experiment_id: str, metric: str, delta: float, now: datetime
    ) -> None:
        column = getattr(UserAssignment, metric)
        async with self._guard("increment_assignment"):
            await self.db.execute(
                update(UserAssignment)
                .where(
                    UserAssignment.user_id == user_id,
                    UserAssignment.experiment_id == experiment_id,
                )
                .values({metric: column + delta, "last_activity": now})
                .execution_options(synchronize_session=False)
            )

    async def increment_result(
        self, experiment_id: str, variant: str, metric: str, delta: float
    ) -> None:
        column = getattr(ExperimentResult, metric)
        async with self._guard("increment_result"):
            result = await self.db.execute(
                update(ExperimentResult)
                .where(
                    ExperimentResult.experiment_id == experiment_id,
                    ExperimentResult.variant_name == variant,
                )
                .values({metric: column + delta})
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                # Variant dropped from the declaration after users were assigned to it
                row = ExperimentResult(
                    experiment_id=experiment_id,
                    variant_name=variant,
                    impressions=0,
                    conversions=0,
                    revenue=0.0,
                    engagements=0,
                )
                setattr(row, metric, delta)
                self.db.add(row)

    async def commit(self) -> None:
        async with self._guard("commit"):
            await self.db.commit()

    async def aggregate_assignments(self, experiment_id: str) -> Dict[str, Dict[str, float]]:
        """Sum assignment counters per variant in a single GROUP BY."""
        query = (
            select(
                UserAssignment.variant,
                func.count(UserAssignment.id).label("users"),
                *[func.coalesce(func.sum(getattr(UserAssignment, m)), 0).label(m) for m in METRICS],
            )
            .where(UserAssignment.experiment_id == experiment_id)
            .group_by(UserAssignment.variant)
        )
        async with self._guard("aggregate_assignments"):
            result = await self.db.execute(query)
            return {
                row.variant: {
                    "users": row.users,
                    **{metric: getattr(row, metric) for metric in METRICS},
                }
                for row in result
            }
