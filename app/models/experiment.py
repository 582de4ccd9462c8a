import enum

from sqlalchemy import JSON, Column, DateTime
from sqlalchemy import Enum as SQLEnum
from sqlalchemy import Float, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from app.core.database import Base


class ExperimentStatus(str, enum.Enum):
    """Status of an experiment lifecycle."""

    DRAFT = "draft"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"


class ExperimentType(str, enum.Enum):
    """Area of the storefront an experiment applies to."""

    PRODUCT = "product"
    CATEGORY = "category"
    CHECKOUT = "checkout"
    HOMEPAGE = "homepage"
    OTHER = "other"


class PrimaryGoal(str, enum.Enum):
    CONVERSION = "conversion"
    REVENUE = "revenue"
    ENGAGEMENT = "engagement"
    RETENTION = "retention"
    OTHER = "other"


class EventType(str, enum.Enum):
    IMPRESSION = "impression"
    CONVERSION = "conversion"
    REVENUE = "revenue"
    ENGAGEMENT = "engagement"


# Counter column touched by each event type, on both assignments and results
EVENT_METRICS = {
    EventType.IMPRESSION: "impressions",
    EventType.CONVERSION: "conversions",
    EventType.REVENUE: "revenue",
    EventType.ENGAGEMENT: "engagements",
}

METRICS = ("impressions", "conversions", "revenue", "engagements")


class Experiment(Base):
    """
    An A/B experiment definition.

    Variants are stored as an ordered JSON list of
    {name, description, traffic_allocation, config}; the order matters for
    weighted assignment and for tie-breaking when picking a winner.
    """

    __tablename__ = "experiments"

    id = Column(String, primary_key=True)
    name = Column(String(200), nullable=False, unique=True, index=True)
    description = Column(Text)
    type = Column(SQLEnum(ExperimentType), nullable=False, default=ExperimentType.OTHER)
    status = Column(SQLEnum(ExperimentStatus), nullable=False, default=ExperimentStatus.DRAFT)

    # Timeline, only ever set by lifecycle transitions
    start_date = Column(DateTime(timezone=True))
    end_date = Column(DateTime(timezone=True))

    variants = Column(JSON, nullable=False)
    target_audience = Column(JSON)  # {"type": "all", "user_ids": []}
    goals = Column(JSON, nullable=False)  # {"primary": "conversion", "secondary": []}

    winner = Column(String)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    result_rows = relationship(
        "ExperimentResult",
        back_populates="experiment",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    @property
    def variant_names(self) -> list:
        return [v["name"] for v in self.variants or []]

    @property
    def primary_goal(self) -> str:
        return (self.goals or {}).get("primary", PrimaryGoal.CONVERSION.value)

    @property
    def results(self) -> dict:
        """Denormalised counters as {metric: {variant: value}}, in variant order."""
        rows = {row.variant_name: row for row in self.result_rows}
        results = {metric: {} for metric in METRICS}
        for name in self.variant_names:
            row = rows.get(name)
            for metric in METRICS:
                value = getattr(row, metric) if row is not None else 0
                results[metric][name] = value or 0
        return results

    def find_variant(self, name: str):
        for variant in self.variants or []:
            if variant["name"] == name:
                return variant
        return None


class ExperimentResult(Base):
    """
    Per-variant running totals for an experiment.

    Incremented alongside the matching UserAssignment row on every tracked
    event, so totals can be read without scanning assignments. The two are
    eventually consistent under concurrent writers.
    """

    __tablename__ = "experiment_results"
    __table_args__ = (UniqueConstraint("experiment_id", "variant_name"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    experiment_id = Column(
        String, ForeignKey("experiments.id", ondelete="CASCADE"), nullable=False, index=True
    )
    variant_name = Column(String, nullable=False)

    impressions = Column(Integer, nullable=False, default=0)
    conversions = Column(Integer, nullable=False, default=0)
    revenue = Column(Float, nullable=False, default=0.0)
    engagements = Column(Integer, nullable=False, default=0)

    experiment = relationship("Experiment", back_populates="result_rows")


class UserAssignment(Base):
    """Sticky mapping of one user to one variant of one experiment."""

    __tablename__ = "user_assignments"
    __table_args__ = (UniqueConstraint("user_id", "experiment_id", name="uq_user_experiment"),)

    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    experiment_id = Column(
        String, ForeignKey("experiments.id", ondelete="CASCADE"), nullable=False, index=True
    )
    variant = Column(String, nullable=False)

    impressions = Column(Integer, nullable=False, default=0)
    conversions = Column(Integer, nullable=False, default=0)
    revenue = Column(Float, nullable=False, default=0.0)
    engagements = Column(Integer, nullable=False, default=0)

    last_activity = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), server_default=func.now())
