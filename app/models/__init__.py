from app.models.experiment import (  # noqa: F401
    EventType,
    Experiment,
    ExperimentResult,
    ExperimentStatus,
    ExperimentType,
    PrimaryGoal,
    UserAssignment,
)
