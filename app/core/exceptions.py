"""
Exception hierarchy for the experimentation service.

Every error raised by the experiment services derives from
ExperimentServiceError so the API layer can map it to a response in one place.
"""

from typing import Optional


class ExperimentServiceError(Exception):
    """Base exception for all experimentation errors."""

    status_code = 500

    def __init__(
        self,
        message: str,
        error_code: str = "EXPERIMENT_ERROR",
        details: Optional[dict] = None,
    ):
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        super().__init__(self.message)


class ValidationError(ExperimentServiceError):
    """Malformed input: variant layout, unknown winner, duplicate name."""

    status_code = 400

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message, error_code="VALIDATION_ERROR", details=details)


class NotFoundError(ExperimentServiceError):
    """Experiment or assignment does not exist."""

    status_code = 404

    def __init__(self, resource: str, resource_id: str):
        super().__init__(
            message=f"{resource} not found",
            error_code="NOT_FOUND",
            details={"resource": resource, "id": resource_id},
        )


class StateConflictError(ExperimentServiceError):
    """Operation is not allowed in the experiment's current lifecycle state."""

    status_code = 409

    def __init__(self, message: str, status: Optional[str] = None):
        details = {"status": status} if status else {}
        super().__init__(message, error_code="STATE_CONFLICT", details=details)


class StoreUnavailableError(ExperimentServiceError):
    """Transient failure talking to the experiment store."""

    status_code = 503

    def __init__(self, operation: str, reason: str):
        super().__init__(
            message=f"Experiment store unavailable during {operation}",
            error_code="STORE_UNAVAILABLE",
            details={"operation": operation, "reason": reason},
        )
