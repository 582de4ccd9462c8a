from app.middleware.telemetry import TelemetryMiddleware, get_request_logger  # noqa: F401
