import time
import uuid
from typing import Callable

import structlog
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

logger = structlog.get_logger()

REQUEST_ID_HEADER = "X-Request-ID"


class TelemetryMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start_time = time.time()

        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        method = request.method
        path = request.url.path

        # Handlers pass this logger down to the services they build
        request_logger = logger.bind(request_id=request_id)
        request.state.logger = request_logger

        try:
            response = await call_next(request)
            duration = time.time() - start_time

            request_logger.info(
                "request_completed",
                method=method,
                path=path,
                status_code=response.status_code,
                duration_ms=round(duration * 1000, 2),
            )

            response.headers["X-Process-Time"] = str(duration)
            response.headers[REQUEST_ID_HEADER] = request_id
            return response

        except Exception as e:
            duration = time.time() - start_time

            request_logger.error(
                "request_failed",
                method=method,
                path=path,
                error=str(e),
                duration_ms=round(duration * 1000, 2),
            )
            raise


def get_request_logger(request: Request):
    """Dependency returning the request-scoped logger."""
    return getattr(request.state, "logger", logger)
