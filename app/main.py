from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.api.v1.router import api_router
from app.config import get_settings
from app.core.cache import close_redis
from app.core.database import close_db, init_db
from app.core.exceptions import ExperimentServiceError
from app.core.logging import configure_logging
from app.middleware import TelemetryMiddleware
from app.models.experiment import Experiment, ExperimentResult, UserAssignment  # noqa: F401

settings = get_settings()

configure_logging(settings.LOG_LEVEL)
logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("startup", app=settings.APP_NAME, environment=settings.ENVIRONMENT)
    await init_db()
    logger.info("database_initialized")
    yield
    # Shutdown
    logger.info("shutdown")
    await close_redis()
    await close_db()


app = FastAPI(
    title=settings.APP_NAME,
    description="Experimentation service: A/B test lifecycle, assignment, tracking and results",
    version="0.1.0",
    docs_url=f"{settings.API_V1_PREFIX}/docs",
    redoc_url=f"{settings.API_V1_PREFIX}/redoc",
    lifespan=lifespan,
)

# CORS middleware
if settings.CORS_ORIGINS:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

app.add_middleware(TelemetryMiddleware)


@app.exception_handler(ExperimentServiceError)
async def experiment_error_handler(request: Request, exc: ExperimentServiceError):
    request_logger = getattr(request.state, "logger", logger)
    request_logger.warning(
        "experiment_request_rejected",
        error_code=exc.error_code,
        message=exc.message,
        path=request.url.path,
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.error_code, "message": exc.message, "details": exc.details},
    )


# Include routers
app.include_router(api_router, prefix=settings.API_V1_PREFIX)


@app.get("/")
async def root():
    return {
        "app": settings.APP_NAME,
        "version": "0.1.0",
        "environment": settings.ENVIRONMENT,
    }
