"""Kontra Policy Engine service entry point.

Initializes the FastAPI application with:
- Structured logging
- Primary database for packs, rules, findings and impact runs
- Background scheduler for impact simulation runs
- Exception handlers rendering PolicyEngineError as {code, message, details}
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from functools import partial

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from kontra_policy_engine.adapters.impact_simulation import ImpactRunScheduler, build_impact_service
from kontra_policy_engine.api.router import router
from kontra_policy_engine.common.database import close_database, init_database
from kontra_policy_engine.common.errors import PolicyEngineError, StorageError
from kontra_policy_engine.common.observability import configure_logging, get_logger
from kontra_policy_engine.settings import Settings, get_settings

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Manage application startup and shutdown lifecycle.

    Initializes logging, the primary database and the impact run scheduler on
    startup. Cancels running impact runs and disposes the engine on shutdown.

    Args:
        app: The FastAPI application instance.

    Yields:
        None
    """
    settings: Settings = app.state.settings
    configure_logging(settings.log_level, json_logs=settings.log_json)

    logger.info("Initializing primary database", service=settings.service_name)
    session_factory = init_database(
        settings.database_url,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        echo=settings.db_echo,
    )

    scheduler = ImpactRunScheduler(session_factory, partial(build_impact_service, settings=settings))
    app.state.impact_scheduler = scheduler

    logger.info(
        "Policy engine startup complete",
        condition_failure_policy=settings.condition_failure_policy.value,
        impact_run_in_background=settings.impact_run_in_background,
    )

    yield

    logger.info("Shutting down policy engine")
    await scheduler.shutdown()
    await close_database()
    logger.info("Policy engine shutdown complete")


async def policy_error_handler(request: Request, exc: PolicyEngineError) -> JSONResponse:
    """Render a PolicyEngineError with its own status code."""
    if exc.status_code >= 500:
        logger.error("Request failed", path=request.url.path, code=exc.code, error=exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_response().model_dump())


async def storage_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    """Render an unhandled database error as a StorageError."""
    logger.exception("Database error", path=request.url.path, error=str(exc))
    error = StorageError("Storage operation failed", details={"error": exc.__class__.__name__})
    return JSONResponse(status_code=error.status_code, content=error.to_response().model_dump())


def create_app(settings: Settings | None = None) -> FastAPI:
    """Build the FastAPI application.

    Args:
        settings: Settings to use; defaults to the cached environment settings.

    Returns:
        The configured FastAPI app.
    """
    settings = settings or get_settings()
    application = FastAPI(title=settings.service_name, version="0.1.0", lifespan=lifespan)
    application.state.settings = settings
    application.add_exception_handler(PolicyEngineError, policy_error_handler)
    application.add_exception_handler(SQLAlchemyError, storage_error_handler)
    application.include_router(router, prefix=settings.api_prefix)

    @application.get("/health", tags=["health"])
    async def health() -> dict[str, str]:
        return {"status": "ok", "service": settings.service_name}

    return application


app: FastAPI = create_app()
