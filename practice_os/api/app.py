"""FastAPI application for PracticeOS scheduling."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from practice_os import __version__
from practice_os.api.middleware import RequestLoggingMiddleware
from practice_os.api.routes import health, scheduling
from practice_os.config import get_settings
from practice_os.scheduling.errors import SchedulingError

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    logger.info("Starting PracticeOS API")

    settings = get_settings()

    from practice_os.integrations import (
        HttpCalendarGateway,
        HttpNotificationDispatcher,
        LoggingNotificationDispatcher,
        NullCalendarGateway,
    )

    if settings.has_calendar_service:
        app.state.calendar_gateway = HttpCalendarGateway()
    else:
        logger.info("No calendar service configured; conflict checks report nothing")
        app.state.calendar_gateway = NullCalendarGateway()

    if settings.has_notification_webhook:
        app.state.notifier = HttpNotificationDispatcher()
    else:
        app.state.notifier = LoggingNotificationDispatcher()

    logger.info(
        "PracticeOS API started (timezone=%s, session=%d min)",
        settings.tenant_timezone,
        settings.appointment_session_duration,
    )

    yield

    logger.info("Shutting down PracticeOS API")
    orchestrator = getattr(app.state, "booking_orchestrator", None)
    if orchestrator is not None:
        await orchestrator.drain_notifications()
    await app.state.calendar_gateway.close()

    from practice_os.core.database import dispose_engine

    await dispose_engine()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="PracticeOS Scheduling API",
        description="Multi-practitioner appointment scheduling",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_middleware(RequestLoggingMiddleware)

    app.include_router(health.router, tags=["health"])
    app.include_router(scheduling.router, prefix="/api/v1", tags=["scheduling"])

    @app.exception_handler(SchedulingError)
    async def scheduling_exception_handler(request: Request, exc: SchedulingError):
        logger.warning(f"Scheduling error on {request.url.path}: {exc}")
        return JSONResponse(
            status_code=scheduling.error_status(exc),
            content={"detail": scheduling.error_detail(exc)},
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.exception(f"Unhandled exception: {exc}")
        return JSONResponse(
            status_code=500,
            content={
                "error": "Internal server error",
                "detail": str(exc) if settings.debug_mode else None,
            },
        )

    return app
