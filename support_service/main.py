"""Rent-to-Own Support Service: Main FastAPI Application.

Notification delivery (SMS, email, WhatsApp) and support ticket routing
for the rent-to-own vehicle marketplace.
"""

import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from .api import api_router
from .core import (
    RecipientCipher,
    async_session_factory,
    close_db,
    create_message_bus,
    get_settings,
    init_db,
)
from .jobs import BackgroundJobs
from .schemas import ErrorResponse
from .services import (
    MessageTemplatingService,
    NotificationWorker,
    SupportEventHandlers,
    TeamRegistry,
    build_providers,
)

settings = get_settings()

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: startup and shutdown."""
    logger.info(f"Starting {settings.app_name} ({settings.environment})")

    # Skip init_db in production (tables already exist)
    if os.getenv("ENVIRONMENT") != "production":
        try:
            await init_db()
        except Exception as e:
            logger.warning(f"Could not initialize database: {e}")

    bus = create_message_bus(settings)
    await bus.connect()

    app.state.bus = bus
    app.state.cipher = RecipientCipher.from_settings(settings)
    app.state.templating = MessageTemplatingService()
    app.state.team_registry = TeamRegistry()

    worker = NotificationWorker(
        session_factory=async_session_factory,
        bus=bus,
        cipher=app.state.cipher,
        providers=build_providers(settings),
        templating=app.state.templating,
        settings=settings,
    )
    await worker.start()

    event_handlers = SupportEventHandlers(
        session_factory=async_session_factory,
        bus=bus,
        cipher=app.state.cipher,
        templating=app.state.templating,
        settings=settings,
    )
    await event_handlers.subscribe()

    jobs = None
    if settings.background_jobs_enabled:
        jobs = BackgroundJobs(
            session_factory=async_session_factory,
            worker=worker,
            registry=app.state.team_registry,
            bus=bus,
            settings=settings,
        )
        jobs.start()

    yield

    # Shutdown
    if jobs is not None:
        await jobs.stop()
    await bus.close()
    await close_db()
    logger.info("Support service stopped")


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="""
    ## Rent-to-Own Support Service

    Notifications and customer support for the vehicle marketplace.

    ### Key Features

    - **Multi-channel delivery**: SMS, email and WhatsApp through one queued pipeline.
    - **Templates**: Named message templates rendered per channel.
    - **Delivery tracking**: Forward-only status history with funnel analytics.
    - **Ticket routing**: Tickets are routed to specialist teams by category,
      priority and live workload.
    """,
    openapi_url=f"{settings.api_prefix}/openapi.json",
    docs_url=f"{settings.api_prefix}/docs",
    redoc_url=f"{settings.api_prefix}/redoc",
    lifespan=lifespan,
)


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle unexpected exceptions."""
    logger.exception(f"Unhandled exception on {request.method} {request.url.path}: {exc}")

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=ErrorResponse(
            error="internal_error",
            message=f"An unexpected error occurred: {str(exc)[:200]}",
            details=[],
        ).model_dump(),
    )


# Health check endpoint
@app.get("/health", tags=["health"])
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "service": "support-service",
        "version": settings.app_version,
    }


# Include API routes
app.include_router(api_router, prefix=settings.api_prefix)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "support_service.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
    )
