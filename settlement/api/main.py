"""FastAPI application entry point."""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from settlement.config import settings
from settlement.api.middleware import RateLimitMiddleware
from settlement.api.routes import (
    admin,
    analytics,
    commissions,
    health,
    organizations,
    settlements,
    subscriptions,
    webhooks,
)
from settlement.database import dispose_engine, get_session_factory
from settlement.integrations.gateway import build_gateway
from settlement.services.container import build_services
from settlement.workers.scheduler import create_scheduler, shutdown_scheduler, start_scheduler
import structlog

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler.

    Builds the gateway client and services once and keeps them on
    ``app.state``. Services placed there beforehand are used as they are.
    """
    logger.info("application_startup", env=settings.app_env)

    owns_services = getattr(app.state, "services", None) is None
    if owns_services:
        gateway = build_gateway(settings)
        app.state.services = build_services(get_session_factory(), gateway, settings)
    services = app.state.services

    scheduler = None
    if settings.scheduler_enabled and not settings.is_testing:
        scheduler = create_scheduler(services.executor, settings.transfer_poll_interval_seconds)
        start_scheduler(scheduler)

    yield

    if scheduler is not None:
        shutdown_scheduler(scheduler)
    if owns_services:
        await services.gateway.close()
        await dispose_engine()
        app.state.services = None
    logger.info("application_shutdown")


# Create FastAPI app
app = FastAPI(
    title="Settlement Engine",
    description="Payment settlement and revenue splits for agencies",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if settings.is_development else [],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

if settings.rate_limit_enabled:
    app.add_middleware(RateLimitMiddleware, settings=settings)

# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(
    settlements.router,
    prefix="/api/v1",
    tags=["Settlements"],
)
app.include_router(
    webhooks.router,
    prefix="/api/v1",
    tags=["Webhooks"],
)
app.include_router(
    commissions.router,
    prefix="/api/v1",
    tags=["Commissions"],
)
app.include_router(
    subscriptions.router,
    prefix="/api/v1",
    tags=["Subscriptions"],
)
app.include_router(
    organizations.router,
    prefix="/api/v1",
    tags=["Organizations"],
)
app.include_router(
    admin.router,
    prefix="/api/v1",
    tags=["Operator"],
)
app.include_router(
    analytics.router,
    prefix="/api/v1",
    tags=["Analytics"],
)


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Settlement Engine",
        "version": "0.1.0",
        "status": "running",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "settlement.api.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.is_development,
    )
