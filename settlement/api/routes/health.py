"""Health check endpoints."""

import json

from fastapi import APIRouter, Depends, Response

from settlement.api.dependencies import get_services
from settlement.database import check_db_connection
from settlement.services.container import Services

router = APIRouter()


@router.get("/health")
async def health():
    """Basic health check."""
    return {"status": "healthy"}


@router.get("/health/ready")
async def readiness(services: Services = Depends(get_services)):
    """Readiness check for load balancers."""
    checks = {
        "database": await check_db_connection(services.session_factory),
    }

    all_healthy = all(checks.values())

    return Response(
        content=json.dumps(
            {
                "status": "ready" if all_healthy else "not_ready",
                "checks": checks,
            }
        ),
        status_code=200 if all_healthy else 503,
        media_type="application/json",
    )


@router.get("/health/live")
async def liveness():
    """Liveness check for container orchestration."""
    return {"status": "alive"}
