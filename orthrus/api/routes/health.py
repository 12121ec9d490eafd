"""
Health Check Endpoints.

Provides health status for the API and its dependencies.
"""
import os
import time
import logging
from datetime import datetime, timezone

from fastapi import APIRouter, status
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from ..models import HealthStatus
from ..deps import get_db, get_store
from ...errors import StorageFailure

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/health", tags=["Health"])

# Version from environment or default
VERSION = os.getenv("APP_VERSION", "0.1.0")


def _check_database() -> float:
    """Run SELECT 1 and return the latency in milliseconds."""
    start = time.time()
    with get_db().get_session() as session:
        session.execute(text("SELECT 1"))
    return (time.time() - start) * 1000


@router.get("", response_model=HealthStatus)
async def health_check():
    """
    Basic health check endpoint.

    Returns overall system status.
    """
    services = {}
    overall_healthy = True

    # Account and 2FA profile database
    try:
        latency = _check_database()
        services["database"] = f"healthy ({latency:.1f}ms)"
    except (SQLAlchemyError, StorageFailure) as e:
        services["database"] = f"unhealthy: {str(e)}"
        overall_healthy = False

    # Ephemeral store (challenges, codes, lockouts)
    store = get_store()
    try:
        start = time.time()
        store.ping()
        latency = (time.time() - start) * 1000
        if store.backend == "redis":
            services["redis"] = f"healthy ({latency:.1f}ms)"
        else:
            services["redis"] = "memory_mode (single worker only)"
    except StorageFailure as e:
        # Without the store no challenge can be issued or verified
        services["redis"] = f"unhealthy: {str(e)}"
        overall_healthy = False

    return HealthStatus(
        status="healthy" if overall_healthy else "unhealthy",
        version=VERSION,
        services=services,
        timestamp=datetime.now(timezone.utc),
    )


@router.get("/live")
async def liveness():
    """
    Kubernetes liveness probe.

    Returns 200 if the service is running.
    """
    return {"status": "alive"}


@router.get("/ready")
async def readiness():
    """
    Kubernetes readiness probe.

    Returns 200 if the database and the ephemeral store are reachable.
    """
    try:
        _check_database()
        get_store().ping()
        return {"status": "ready"}
    except (SQLAlchemyError, StorageFailure) as e:
        logger.error(f"Readiness check failed: {e}")
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"status": "not ready", "error": str(e)},
        )
