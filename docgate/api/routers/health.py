"""Health check endpoints for docgate.

- /health: Basic health check
- /health/live: Liveness probe
- /health/ready: Readiness probe (database and Redis broker)
"""

from typing import Dict, Any
from datetime import datetime

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from sqlalchemy import text
import redis

from docgate import __version__
from docgate.api.deps import get_db
from docgate.core.config import get_settings

router = APIRouter(tags=["health"])
settings = get_settings()


def check_database(db: Session) -> Dict[str, Any]:
    """Check database connectivity."""
    try:
        db.execute(text("SELECT 1")).fetchone()
        return {"status": "healthy"}
    except Exception as e:
        return {
            "status": "unhealthy",
            "error": str(e),
        }


def check_redis() -> Dict[str, Any]:
    """Check connectivity to the Celery broker."""
    try:
        r = redis.from_url(
            settings.celery_broker,
            socket_connect_timeout=2,
            socket_timeout=2,
        )
        r.ping()
        info = r.info("server")
        r.close()
        return {
            "status": "healthy",
            "version": info.get("redis_version", "unknown"),
        }
    except Exception as e:
        return {
            "status": "unhealthy",
            "error": str(e),
        }


@router.get("/health")
async def health_check():
    """Returns 200 if the application is running."""
    return {
        "status": "healthy",
        "version": __version__,
        "timestamp": datetime.utcnow().isoformat(),
    }


@router.get("/health/live")
async def liveness_probe():
    return JSONResponse(
        status_code=status.HTTP_200_OK,
        content={
            "status": "alive",
            "timestamp": datetime.utcnow().isoformat(),
        },
    )


@router.get("/health/ready")
def readiness_probe(db: Session = Depends(get_db)):
    """
    Readiness probe.

    Returns 503 when the database or the Redis broker is unreachable.
    """
    checks = {
        "database": check_database(db),
        "redis": check_redis(),
    }
    unhealthy = [name for name, check in checks.items() if check["status"] == "unhealthy"]

    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE if unhealthy else status.HTTP_200_OK,
        content={
            "status": "not_ready" if unhealthy else "ready",
            "checks": checks,
            "failed": unhealthy,
            "timestamp": datetime.utcnow().isoformat(),
        },
    )
