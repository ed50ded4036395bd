"""
Health check and readiness endpoints
"""
from datetime import datetime, timezone

import redis
from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.orm import Session

from newsletter.config import settings
from newsletter.database import get_db
from newsletter.obs.logging import get_logger

router = APIRouter(tags=["health"])
logger = get_logger(__name__)


@router.get("/health")
async def health_check():
    """Basic liveness check"""
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "environment": settings.ENVIRONMENT,
    }


@router.get("/ready")
def readiness_check(db: Session = Depends(get_db)):
    """Readiness check covering the database and, when Celery is on, Redis"""
    checks = {}
    ready = True

    try:
        db.execute(text("SELECT 1"))
        checks["database"] = {"status": "healthy"}
    except Exception as e:
        logger.warning(f"Database readiness check failed: {e}")
        checks["database"] = {"status": "unhealthy", "error": type(e).__name__}
        ready = False

    if settings.ENABLE_CELERY and settings.REDIS_URL:
        try:
            redis.from_url(settings.REDIS_URL, socket_timeout=2).ping()
            checks["redis"] = {"status": "healthy"}
        except Exception as e:
            logger.warning(f"Redis readiness check failed: {e}")
            checks["redis"] = {"status": "unhealthy", "error": type(e).__name__}
            ready = False

    return JSONResponse(
        status_code=200 if ready else 503,
        content={"status": "ready" if ready else "not_ready", "checks": checks},
    )
