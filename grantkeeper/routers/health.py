from fastapi import APIRouter, HTTPException
from fastapi.concurrency import run_in_threadpool
import logging

from grantkeeper.dependencies import check_database, get_services

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("/health/live")
async def liveness():
    """Liveness probe: Service is running."""
    return {"status": "ok", "checks": {"api": "ok"}}


@router.get("/health/ready")
async def readiness():
    """Readiness probe: Dependencies connected."""
    services = get_services()
    health = {"status": "ok", "checks": {}}

    if services.session_factory is None:
        health["checks"]["store"] = "memory"
    else:
        try:
            await run_in_threadpool(check_database, services.session_factory)
            health["checks"]["database"] = "ok"
        except Exception as e:
            logger.error(f"Health check failed (database): {e}")
            health["checks"]["database"] = "failed"
            health["status"] = "failed"

    health["checks"]["reconciler"] = services.reconciler.state.value
    health["checks"]["active_sessions"] = services.conversations.active_sessions()

    if health["status"] == "failed":
        raise HTTPException(status_code=503, detail=health)

    return health
