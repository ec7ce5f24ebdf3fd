"""Health check endpoints."""

from fastapi import APIRouter, Depends
from datetime import datetime, timezone
import time
import logging

from markup_worker.config import get_settings
from markup_worker.queue import JobQueue, get_queue

router = APIRouter()
logger = logging.getLogger(__name__)

STARTED_AT = time.monotonic()
SERVICE_NAME = "markup-screenshot-payload-extractor"


@router.get("")
async def health_check(queue: JobQueue = Depends(get_queue)):
    """
    Health check with queue stats.

    Always reports healthy while the process runs; a store outage shows up
    in the `queue` field only.
    """
    try:
        stats = await queue.stats()
        queue_info = {**stats.model_dump(), "paused": await queue.is_paused()}
    except Exception as e:
        logger.warning(f"Queue stats unavailable for health check: {e}")
        queue_info = {"error": "Queue not available"}

    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "uptime": round(time.monotonic() - STARTED_AT, 1),
        "service": SERVICE_NAME,
        "queue": queue_info,
    }


@router.get("/ready")
async def readiness_check(queue: JobQueue = Depends(get_queue)):
    """Readiness: the store must be reachable."""
    settings = get_settings()
    connected = await queue.connect()
    redis_url = settings.redis_url.split("@")[-1] if "@" in settings.redis_url else settings.redis_url
    return {
        "status": "ok" if connected else "degraded",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "checks": {"redis": {"status": "ok" if connected else "error"}},
        "config": {"redis_url": redis_url, "queue_name": settings.queue_name},
    }
