"""Submission endpoint: queue a Markup project for scraping."""

from datetime import datetime, timezone
from typing import Optional
from urllib.parse import urlparse
import logging

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from markup_worker.config import get_settings
from markup_worker.queue import JobQueue, get_queue

router = APIRouter()
logger = logging.getLogger(__name__)


class CompletePayloadRequest(BaseModel):
    """Request to scrape a Markup project."""
    url: Optional[str] = None
    options: dict = {}


def is_valid_url(url: str) -> bool:
    try:
        parsed = urlparse(url)
    except ValueError:
        return False
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def default_options() -> dict:
    settings = get_settings()
    return {
        "screenshot_quality": settings.screenshot_quality,
        "debug_mode": settings.scraper_debug_mode,
    }


@router.post("/complete-payload", status_code=202)
async def complete_payload(
    request: CompletePayloadRequest,
    queue: JobQueue = Depends(get_queue),
):
    """
    Queue a scraping job with debouncing.

    Returns immediately; the job runs once no new request for the same URL
    has arrived for the debounce delay. Poll `check_status` for the outcome.
    """
    if not request.url:
        raise HTTPException(status_code=400, detail="Missing required parameter: url")
    if not is_valid_url(request.url):
        raise HTTPException(status_code=400, detail="Invalid URL format")

    options = {**default_options(), **request.options}
    logger.info(f"Received request to scrape: {request.url}", extra={"url": request.url})

    receipt = await queue.submit(request.url, {"url": request.url, "options": options})
    delay_minutes = receipt.delay_ms / 60000

    return {
        "success": True,
        "message": (
            f"Job added to queue. Will process in {delay_minutes:g} minutes "
            "if no duplicate URLs are received."
        ),
        "job": receipt.model_dump(mode="json"),
        "check_status": f"/queue/job/{receipt.job_id}",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
