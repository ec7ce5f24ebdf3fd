"""Main entry point for the Markup scrape worker service."""

import asyncio
import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from redis.exceptions import ConnectionError as RedisConnectionError

from markup_worker.config import get_settings
from markup_worker.handlers.scrape import ScrapeHandler
from markup_worker.queue import StoreUnavailableError
from markup_worker.queue.job_queue import job_queue
from markup_worker.queue.worker import Worker
from markup_worker.routes import health, payload, queue as queue_routes

logger = logging.getLogger(__name__)

# Configure logging based on settings
settings = get_settings()

if settings.log_format == "json":
    from markup_worker.lib.json_logger import setup_json_logging
    setup_json_logging(level=settings.log_level)
else:
    logging.basicConfig(
        level=settings.log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the background worker alongside the HTTP server and close it on shutdown.

    Signal handling stays with uvicorn; the worker is stopped from here.
    """
    worker = None
    worker_task = None
    handler = None
    if settings.run_worker:
        handler = ScrapeHandler.from_settings(settings)
        await job_queue.connect()
        worker = Worker(job_queue, handler)
        worker_task = asyncio.create_task(worker.run())
        logger.info("Background worker consumer started")
    yield
    if worker is not None:
        # Running jobs get a grace period, then are cancelled and returned to the queue
        await worker.close(timeout=settings.shutdown_timeout_seconds)
        try:
            await worker_task
        except asyncio.CancelledError:
            pass
        await handler.aclose()
        await job_queue.close()
        logger.info("Background worker consumer stopped")


app = FastAPI(
    title="Markup Scrape Worker",
    description="Debounced job queue for scraping Markup.io annotation threads",
    version="0.1.0",
    lifespan=lifespan,
)

cors_origins = [origin.strip() for origin in settings.cors_origins.split(",") if origin.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_methods=["GET", "POST", "PUT", "DELETE"],
    allow_headers=["*"],
)


@app.exception_handler(StoreUnavailableError)
@app.exception_handler(RedisConnectionError)
async def store_unavailable_handler(request: Request, exc: Exception):
    logger.error(f"Store unavailable during {request.method} {request.url.path}: {exc}")
    return JSONResponse(
        status_code=503,
        content={"success": False, "error": f"Queue store unavailable: {exc}"},
    )


app.include_router(health.router, prefix="/health", tags=["Health"])
app.include_router(payload.router, tags=["Scraping"])
app.include_router(queue_routes.router, prefix="/queue", tags=["Queue"])


@app.get("/")
async def root():
    """Service description."""
    return {
        "service": "Markup.io Screenshot & Payload Extractor API",
        "version": "0.1.0",
        "endpoints": {
            "GET /health": "Health check with queue stats",
            "POST /complete-payload": "Queue scraping job (debounced per URL)",
            "GET /queue/stats": "Job counts per state",
            "GET /queue/job/{job_id}": "Job state and result",
            "GET /queue/jobs/{state}?start&end": "List jobs in a state",
            "POST /queue/job/{job_id}/retry": "Run a job again right away",
            "DELETE /queue/job/{job_id}": "Remove a job",
            "POST /queue/pause": "Pause processing",
            "POST /queue/resume": "Resume processing",
            "POST /queue/clean?grace_ms=": "Delete old finished jobs",
        },
        "features": [
            f"Debounce window of {settings.debounce_delay_ms // 1000}s per URL",
            f"Automatic retries ({settings.max_attempts} attempts, "
            f"{settings.retry_delay_ms // 60000}-min delay)",
            f"Sequential processing ({settings.concurrency} job at a time)",
        ],
    }


if __name__ == "__main__":
    uvicorn.run(
        "markup_worker.main:app",
        host="0.0.0.0",
        port=settings.port,
        reload=settings.debug
    )
