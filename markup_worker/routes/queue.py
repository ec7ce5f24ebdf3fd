"""Queue administration endpoints."""

from datetime import datetime, timezone
import logging

from fastapi import APIRouter, Depends, HTTPException, Query

from markup_worker.queue import (
    JobQueue,
    JobState,
    JobNotFoundError,
    JobStateError,
    get_queue,
)
from markup_worker.queue.job_queue import DEFAULT_CLEAN_GRACE_MS

router = APIRouter()
logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@router.get("/stats")
async def queue_stats(queue: JobQueue = Depends(get_queue)):
    """Job counts per state."""
    stats = await queue.stats()
    return {"success": True, "data": stats.model_dump(), "timestamp": _now()}


@router.get("/job/{job_id}")
async def job_status(job_id: str, queue: JobQueue = Depends(get_queue)):
    """Full job record, including the result once completed."""
    job = await queue.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return {"success": True, "data": job.model_dump(mode="json"), "timestamp": _now()}


@router.get("/jobs/{state}")
async def list_jobs(
    state: str,
    start: int = Query(0, ge=0),
    end: int = Query(10, ge=-1),
    queue: JobQueue = Depends(get_queue),
):
    """Paginated job summaries for one state (inclusive range, end=-1 for all)."""
    try:
        job_state = JobState(state)
    except ValueError:
        valid = ", ".join(s.value for s in JobState)
        raise HTTPException(status_code=400, detail=f"Unknown state '{state}'. Valid states: {valid}")

    jobs = await queue.list_jobs(job_state, start, end)
    return {
        "success": True,
        "state": job_state.value,
        "start": start,
        "end": end,
        "data": [job.model_dump(mode="json") for job in jobs],
    }


@router.post("/job/{job_id}/retry")
async def retry_job(job_id: str, queue: JobQueue = Depends(get_queue)):
    """Make a job eligible to run right away."""
    try:
        job = await queue.retry_now(job_id)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail="Job not found")
    except JobStateError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return {"success": True, "job_id": job.id, "message": "Job queued for retry"}


@router.delete("/job/{job_id}")
async def remove_job(job_id: str, queue: JobQueue = Depends(get_queue)):
    """Delete a job in any state. A running handler is not interrupted."""
    if not await queue.remove(job_id):
        raise HTTPException(status_code=404, detail="Job not found")
    return {"success": True, "job_id": job_id, "message": "Job removed"}


@router.post("/pause")
async def pause_queue(queue: JobQueue = Depends(get_queue)):
    await queue.pause()
    return {"success": True, "message": "Queue paused"}


@router.post("/resume")
async def resume_queue(queue: JobQueue = Depends(get_queue)):
    await queue.resume()
    return {"success": True, "message": "Queue resumed"}


@router.post("/clean")
async def clean_queue(
    grace_ms: int = Query(DEFAULT_CLEAN_GRACE_MS, ge=0),
    queue: JobQueue = Depends(get_queue),
):
    """Delete completed jobs older than grace_ms and failed jobs older than 7x grace_ms."""
    result = await queue.clean(grace_ms)
    return {"success": True, **result.model_dump()}
