"""Background worker that drains the scrape queue.

Each slot polls for the earliest ready job, runs the handler on its
payload and records the outcome. With the default concurrency of 1 at most
one job is active at a time, which also serializes handler invocations.
No timeout is imposed on the handler: a stuck handler holds its slot.
A job cancelled mid-run goes back to the queue; jobs left active by a worker
that died are failed by the periodic stalled-job check.
"""

import asyncio
import signal
import logging
import time
from typing import Any, Awaitable, Callable, Optional

from markup_worker.config import get_settings
from markup_worker.lib.json_logger import job_logger

from . import events as ev
from .job_queue import JobQueue, job_queue
from .models import Job

logger = logging.getLogger(__name__)

Handler = Callable[[dict], Awaitable[Any]]

PROGRESS_STARTED = 10
PROGRESS_DONE = 100


class Worker:
    """Consumes jobs from a JobQueue with a fixed number of slots."""

    def __init__(
        self,
        queue: JobQueue,
        handler: Handler,
        concurrency: Optional[int] = None,
        poll_interval_ms: Optional[int] = None,
        rate_limit_ms: Optional[int] = None,
        error_backoff_ms: Optional[int] = None,
    ):
        settings = queue.settings
        self.queue = queue
        self.handler = handler
        self.concurrency = concurrency if concurrency is not None else settings.concurrency
        self.poll_interval = (poll_interval_ms if poll_interval_ms is not None else settings.poll_interval_ms) / 1000.0
        self.rate_limit = (rate_limit_ms if rate_limit_ms is not None else settings.rate_limit_ms) / 1000.0
        self.error_backoff = (error_backoff_ms if error_backoff_ms is not None else settings.error_backoff_ms) / 1000.0
        self.stalled_check_interval = settings.stalled_check_interval_ms / 1000.0

        if self.concurrency < 1:
            raise ValueError("concurrency must be at least 1")

        self.active_jobs: dict[str, Job] = {}
        self._running = False
        self._stop_event = asyncio.Event()
        self._claim_lock = asyncio.Lock()
        self._last_start: Optional[float] = None
        self._last_sweep = 0.0
        self._slots: list[asyncio.Task] = []

    @property
    def is_running(self) -> bool:
        return self._running

    async def run(self) -> None:
        """Run all slots until stop() is called."""
        if self._stop_event.is_set():
            return
        self._running = True
        logger.info(f"Starting queue processor for {self.queue.name} (concurrency={self.concurrency})")

        await self._recover_stalled()

        self._slots = [
            asyncio.create_task(self._slot(index))
            for index in range(self.concurrency)
        ]
        try:
            await asyncio.gather(*self._slots)
        except asyncio.CancelledError:
            logger.info("Queue processor cancelled")
            for task in self._slots:
                task.cancel()
            raise
        finally:
            self._running = False
            logger.info(f"Queue processor stopped for {self.queue.name}")

    def stop(self) -> None:
        """Stop claiming new jobs; jobs already running finish normally."""
        self._running = False
        self._stop_event.set()

    async def close(self, timeout: Optional[float] = None) -> None:
        """Stop and wait for running slots, cancelling them after `timeout` seconds."""
        self.stop()
        if not self._slots:
            return
        done, pending = await asyncio.wait(self._slots, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def _slot(self, index: int) -> None:
        while self._running:
            try:
                if index == 0 and time.monotonic() - self._last_sweep >= self.stalled_check_interval:
                    await self._recover_stalled()

                if await self.queue.is_paused():
                    await self._sleep(self.poll_interval)
                    continue

                job = await self.run_once()
                if job is None:
                    await self._sleep(self.poll_interval)

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.exception(f"Queue processor error in slot {index}: {e}")
                await self.queue.events.emit(ev.ERROR, e)
                await self._sleep(self.error_backoff)

    async def _sleep(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _recover_stalled(self) -> None:
        self._last_sweep = time.monotonic()
        try:
            await self.queue.recover_stalled()
        except Exception as e:
            logger.exception(f"Stalled job check failed: {e}")
            await self.queue.events.emit(ev.ERROR, e)

    async def _claim(self) -> Optional[Job]:
        async with self._claim_lock:
            if self._last_start is not None and self.rate_limit > 0:
                wait = self.rate_limit - (time.monotonic() - self._last_start)
                if wait > 0:
                    await asyncio.sleep(wait)
            job = await self.queue.claim()
            if job:
                self._last_start = time.monotonic()
            return job

    async def run_once(self) -> Optional[Job]:
        """Claim and process one ready job. Returns the job, or None if nothing was ready."""
        job = await self._claim()
        if job is None:
            return None
        await self.process(job)
        return job

    async def process(self, job: Job) -> None:
        """Run the handler for a claimed job and record the outcome."""
        log = job_logger(job.id, job.name, url=job.url)
        log.info(
            f"Processing job {job.id}: {job.url} (attempt {job.attempts_made}/{job.max_attempts})",
            extra={"attempts": job.attempts_made, "max_attempts": job.max_attempts},
        )

        self.active_jobs[job.id] = job
        started = time.monotonic()
        try:
            try:
                await self.queue.report_progress(job, PROGRESS_STARTED)
                result = await self.handler(job.payload)
            except asyncio.CancelledError:
                log.warning(f"Job {job.id} cancelled while running, returning it to the queue")
                await self.queue.release(job)
                raise
            except Exception as e:
                duration_ms = int((time.monotonic() - started) * 1000)
                log.exception(f"Job {job.id} handler error", extra={"duration_ms": duration_ms})
                await self.queue.fail(job, str(e) or type(e).__name__)
                return

            await self.queue.report_progress(job, PROGRESS_DONE)
            await self.queue.complete(job, result)
            log.info(
                f"Job {job.id} has been completed",
                extra={"duration_ms": int((time.monotonic() - started) * 1000)},
            )
        finally:
            self.active_jobs.pop(job.id, None)


async def run_worker(
    handler: Optional[Handler] = None,
    queue: Optional[JobQueue] = None,
    install_signal_handlers: bool = True,
):
    """
    Run a standalone worker process until SIGTERM/SIGINT.

    Inside the API process the worker is started and closed by the app
    lifespan instead, which leaves signal handling to uvicorn.

    Args:
        handler: Job handler. Defaults to the HTTP scrape handler.
        queue: Queue to drain. Defaults to the global queue.
        install_signal_handlers: Stop on SIGTERM/SIGINT. Only for the process entry point.
    """
    from markup_worker.handlers.scrape import ScrapeHandler

    settings = get_settings()
    queue = queue or job_queue
    scrape_handler = None
    if handler is None:
        scrape_handler = ScrapeHandler.from_settings(settings)
        handler = scrape_handler

    await queue.connect()
    worker = Worker(queue, handler)
    closing: list[asyncio.Task] = []

    def shutdown():
        logger.info("Shutdown signal received")
        if not closing:
            closing.append(asyncio.create_task(worker.close(settings.shutdown_timeout_seconds)))

    if install_signal_handlers:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, shutdown)
            except NotImplementedError:
                # Windows doesn't support add_signal_handler
                pass

    try:
        await worker.run()
        if closing:
            await closing[0]
    except asyncio.CancelledError:
        logger.info("Worker tasks cancelled")
    finally:
        if scrape_handler is not None:
            await scrape_handler.aclose()
        await queue.close()
        logger.info("Worker stopped")


if __name__ == "__main__":
    from markup_worker.lib.json_logger import setup_json_logging

    settings = get_settings()
    if settings.log_format == "json":
        setup_json_logging(level=settings.log_level)
    else:
        logging.basicConfig(
            level=settings.log_level,
            format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )

    asyncio.run(run_worker())
