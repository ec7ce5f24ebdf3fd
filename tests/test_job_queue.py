"""Tests for submission and the management operations of JobQueue."""

import asyncio
from datetime import timedelta

import pytest

from markup_worker.queue import (
    JobNotFoundError,
    JobQueue,
    JobState,
    JobStateError,
    MemoryJobStore,
    RetentionPolicy,
    job_id_for,
)
from markup_worker.queue import events as ev
from markup_worker.queue.worker import Worker

from conftest import URL_A, URL_B, ScriptedHandler, payload_for


# ===================================================================== #
#  Submission / debounce                                                 #
# ===================================================================== #

class TestSubmit:

    @pytest.mark.asyncio
    async def test_submit_schedules_delayed_job(self, queue, clock):
        receipt = await queue.submit(URL_A, payload_for(URL_A))

        assert receipt.job_id == job_id_for(URL_A)
        assert receipt.status == JobState.DELAYED
        assert receipt.delay_ms == 180000
        assert receipt.will_run_at == clock() + timedelta(minutes=3)

        job = await queue.get_job(receipt.job_id)
        assert job.state == JobState.DELAYED
        assert job.attempts_made == 0
        assert job.max_attempts == 3
        assert job.payload == payload_for(URL_A)

    @pytest.mark.asyncio
    async def test_resubmit_within_window_keeps_one_job(self, queue, clock):
        """Submit at t=0 and t=60s: one job, running no earlier than t=60s+180s."""
        t0 = clock()
        await queue.submit(URL_A, payload_for(URL_A, screenshot_quality=80))
        clock.advance(seconds=60)
        receipt = await queue.submit(URL_A, payload_for(URL_A, screenshot_quality=90))

        stats = await queue.stats()
        assert stats.total == 1
        assert stats.delayed == 1
        assert receipt.will_run_at >= t0 + timedelta(seconds=60 + 180)

        job = await queue.get_job(job_id_for(URL_A))
        assert job.payload["options"]["screenshot_quality"] == 90

    @pytest.mark.asyncio
    async def test_custom_delay(self, queue, clock):
        receipt = await queue.submit(URL_A, payload_for(URL_A), delay_ms=5000)
        assert receipt.will_run_at == clock() + timedelta(seconds=5)

    @pytest.mark.asyncio
    async def test_empty_key_is_rejected(self, queue):
        with pytest.raises(ValueError):
            await queue.submit("", {"url": ""})

    @pytest.mark.asyncio
    async def test_negative_delay_is_rejected(self, queue):
        with pytest.raises(ValueError):
            await queue.submit(URL_A, payload_for(URL_A), delay_ms=-1)

    @pytest.mark.asyncio
    async def test_distinct_urls_get_distinct_jobs(self, queue):
        a = await queue.submit(URL_A, payload_for(URL_A))
        b = await queue.submit(URL_B, payload_for(URL_B))
        assert a.job_id != b.job_id
        assert (await queue.stats()).delayed == 2

    @pytest.mark.asyncio
    async def test_replacing_emits_removed_event(self, queue):
        removed = []
        queue.events.on(ev.REMOVED, lambda job: removed.append(job.id))

        await queue.submit(URL_A, payload_for(URL_A))
        await queue.submit(URL_A, payload_for(URL_A))

        assert removed == [job_id_for(URL_A)]

    @pytest.mark.asyncio
    async def test_resubmit_after_completion_starts_fresh(self, queue, clock, make_worker):
        await queue.submit(URL_A, payload_for(URL_A))
        clock.advance(minutes=3)
        await make_worker(ScriptedHandler({"done": 1})).run_once()
        assert (await queue.get_job(job_id_for(URL_A))).state == JobState.COMPLETED

        await queue.submit(URL_A, payload_for(URL_A))

        job = await queue.get_job(job_id_for(URL_A))
        assert job.state == JobState.DELAYED
        assert job.attempts_made == 0
        assert job.result is None

    @pytest.mark.asyncio
    async def test_interleaved_submits_leave_one_record(self, settings, clock):
        """Known race: concurrent submits for one URL interleave their
        remove/insert. Which payload wins is not defined, but records are
        keyed by job id so only one pending job remains."""

        class YieldingStore(MemoryJobStore):
            async def get(self, job_id):
                await asyncio.sleep(0)
                return await super().get(job_id)

        queue = JobQueue(store=YieldingStore(), settings=settings, clock=clock)
        await queue.submit(URL_A, payload_for(URL_A, n=0))

        await asyncio.gather(
            queue.submit(URL_A, payload_for(URL_A, n=1)),
            queue.submit(URL_A, payload_for(URL_A, n=2)),
        )

        stats = await queue.stats()
        assert stats.total == 1
        assert stats.delayed == 1
        job = await queue.get_job(job_id_for(URL_A))
        assert job.payload["options"]["n"] in (1, 2)


def test_job_id_is_deterministic():
    assert job_id_for(URL_A) == job_id_for(URL_A)
    assert job_id_for(URL_A).startswith("markup-")


def test_job_id_distinguishes_urls_with_long_common_prefix():
    base = "https://app.markup.io/markup/" + "x" * 60
    assert job_id_for(base + "1") != job_id_for(base + "2")


# ===================================================================== #
#  Read operations                                                       #
# ===================================================================== #

class TestReads:

    @pytest.mark.asyncio
    async def test_delayed_job_becomes_waiting(self, queue, clock):
        await queue.submit(URL_A, payload_for(URL_A))
        clock.advance(minutes=3)

        job = await queue.get_job(job_id_for(URL_A))
        assert job.state == JobState.WAITING

        stats = await queue.stats()
        assert stats.waiting == 1
        assert stats.delayed == 0
        assert stats.total == 1

    @pytest.mark.asyncio
    async def test_get_missing_job(self, queue):
        assert await queue.get_job("markup-unknown") is None

    @pytest.mark.asyncio
    async def test_list_jobs_by_state_and_range(self, queue, clock):
        urls = [f"{URL_A}?v={i}" for i in range(4)]
        for url in urls:
            await queue.submit(url, payload_for(url))
            clock.advance(seconds=1)

        jobs = await queue.list_jobs("delayed", 0, 1)
        assert [j.url for j in jobs] == urls[:2]

        jobs = await queue.list_jobs(JobState.DELAYED, 2, -1)
        assert [j.url for j in jobs] == urls[2:]

        assert await queue.list_jobs(JobState.WAITING, 0, 10) == []

    @pytest.mark.asyncio
    async def test_list_jobs_rejects_unknown_state(self, queue):
        with pytest.raises(ValueError):
            await queue.list_jobs("stuck", 0, 10)


# ===================================================================== #
#  Administrative operations                                             #
# ===================================================================== #

async def _fail_permanently(queue, clock, make_worker, url=URL_A):
    await queue.submit(url, payload_for(url))
    worker = make_worker(ScriptedHandler(RuntimeError("rate limited")))
    clock.advance(minutes=3)
    await worker.run_once()
    for _ in range(2):
        clock.advance(minutes=10)
        await worker.run_once()
    return await queue.get_job(job_id_for(url))


class TestRetryNow:

    @pytest.mark.asyncio
    async def test_retry_failed_job(self, queue, store, clock, make_worker):
        job = await _fail_permanently(queue, clock, make_worker)
        assert job.state == JobState.FAILED
        assert job.attempts_made == 3

        retried = await queue.retry_now(job.id)

        stored = await store.get(job.id)
        assert stored.state == JobState.DELAYED
        assert stored.run_at == clock()
        assert stored.attempts_made == 3
        assert stored.failure_reason is None
        # run_at reached: readers see it as ready
        assert retried.state == JobState.WAITING

    @pytest.mark.asyncio
    async def test_retried_job_gets_exactly_one_more_attempt(self, queue, clock, make_worker):
        job = await _fail_permanently(queue, clock, make_worker)
        await queue.retry_now(job.id)

        handler = ScriptedHandler(RuntimeError("still down"))
        await make_worker(handler).run_once()

        job = await queue.get_job(job.id)
        assert len(handler.calls) == 1
        assert job.state == JobState.FAILED
        assert job.attempts_made == job.max_attempts == 4

    @pytest.mark.asyncio
    async def test_retry_delayed_job_runs_now(self, queue, store, clock):
        receipt = await queue.submit(URL_A, payload_for(URL_A))
        await queue.retry_now(receipt.job_id)
        assert (await store.get(receipt.job_id)).run_at == clock()

    @pytest.mark.asyncio
    async def test_retry_missing_job(self, queue):
        with pytest.raises(JobNotFoundError):
            await queue.retry_now("markup-missing")

    @pytest.mark.asyncio
    async def test_retry_active_job_is_refused(self, queue, clock):
        await queue.submit(URL_A, payload_for(URL_A))
        clock.advance(minutes=3)
        job = await queue.claim()

        with pytest.raises(JobStateError):
            await queue.retry_now(job.id)


class TestRemove:

    @pytest.mark.asyncio
    async def test_removed_job_never_runs(self, queue, clock, make_worker):
        receipt = await queue.submit(URL_A, payload_for(URL_A))

        assert await queue.remove(receipt.job_id) is True
        assert await queue.get_job(receipt.job_id) is None

        handler = ScriptedHandler()
        clock.advance(minutes=5)
        assert await make_worker(handler).run_once() is None
        assert handler.calls == []

    @pytest.mark.asyncio
    async def test_remove_missing_job(self, queue):
        assert await queue.remove("markup-missing") is False


class TestPause:

    @pytest.mark.asyncio
    async def test_pause_and_resume(self, queue):
        assert await queue.is_paused() is False
        await queue.pause()
        assert await queue.is_paused() is True
        await queue.resume()
        assert await queue.is_paused() is False

    @pytest.mark.asyncio
    async def test_pause_keeps_jobs(self, queue):
        await queue.submit(URL_A, payload_for(URL_A))
        await queue.pause()
        assert (await queue.stats()).delayed == 1


# ===================================================================== #
#  Cleaning and retention                                                #
# ===================================================================== #

class TestClean:

    @pytest.mark.asyncio
    async def test_clean_only_touches_old_terminal_jobs(self, queue, clock, make_worker):
        grace_ms = 3600 * 1000

        # completed two hours ago
        await queue.submit(URL_A, payload_for(URL_A), delay_ms=0)
        await make_worker(ScriptedHandler()).run_once()
        # failed two hours ago (younger than 7x grace)
        await _fail_permanently(queue, clock, make_worker, url=URL_B)
        clock.advance(seconds=7200)

        # pending jobs in every non-terminal state
        await queue.submit("https://app.markup.io/markup/delayed", payload_for("d"))
        await queue.submit("https://app.markup.io/markup/waiting", payload_for("w"), delay_ms=0)
        await queue.submit("https://app.markup.io/markup/active", payload_for("a"), delay_ms=0)
        active = await queue.claim()
        assert active is not None

        result = await queue.clean(grace_ms)

        assert result.cleaned_completed == 1
        assert result.cleaned_failed == 0
        stats = await queue.stats()
        assert stats.completed == 0
        assert stats.failed == 1
        assert stats.delayed == 1
        assert stats.waiting == 1
        assert stats.active == 1

        clock.advance(seconds=7 * 3600)
        result = await queue.clean(grace_ms)
        assert result.cleaned_failed == 1
        assert (await queue.stats()).total == 3

    @pytest.mark.asyncio
    async def test_clean_rejects_negative_grace(self, queue):
        with pytest.raises(ValueError):
            await queue.clean(-1)

    @pytest.mark.asyncio
    async def test_completed_retention_count(self, settings, clock):
        store = MemoryJobStore(completed_retention=RetentionPolicy(max_age_seconds=3600, max_count=2))
        queue = JobQueue(store=store, settings=settings, clock=clock)
        worker = Worker(queue, ScriptedHandler(), rate_limit_ms=0)

        for i in range(3):
            url = f"{URL_A}?run={i}"
            await queue.submit(url, payload_for(url), delay_ms=0)
            await worker.run_once()
            clock.advance(seconds=1)

        stats = await queue.stats()
        assert stats.completed == 2
        assert await queue.get_job(job_id_for(f"{URL_A}?run=0")) is None

    @pytest.mark.asyncio
    async def test_completed_retention_age(self, settings, clock):
        store = MemoryJobStore(completed_retention=RetentionPolicy(max_age_seconds=60, max_count=100))
        queue = JobQueue(store=store, settings=settings, clock=clock)
        worker = Worker(queue, ScriptedHandler(), rate_limit_ms=0)

        await queue.submit(URL_A, payload_for(URL_A), delay_ms=0)
        await worker.run_once()
        clock.advance(seconds=120)
        await queue.submit(URL_B, payload_for(URL_B), delay_ms=0)
        await worker.run_once()

        assert await queue.get_job(job_id_for(URL_A)) is None
        assert (await queue.get_job(job_id_for(URL_B))).state == JobState.COMPLETED


# ===================================================================== #
#  Interrupted and stalled jobs                                          #
# ===================================================================== #

class TestRecovery:

    @pytest.mark.asyncio
    async def test_release_does_not_count_the_attempt(self, queue, clock):
        await queue.submit(URL_A, payload_for(URL_A), delay_ms=0)
        job = await queue.claim()
        await queue.report_progress(job, 10)

        assert await queue.release(job) is True

        stored = await queue.get_job(job.id)
        assert stored.state == JobState.WAITING
        assert stored.attempts_made == 0
        assert stored.progress == 0
        assert stored.processed_at is None

    @pytest.mark.asyncio
    async def test_release_after_replacement_keeps_new_job(self, queue, clock):
        await queue.submit(URL_A, payload_for(URL_A, n=1), delay_ms=0)
        job = await queue.claim()
        await queue.submit(URL_A, payload_for(URL_A, n=2))

        assert await queue.release(job) is False
        stored = await queue.get_job(job.id)
        assert stored.payload == payload_for(URL_A, n=2)
        assert stored.state == JobState.DELAYED

    @pytest.mark.asyncio
    async def test_recent_active_jobs_are_left_alone(self, queue, clock):
        await queue.submit(URL_A, payload_for(URL_A), delay_ms=0)
        job = await queue.claim()
        clock.advance(minutes=29)

        assert await queue.recover_stalled() == []
        assert (await queue.get_job(job.id)).state == JobState.ACTIVE

    @pytest.mark.asyncio
    async def test_stalled_job_on_last_attempt_fails(self, queue, clock):
        failures = []
        queue.events.on(ev.FAILED, lambda job, error: failures.append(job.id))
        await queue.submit(URL_A, payload_for(URL_A), delay_ms=0)
        job = await queue.claim()
        job.max_attempts = 1
        await queue.report_progress(job, 10)
        clock.advance(minutes=30)

        assert await queue.recover_stalled() == [job.id]

        stored = await queue.get_job(job.id)
        assert stored.state == JobState.FAILED
        assert stored.failure_reason.startswith("Job stalled")
        assert failures == [job.id]

    @pytest.mark.asyncio
    async def test_stalled_job_can_then_be_retried(self, queue, clock):
        await queue.submit(URL_A, payload_for(URL_A), delay_ms=0)
        job = await queue.claim()

        with pytest.raises(JobStateError):
            await queue.retry_now(job.id)

        clock.advance(minutes=45)
        await queue.recover_stalled()
        retried = await queue.retry_now(job.id)
        assert retried.state == JobState.WAITING
