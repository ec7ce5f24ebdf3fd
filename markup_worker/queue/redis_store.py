"""Redis-backed job store.

Layout (all keys prefixed with the queue name):
- `<queue>:job:<id>`   job record as JSON
- `<queue>:delayed`    sorted set, score = run_at (waiting = score <= now)
- `<queue>:active`     sorted set, score = processed_at
- `<queue>:completed`  sorted set, score = finished_at
- `<queue>:failed`     sorted set, score = finished_at
- `<queue>:paused`     flag key

A claim moves the job between sets and rewrites its record in one MULTI that
WATCHes the delayed set and the job key, so it is exclusive and never leaves
a record outside every index. Record writes are guarded the same way.
"""

import logging
from datetime import datetime
from typing import Optional

import redis.asyncio as redis
from redis.exceptions import WatchError

from .errors import StoreUnavailableError
from .models import Job, JobState, QueueStats
from .store import JobStore

logger = logging.getLogger(__name__)

CLAIM_RETRIES = 5
UPDATE_RETRIES = 3


def _score(dt: datetime) -> float:
    return dt.timestamp()


class RedisJobStore(JobStore):
    """Job store on top of redis.asyncio."""

    def __init__(self, redis_url: str, queue_name: str = "markup-scraper", **kwargs):
        super().__init__(**kwargs)
        self.redis_url = redis_url
        self.queue_name = queue_name
        self._redis: Optional[redis.Redis] = None
        self._connected = False

    @property
    def is_connected(self) -> bool:
        return self._connected and self._redis is not None

    async def connect(self) -> bool:
        """Connect to Redis. Returns True if connected, False if unavailable."""
        if self._redis is None:
            try:
                self._redis = redis.from_url(
                    self.redis_url,
                    encoding="utf-8",
                    decode_responses=True
                )
                await self._redis.ping()
                logger.info(f"Connected to Redis at {self.redis_url}")
                self._connected = True
            except Exception as e:
                logger.warning(f"Redis unavailable at {self.redis_url}: {e}")
                self._redis = None
                self._connected = False
        return self._connected

    async def disconnect(self) -> None:
        if self._redis:
            await self._redis.aclose()
            self._redis = None
            self._connected = False
            logger.info("Disconnected from Redis")

    async def _client(self) -> redis.Redis:
        if not await self.connect():
            raise StoreUnavailableError(f"Redis unavailable at {self.redis_url}")
        return self._redis

    # ==================== Keys ====================

    def _job_key(self, job_id: str) -> str:
        return f"{self.queue_name}:job:{job_id}"

    def _set_key(self, state: JobState) -> str:
        if state == JobState.WAITING:
            state = JobState.DELAYED
        return f"{self.queue_name}:{state.value}"

    @property
    def _paused_key(self) -> str:
        return f"{self.queue_name}:paused"

    def _state_sets(self) -> list[str]:
        return [
            self._set_key(state)
            for state in (JobState.DELAYED, JobState.ACTIVE, JobState.COMPLETED, JobState.FAILED)
        ]

    @staticmethod
    def _index_score(job: Job) -> float:
        if job.state == JobState.DELAYED:
            return _score(job.run_at)
        if job.state == JobState.ACTIVE:
            return _score(job.processed_at or job.run_at)
        return _score(job.finished_at or job.run_at)

    # ==================== Records ====================

    async def get(self, job_id: str) -> Optional[Job]:
        client = await self._client()
        raw = await client.get(self._job_key(job_id))
        return Job.model_validate_json(raw) if raw else None

    async def insert(self, job: Job) -> None:
        client = await self._client()
        async with client.pipeline(transaction=True) as pipe:
            pipe.set(self._job_key(job.id), job.model_dump_json())
            for key in self._state_sets():
                pipe.zrem(key, job.id)
            pipe.zadd(self._set_key(JobState.DELAYED), {job.id: _score(job.run_at)})
            await pipe.execute()

    async def remove(self, job_id: str) -> Optional[Job]:
        client = await self._client()
        async with client.pipeline(transaction=True) as pipe:
            pipe.get(self._job_key(job_id))
            pipe.delete(self._job_key(job_id))
            for key in self._state_sets():
                pipe.zrem(key, job_id)
            results = await pipe.execute()
        raw = results[0]
        return Job.model_validate_json(raw) if raw else None

    async def claim_next(self, now: datetime) -> Optional[Job]:
        client = await self._client()
        delayed_key = self._set_key(JobState.DELAYED)

        for _ in range(CLAIM_RETRIES):
            try:
                async with client.pipeline(transaction=True) as pipe:
                    # Any claim or submission touching either key aborts our EXEC
                    await pipe.watch(delayed_key)
                    ids = await pipe.zrangebyscore(delayed_key, "-inf", _score(now), start=0, num=1)
                    if not ids:
                        return None
                    job_id = ids[0]
                    job_key = self._job_key(job_id)
                    await pipe.watch(job_key)
                    raw = await pipe.get(job_key)

                    if not raw:
                        logger.warning(f"Job {job_id} not found in storage, dropping it from the index")
                        pipe.multi()
                        pipe.zrem(delayed_key, job_id)
                        await pipe.execute()
                        continue

                    job = Job.model_validate_json(raw)
                    if job.state != JobState.DELAYED or job.run_at > now:
                        # Index entry out of step with the record
                        pipe.multi()
                        pipe.zrem(delayed_key, job_id)
                        if job.state == JobState.DELAYED:
                            pipe.zadd(delayed_key, {job.id: _score(job.run_at)})
                        await pipe.execute()
                        continue

                    job.state = JobState.ACTIVE
                    job.attempts_made += 1
                    job.processed_at = now

                    pipe.multi()
                    pipe.zrem(delayed_key, job.id)
                    pipe.set(job_key, job.model_dump_json())
                    pipe.zadd(self._set_key(JobState.ACTIVE), {job.id: _score(now)})
                    await pipe.execute()
                    return job
            except WatchError:
                logger.debug("Delayed set changed while claiming, retrying")
                continue
        return None

    async def update(self, job: Job, now: datetime) -> bool:
        client = await self._client()
        job_key = self._job_key(job.id)

        for _ in range(UPDATE_RETRIES):
            try:
                async with client.pipeline(transaction=True) as pipe:
                    await pipe.watch(job_key)
                    raw = await pipe.get(job_key)
                    if not raw or Job.model_validate_json(raw).token != job.token:
                        await pipe.unwatch()
                        return False

                    pipe.multi()
                    pipe.set(job_key, job.model_dump_json())
                    for key in self._state_sets():
                        pipe.zrem(key, job.id)
                    pipe.zadd(self._set_key(job.state), {job.id: self._index_score(job)})
                    await pipe.execute()
                break
            except WatchError:
                continue
        else:
            return False

        if job.state.is_terminal:
            await self._apply_retention(client, job.state, now)
        return True

    async def _apply_retention(self, client: redis.Redis, state: JobState, now: datetime) -> None:
        policy = self.retention[state]
        set_key = self._set_key(state)

        expired = await client.zrangebyscore(set_key, "-inf", f"({_score(policy.cutoff(now))}")
        # Everything but the newest max_count entries
        overflow = await client.zrange(set_key, 0, -(policy.max_count + 1))
        stale = set(expired) | set(overflow)
        if not stale:
            return

        async with client.pipeline(transaction=True) as pipe:
            pipe.zrem(set_key, *stale)
            pipe.delete(*(self._job_key(job_id) for job_id in stale))
            await pipe.execute()
        logger.debug(f"Retention removed {len(stale)} {state.value} jobs")

    # ==================== Reads ====================

    async def counts(self, now: datetime) -> QueueStats:
        client = await self._client()
        delayed_key = self._set_key(JobState.DELAYED)
        async with client.pipeline(transaction=False) as pipe:
            pipe.zcount(delayed_key, "-inf", _score(now))
            pipe.zcount(delayed_key, f"({_score(now)}", "+inf")
            pipe.zcard(self._set_key(JobState.ACTIVE))
            pipe.zcard(self._set_key(JobState.COMPLETED))
            pipe.zcard(self._set_key(JobState.FAILED))
            waiting, delayed, active, completed, failed = await pipe.execute()

        return QueueStats(
            waiting=waiting,
            active=active,
            completed=completed,
            failed=failed,
            delayed=delayed,
            total=waiting + active + completed + failed + delayed,
        )

    async def list_jobs(self, state: JobState, start: int, end: int, now: datetime) -> list[Job]:
        client = await self._client()
        set_key = self._set_key(state)
        num = -1 if end < 0 else max(end - start + 1, 0)
        if num == 0:
            return []

        if state == JobState.WAITING:
            ids = await client.zrangebyscore(set_key, "-inf", _score(now), start=start, num=num)
        elif state == JobState.DELAYED:
            ids = await client.zrangebyscore(set_key, f"({_score(now)}", "+inf", start=start, num=num)
        elif state.is_terminal:
            ids = await client.zrevrange(set_key, start, end)
        else:
            ids = await client.zrange(set_key, start, end)

        if not ids:
            return []
        raws = await client.mget([self._job_key(job_id) for job_id in ids])
        return [Job.model_validate_json(raw) for raw in raws if raw]

    async def clean(self, state: JobState, older_than: datetime, limit: int) -> list[str]:
        self._check_terminal(state)
        client = await self._client()
        set_key = self._set_key(state)
        ids = await client.zrangebyscore(set_key, "-inf", f"({_score(older_than)}", start=0, num=limit)
        if ids:
            async with client.pipeline(transaction=True) as pipe:
                pipe.zrem(set_key, *ids)
                pipe.delete(*(self._job_key(job_id) for job_id in ids))
                await pipe.execute()
        return list(ids)

    async def set_paused(self, paused: bool) -> None:
        client = await self._client()
        if paused:
            await client.set(self._paused_key, "1")
        else:
            await client.delete(self._paused_key)

    async def is_paused(self) -> bool:
        client = await self._client()
        return bool(await client.exists(self._paused_key))
