"""Shared fixtures: in-memory store, controllable clock, scripted handlers."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from markup_worker.config import Settings
from markup_worker.queue import JobQueue, MemoryJobStore
from markup_worker.queue.worker import Worker

START = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
URL_A = "https://app.markup.io/markup/6039b445-e90e-41c4-ad51-5c46790653c0"
URL_B = "https://app.markup.io/markup/0b7c1d2e-1111-4c41-ad51-aa46790653ff"


class FakeClock:
    """Clock the tests move by hand."""

    def __init__(self, start: datetime = START):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, ms: int = 0, seconds: float = 0, minutes: float = 0) -> datetime:
        self.now += timedelta(milliseconds=ms, seconds=seconds, minutes=minutes)
        return self.now


class ScriptedHandler:
    """Job handler that replays a script of outcomes.

    Exceptions in the script are raised, anything else is returned. Once the
    script runs out the last entry repeats.
    """

    def __init__(self, *outcomes, delay: float = 0.0):
        self.outcomes = list(outcomes) or [{"ok": True}]
        self.delay = delay
        self.calls: list[dict] = []

    async def __call__(self, payload: dict):
        self.calls.append(payload)
        if self.delay:
            await asyncio.sleep(self.delay)
        index = min(len(self.calls), len(self.outcomes)) - 1
        outcome = self.outcomes[index]
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        debounce_delay_ms=180000,
        retry_delay_ms=600000,
        max_attempts=3,
        concurrency=1,
        rate_limit_ms=0,
        poll_interval_ms=1,
        error_backoff_ms=1,
    )


@pytest.fixture
def store():
    return MemoryJobStore()


@pytest.fixture
def queue(store, settings, clock):
    return JobQueue(store=store, settings=settings, clock=clock)


@pytest.fixture
def make_worker(queue):
    def _make(handler, **kwargs):
        kwargs.setdefault("poll_interval_ms", 1)
        kwargs.setdefault("rate_limit_ms", 0)
        kwargs.setdefault("error_backoff_ms", 1)
        return Worker(queue, handler, **kwargs)
    return _make


def payload_for(url: str, **options) -> dict:
    return {"url": url, "options": options}
