"""Job handler that delegates one scrape to the scraper service.

The browser automation, screenshot capture, translation and persistence all
live behind the scraper service's `POST /scrape` endpoint. This handler only
forwards the job payload, checks the reply and shapes the job result.
Any exception raised here counts as a failed attempt for the queue.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Optional

import httpx
from pydantic import BaseModel

from markup_worker.config import Settings

logger = logging.getLogger(__name__)


class ScrapeFailedError(Exception):
    """The scraper service could not produce a result for a URL."""


class ScrapeSummary(BaseModel):
    """Result stored on a completed job."""
    success: bool = True
    url: str
    project_id: Optional[str] = None
    scraped_data_id: Optional[str] = None
    total_threads: int = 0
    total_comments: int = 0
    total_screenshots: int = 0
    operation: Optional[str] = None
    duration: Optional[float] = None
    completed_at: str
    payload: Optional[dict] = None
    warning: Optional[str] = None


def build_summary(url: str, data: dict) -> ScrapeSummary:
    """Shape a scraper reply into the job result."""
    total_threads = int(data.get("total_threads") or 0)
    full_payload = data.get("payload")

    summary = ScrapeSummary(
        url=url,
        project_id=_as_str(data.get("project_id")),
        scraped_data_id=_as_str(data.get("scraped_data_id")),
        total_threads=total_threads,
        total_comments=int(data.get("total_comments") or 0),
        # One screenshot per thread unless the scraper says otherwise
        total_screenshots=int(data.get("total_screenshots") or total_threads),
        operation=data.get("operation"),
        duration=data.get("duration"),
        completed_at=datetime.now(timezone.utc).isoformat(),
    )
    if full_payload:
        summary.payload = {
            "project_name": full_payload.get("project_name"),
            "url": full_payload.get("url", url),
            "total_threads": full_payload.get("total_threads", total_threads),
            "threads": full_payload.get("threads", []),
        }
    else:
        summary.warning = "Full payload could not be retrieved from database"
    return summary


def _as_str(value: Any) -> Optional[str]:
    return None if value is None else str(value)


class ScrapeHandler:
    """Callable job handler: `await handler(payload) -> dict`."""

    def __init__(
        self,
        scraper_url: str,
        token: str = "",
        timeout_seconds: float = 900.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.scraper_url = scraper_url.rstrip("/")
        self.token = token
        self.timeout_seconds = timeout_seconds
        self._client = client
        self._owns_client = client is None

    @classmethod
    def from_settings(cls, settings: Settings) -> "ScrapeHandler":
        return cls(
            scraper_url=settings.scraper_url,
            token=settings.scraper_token,
            timeout_seconds=settings.scraper_timeout_seconds,
        )

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            # Scrapes with many threads take minutes
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout_seconds, connect=30.0)
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def __call__(self, payload: dict) -> dict:
        url = payload.get("url")
        if not url:
            raise ScrapeFailedError("Job payload has no url")
        options = payload.get("options") or {}

        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"

        client = self._get_client()
        try:
            response = await client.post(
                f"{self.scraper_url}/scrape",
                json={"url": url, "options": options},
                headers=headers,
            )
        except httpx.TimeoutException as e:
            raise ScrapeFailedError(
                f"Scraper took longer than {self.timeout_seconds:.0f}s for {url}"
            ) from e
        except httpx.HTTPError as e:
            raise ScrapeFailedError(f"Cannot reach scraper service: {e}") from e

        if response.status_code >= 400:
            raise ScrapeFailedError(
                f"Scraper service error: {response.status_code} {response.text[:200]}"
            )

        try:
            data = response.json()
        except ValueError as e:
            raise ScrapeFailedError("Scraper service returned invalid JSON") from e

        if not data.get("success"):
            raise ScrapeFailedError(data.get("error") or "Scraping failed")

        summary = build_summary(url, data)
        logger.info(
            f"Scraped {url}: {summary.total_threads} threads, "
            f"{summary.total_screenshots} screenshots",
            extra={"url": url},
        )
        return summary.model_dump(mode="json")
