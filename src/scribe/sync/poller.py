"""Client-side job polling.

Job completion happens out of band, so consumers re-fetch the job at a
fixed interval until its status leaves ``processing``. Only eventual
visibility is guaranteed: a result shows up at most one interval plus one
provider round trip after it is committed.

A job that left ``processing`` is final from the consumer's point of view;
the server never lets a late provider result overwrite it.
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable

import httpx
import structlog

from src.scribe.config import Settings, get_settings
from src.scribe.jobs.schemas import JobStatus, JobView

logger = structlog.get_logger(__name__)

JobFetcher = Callable[[str], Awaitable[JobView]]


class HttpJobFetcher:
    """Fetch job views from ``GET /api/v1/jobs/{id}``.

    Args:
        base_url: Service root, e.g. ``https://scribe.example.com``.
        token: Bearer token issued by the auth service.
        client: Optional shared httpx.AsyncClient (owned by the caller).
    """

    def __init__(
        self,
        base_url: str,
        token: str,
        client: httpx.AsyncClient | None = None,
        timeout: float = 10.0,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._headers = {"Authorization": f"Bearer {token}"}
        self._client = client
        self._timeout = timeout

    async def __call__(self, job_id: str) -> JobView:
        url = f"{self._base_url}/api/v1/jobs/{job_id}"
        if self._client is not None:
            response = await self._client.get(url, headers=self._headers)
        else:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.get(url, headers=self._headers)
        response.raise_for_status()
        return JobView.model_validate(response.json())


class JobPoller:
    """Poll a job until it leaves ``processing``.

    Args:
        fetch: Async callable returning the current JobView for a job id.
        interval: Seconds between fetches.
        max_consecutive_errors: Transport failures tolerated in a row
            before the error is raised to the caller.
    """

    def __init__(
        self,
        fetch: JobFetcher,
        interval: float = 3.0,
        max_consecutive_errors: int = 3,
    ) -> None:
        self._fetch = fetch
        self._interval = interval
        self._max_errors = max_consecutive_errors

    @classmethod
    def from_settings(cls, fetch: JobFetcher, settings: Settings | None = None) -> JobPoller:
        settings = settings or get_settings()
        return cls(fetch, interval=settings.CLIENT_POLL_INTERVAL_SECONDS)

    async def watch(self, job_id: uuid.UUID | str) -> AsyncIterator[JobView]:
        """Yield every observed view; the last one is not ``processing``.

        Progress reported while processing never goes backwards, even if a
        stale read (cache, replica) returns a lower value.
        """
        job_key = str(job_id)
        best_progress = 0
        errors = 0

        while True:
            try:
                view = await self._fetch(job_key)
            except httpx.TransportError as exc:
                errors += 1
                logger.warning(
                    "job_poll_failed", job_id=job_key, attempt=errors, error=str(exc)
                )
                if errors >= self._max_errors:
                    raise
                await asyncio.sleep(self._interval)
                continue
            errors = 0

            if view.status != JobStatus.PROCESSING:
                yield view
                return

            if view.progress < best_progress:
                view = view.model_copy(update={"progress": best_progress})
            best_progress = view.progress
            yield view
            await asyncio.sleep(self._interval)

    async def wait_for_completion(
        self, job_id: uuid.UUID | str, timeout: float | None = None
    ) -> JobView:
        """Return the first view whose status is not ``processing``.

        Raises:
            asyncio.TimeoutError: the job is still processing after ``timeout``.
        """

        async def _last() -> JobView:
            final: JobView | None = None
            async for view in self.watch(job_id):
                final = view
            assert final is not None
            return final

        return await asyncio.wait_for(_last(), timeout=timeout)
