"""Shared test doubles and fixtures.

Provides:
- InMemoryJobRepository / InMemoryBillingRepository mirroring the SQLAlchemy
  repositories' interfaces (including the conditional-transition contract)
- FakeRedis implementing the handful of commands the cache and rate limiter use
- FakeBackend, a scriptable TranscriptionBackend
- A fully wired ProcessingOrchestrator over those doubles
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Iterable
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio

from src.scribe.audio.storage import AudioStore
from src.scribe.billing.ledger import CreditLedger
from src.scribe.billing.schemas import CreditEntry, EntryType, UserAccount, UserTier
from src.scribe.config import Settings
from src.scribe.core.redis import ViewCache
from src.scribe.jobs.orchestrator import ProcessingOrchestrator
from src.scribe.jobs.repository import TERMINAL_STATUSES
from src.scribe.jobs.schemas import JobStatus, ProcessingJob
from src.scribe.providers.base import ProcessingResult, TranscriptionBackend
from src.scribe.providers.router import ProviderRouter


# ── In-Memory Repositories ───────────────────────────────────────────────────


class InMemoryJobRepository:
    """In-memory JobRepository for testing without a database.

    ``before_transition`` lets a test run code (e.g. a concurrent cancel)
    right before a transition into the given target status is applied.
    """

    def __init__(self) -> None:
        self.jobs: dict[uuid.UUID, ProcessingJob] = {}
        self.transitions: list[tuple[JobStatus, JobStatus]] = []
        self.progress_writes: list[int] = []
        self.before_transition: dict[JobStatus, Any] = {}

    async def create(
        self,
        user_id: str,
        audio_ref: str | None,
        duration_seconds: float,
        title: str,
    ) -> ProcessingJob:
        now = datetime.now(timezone.utc)
        job = ProcessingJob(
            user_id=user_id,
            title=title,
            audio_ref=audio_ref,
            duration_seconds=duration_seconds,
            created_at=now,
            updated_at=now,
        )
        self.jobs[job.id] = job
        return job

    async def get(self, job_id: uuid.UUID | str) -> ProcessingJob | None:
        key = job_id if isinstance(job_id, uuid.UUID) else uuid.UUID(str(job_id))
        return self.jobs.get(key)

    async def list_for_user(self, user_id: str, limit: int = 50) -> list[ProcessingJob]:
        jobs = [j for j in self.jobs.values() if j.user_id == user_id]
        return sorted(jobs, key=lambda j: j.created_at, reverse=True)[:limit]

    async def transition(
        self,
        job_id: uuid.UUID | str,
        expected: Iterable[JobStatus],
        status: JobStatus,
        *,
        fields: dict[str, Any] | None = None,
        credits_delta: int = 0,
    ) -> ProcessingJob | None:
        hook = self.before_transition.pop(status, None)
        if hook is not None:
            await hook()

        job = await self.get(job_id)
        if job is None or job.status not in list(expected):
            return None
        update = dict(fields or {})
        update["status"] = status
        update["updated_at"] = datetime.now(timezone.utc)
        update["credits_consumed"] = job.credits_consumed + credits_delta
        updated = job.model_copy(update=update)
        self.jobs[updated.id] = updated
        self.transitions.append((job.status, status))
        return updated

    async def update_progress(self, job_id: uuid.UUID | str, progress: int) -> None:
        job = await self.get(job_id)
        if job is None or job.status != JobStatus.PROCESSING or job.progress >= progress:
            return
        self.jobs[job.id] = job.model_copy(update={"progress": progress})
        self.progress_writes.append(progress)

    async def list_audio_expired(self, before: datetime, limit: int = 500) -> list[ProcessingJob]:
        return [
            j
            for j in self.jobs.values()
            if j.audio_ref is not None
            and j.status in TERMINAL_STATUSES
            and j.updated_at < before
        ][:limit]

    async def clear_audio(self, job_id: uuid.UUID | str, released_at: datetime) -> bool:
        job = await self.get(job_id)
        if job is None or job.status not in TERMINAL_STATUSES:
            return False
        self.jobs[job.id] = job.model_copy(
            update={"audio_ref": None, "audio_released_at": released_at}
        )
        return True

    # Test helper
    def put(self, job: ProcessingJob) -> ProcessingJob:
        self.jobs[job.id] = job
        return job


class InMemoryBillingRepository:
    """In-memory BillingRepository for testing without a database."""

    def __init__(self) -> None:
        self.accounts: dict[str, UserAccount] = {}
        self.entries: list[CreditEntry] = []
        self._clock = datetime(2026, 1, 1, tzinfo=timezone.utc)

    def _tick(self) -> datetime:
        self._clock += timedelta(seconds=1)
        return self._clock

    async def get_account(self, user_id: str) -> UserAccount:
        return self.accounts.get(user_id) or UserAccount(user_id=user_id)

    async def set_tier(self, user_id: str, tier: UserTier, reset_at: datetime | None) -> None:
        account = await self.get_account(user_id)
        self.accounts[user_id] = account.model_copy(
            update={"tier": tier, "credits_reset_at": reset_at}
        )

    async def balance(self, user_id: str) -> int:
        return sum(e.amount for e in self.entries if e.user_id == user_id)

    async def recent_entries(self, user_id: str, limit: int = 20) -> list[CreditEntry]:
        mine = [e for e in self.entries if e.user_id == user_id]
        return sorted(mine, key=lambda e: e.created_at, reverse=True)[:limit]

    async def append(
        self,
        user_id: str,
        amount: int,
        entry_type: EntryType,
        description: str,
        job_id: uuid.UUID | None = None,
    ) -> CreditEntry:
        entry = CreditEntry(
            user_id=user_id,
            amount=amount,
            type=entry_type,
            description=description,
            job_id=job_id,
            created_at=self._tick(),
        )
        self.entries.append(entry)
        return entry

    async def debit_if_sufficient(
        self,
        user_id: str,
        amount: int,
        description: str,
        job_id: uuid.UUID | None = None,
    ) -> tuple[CreditEntry | None, int]:
        current = await self.balance(user_id)
        if current < amount:
            return None, current
        entry = await self.append(user_id, -amount, EntryType.USAGE, description, job_id)
        return entry, current - amount

    async def grant_window(
        self,
        user_id: str,
        expected_reset_at: datetime | None,
        next_reset_at: datetime,
        amount: int,
        description: str,
    ) -> CreditEntry | None:
        account = await self.get_account(user_id)
        if account.credits_reset_at != expected_reset_at:
            return None
        self.accounts[user_id] = account.model_copy(update={"credits_reset_at": next_reset_at})
        return await self.append(user_id, amount, EntryType.BONUS, description)

    # Test helpers
    def set_account(self, account: UserAccount) -> None:
        self.accounts[account.user_id] = account

    def usage_entries(self, user_id: str) -> list[CreditEntry]:
        return [e for e in self.entries if e.user_id == user_id and e.type == EntryType.USAGE]

    def adjustment_entries(self, user_id: str) -> list[CreditEntry]:
        return [
            e for e in self.entries if e.user_id == user_id and e.type == EntryType.ADJUSTMENT
        ]


# ── Fake Redis ───────────────────────────────────────────────────────────────


class FakeRedis:
    """The subset of redis.asyncio.Redis used by ViewCache and the rate limiter."""

    def __init__(self) -> None:
        self.store: dict[str, str] = {}
        self.expirations: dict[str, int] = {}
        self.published: list[tuple[str, str]] = []

    async def get(self, key: str) -> str | None:
        return self.store.get(key)

    async def set(self, key: str, value: str, ex: int | None = None) -> bool:
        self.store[key] = value
        if ex is not None:
            self.expirations[key] = ex
        return True

    async def incr(self, key: str) -> int:
        value = int(self.store.get(key, 0)) + 1
        self.store[key] = str(value)
        return value

    async def expire(self, key: str, seconds: int) -> bool:
        self.expirations[key] = seconds
        return True

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self.store.pop(key, None) is not None:
                removed += 1
        return removed

    async def publish(self, channel: str, message: str) -> int:
        self.published.append((channel, message))
        return 0

    async def ping(self) -> bool:
        return True


# ── Fake Backend ─────────────────────────────────────────────────────────────


class FakeBackend(TranscriptionBackend):
    """Scriptable backend.

    Set ``error`` to make process() raise, ``gate`` to make it wait until
    the event is set, and ``progress`` for the values it reports.
    """

    def __init__(self, provider_id: str, model: str | None = None) -> None:
        self.provider_id = provider_id
        self.model = model
        self.calls: list[dict[str, Any]] = []
        self.cancelled: list[str] = []
        self.error: Exception | None = None
        self.gate: asyncio.Event | None = None
        self.started = asyncio.Event()
        self.progress: list[int] = [10, 50, 90]
        self.transcript = "Alice: We ship on Friday.\nBob: I will write the release notes."

    async def process(
        self,
        audio_path: Path,
        model_id: str,
        api_key: str | None,
        on_progress=None,
        job_id: str | None = None,
    ) -> ProcessingResult:
        self.calls.append(
            {"audio_path": audio_path, "model_id": model_id, "api_key": api_key, "job_id": job_id}
        )
        self.started.set()
        if on_progress is not None:
            for value in self.progress:
                await on_progress(value, "transcribing")
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return ProcessingResult(
            transcript=self.transcript,
            summary=f"Summary by {model_id}",
            action_items=["Bob: write the release notes"],
            key_topics=["release"],
            sentiment="positive",
            model=self.model or model_id,
        )

    def cancel(self, job_id: str) -> bool:
        self.cancelled.append(job_id)
        return True


# ── Fixtures ─────────────────────────────────────────────────────────────────


USER_ID = "user-1"
OTHER_USER_ID = "user-2"


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        GEMINI_API_KEY="sys-gemini",
        OPENAI_API_KEY="sys-openai",
        GROQ_API_KEY="sys-groq",
        AUDIO_STORAGE_DIR=str(tmp_path / "audio"),
        PRO_MONTHLY_CREDITS=1200,
        CREDIT_RESET_DAYS=30,
        RATE_LIMIT_RPM=10,
        RATE_LIMIT_RPD=100,
        SENTRY_DSN="",
    )


@pytest.fixture
def job_repo() -> InMemoryJobRepository:
    return InMemoryJobRepository()


@pytest.fixture
def billing_repo() -> InMemoryBillingRepository:
    return InMemoryBillingRepository()


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def audio_store(settings) -> AudioStore:
    return AudioStore(settings.AUDIO_STORAGE_DIR)


@pytest.fixture
def ledger(billing_repo, settings) -> CreditLedger:
    return CreditLedger(billing_repo, settings)


@pytest.fixture
def backends() -> dict[str, FakeBackend]:
    return {
        "gemini": FakeBackend("gemini"),
        "openai": FakeBackend("openai"),
        "groq": FakeBackend("groq"),
        "local": FakeBackend("local"),
    }


@pytest.fixture
def provider_router(backends, billing_repo, audio_store, settings) -> ProviderRouter:
    return ProviderRouter(backends, billing_repo, audio_store, settings)


@pytest.fixture
def orchestrator(
    job_repo, ledger, provider_router, audio_store, billing_repo, fake_redis
) -> ProcessingOrchestrator:
    return ProcessingOrchestrator(
        jobs=job_repo,
        ledger=ledger,
        router=provider_router,
        store=audio_store,
        accounts=billing_repo,
        view_cache=ViewCache(fake_redis),
    )


@pytest_asyncio.fixture
async def stored_audio(audio_store, tmp_path) -> str:
    """An audio artifact in the store; returns its ref."""
    source = tmp_path / "meeting.mp3"
    source.write_bytes(b"ID3" + b"\x00" * 2048)
    return await audio_store.put(source)


@pytest_asyncio.fixture
async def pro_user(billing_repo, ledger) -> str:
    """A pro user with the 1200-credit allowance and no own keys."""
    await ledger.upgrade_to_pro(USER_ID, datetime.now(timezone.utc))
    return USER_ID
