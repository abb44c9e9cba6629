"""Shared provider types and the backend interface."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from pathlib import Path

from pydantic import BaseModel, Field

# (percent, phase) -> awaitable
ProgressSink = Callable[[int, str], Awaitable[None]]


class ProcessingResult(BaseModel):
    """Uniform output of every backend."""

    transcript: str
    summary: str
    action_items: list[str] = Field(default_factory=list)
    key_topics: list[str] = Field(default_factory=list)
    sentiment: str = "neutral"
    model: str
    usage: dict[str, int] = Field(default_factory=dict)


class ProviderDescriptor(BaseModel):
    id: str
    name: str
    connected: bool
    cost_per_minute: int
    description: str = ""


class ProviderStatus(BaseModel):
    providers: list[ProviderDescriptor]
    default_provider: str
    tier: str
    balance: int | None = None


class RouteDecision(BaseModel):
    """Which backend runs a request and who pays for it."""

    provider_id: str
    model_id: str
    api_key: str | None
    billable: bool
    cost_per_minute: int


class TranscriptionBackend(ABC):
    """A transcription + insight backend.

    Implementations raise upstream exceptions unchanged; the router maps
    them to RateLimitError / ProviderError.
    """

    provider_id: str = ""

    @abstractmethod
    async def process(
        self,
        audio_path: Path,
        model_id: str,
        api_key: str | None,
        on_progress: ProgressSink | None = None,
        job_id: str | None = None,
    ) -> ProcessingResult: ...
