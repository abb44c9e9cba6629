"""Pydantic v2 schemas for processing jobs and processing outcomes."""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from src.scribe.errors import ScribeError


# ── Enums ────────────────────────────────────────────────────────────────────


class JobStatus(str, Enum):
    """Lifecycle status of a processing job."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)


# ── Job ──────────────────────────────────────────────────────────────────────

# Fields a successful run writes and a failed reprocess must put back.
INSIGHT_FIELDS = ("transcript", "summary", "action_items", "key_topics", "sentiment")


class ProcessingJob(BaseModel):
    """One audio-to-insight work unit and its persisted state."""

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    user_id: str
    title: str = "Untitled recording"
    status: JobStatus = JobStatus.PENDING
    audio_ref: str | None = None
    duration_seconds: float = 0.0
    transcript: str | None = None
    summary: str | None = None
    action_items: list[str] | None = None
    key_topics: list[str] | None = None
    sentiment: str | None = None
    error_note: str | None = None
    processing_model: str | None = None
    credits_consumed: int = 0
    credits_held: int = 0
    progress: int = 0
    created_at: datetime | None = None
    updated_at: datetime | None = None
    reprocessed_at: datetime | None = None
    audio_released_at: datetime | None = None


class JobSnapshot(BaseModel):
    """Frozen copy of a job's result fields taken before a reprocess.

    Restored in a single conditional write when the reprocess fails, so a
    partially written run can never leave the previous result half-replaced.
    """

    model_config = ConfigDict(frozen=True)

    status: JobStatus
    transcript: str | None = None
    summary: str | None = None
    action_items: tuple[str, ...] | None = None
    key_topics: tuple[str, ...] | None = None
    sentiment: str | None = None
    error_note: str | None = None
    processing_model: str | None = None
    reprocessed_at: datetime | None = None
    progress: int = 0

    @classmethod
    def of(cls, job: ProcessingJob) -> JobSnapshot:
        return cls(
            status=job.status,
            transcript=job.transcript,
            summary=job.summary,
            action_items=tuple(job.action_items) if job.action_items is not None else None,
            key_topics=tuple(job.key_topics) if job.key_topics is not None else None,
            sentiment=job.sentiment,
            error_note=job.error_note,
            processing_model=job.processing_model,
            reprocessed_at=job.reprocessed_at,
            progress=job.progress,
        )

    def restore_fields(self) -> dict[str, Any]:
        """Column values (minus status) that put the job back as it was."""
        return {
            "transcript": self.transcript,
            "summary": self.summary,
            "action_items": list(self.action_items) if self.action_items is not None else None,
            "key_topics": list(self.key_topics) if self.key_topics is not None else None,
            "sentiment": self.sentiment,
            "error_note": self.error_note,
            "processing_model": self.processing_model,
            "reprocessed_at": self.reprocessed_at,
            "progress": self.progress,
        }


# ── Outcomes ─────────────────────────────────────────────────────────────────


class ProcessingOutcome(BaseModel):
    """Structured result of submit / reprocess / cancel.

    Failures carry typed metadata (reset time, upgrade prompt, balance and
    required credits) so consumers can render actionable guidance.
    """

    success: bool
    job_id: uuid.UUID | None = None
    status: JobStatus | None = None
    transcript: str | None = None
    summary: str | None = None
    action_items: list[str] | None = None
    key_topics: list[str] | None = None
    sentiment: str | None = None
    error: str | None = None
    error_code: str | None = None
    reset_at: datetime | None = None
    upgrade_prompt: bool | None = None
    balance: int | None = None
    required: int | None = None
    credits_charged: int | None = None

    @classmethod
    def from_job(cls, job: ProcessingJob, credits_charged: int | None = None) -> ProcessingOutcome:
        return cls(
            success=True,
            job_id=job.id,
            status=job.status,
            transcript=job.transcript,
            summary=job.summary,
            action_items=job.action_items,
            key_topics=job.key_topics,
            sentiment=job.sentiment,
            credits_charged=credits_charged,
        )

    @classmethod
    def failure(
        cls,
        error: ScribeError,
        job_id: uuid.UUID | None = None,
        status: JobStatus | None = None,
    ) -> ProcessingOutcome:
        return cls(success=False, job_id=job_id, status=status, **error.to_payload())


# ── API Schemas ──────────────────────────────────────────────────────────────


class ProcessRequest(BaseModel):
    """Body for POST /jobs/{id}/process and /jobs/{id}/reprocess."""

    model_id: str = Field(min_length=1, max_length=100)
    background: bool = False


class CancelResponse(BaseModel):
    success: bool
    error: str | None = None
    error_code: str | None = None


class JobView(BaseModel):
    """Owner-facing view of a job, returned by the polling endpoint."""

    id: uuid.UUID
    title: str
    status: JobStatus
    progress: int
    duration_seconds: float
    transcript: str | None = None
    summary: str | None = None
    action_items: list[str] | None = None
    key_topics: list[str] | None = None
    sentiment: str | None = None
    error_note: str | None = None
    processing_model: str | None = None
    credits_consumed: int = 0
    has_audio: bool = False
    created_at: datetime | None = None
    updated_at: datetime | None = None
    reprocessed_at: datetime | None = None

    @classmethod
    def of(cls, job: ProcessingJob) -> JobView:
        return cls(
            **job.model_dump(
                include={
                    "id", "title", "status", "progress", "duration_seconds",
                    "transcript", "summary", "action_items", "key_topics",
                    "sentiment", "error_note", "processing_model",
                    "credits_consumed", "created_at", "updated_at",
                    "reprocessed_at",
                }
            ),
            has_audio=job.audio_ref is not None,
        )
