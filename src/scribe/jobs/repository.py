"""Job repository -- async persistence for processing jobs.

Uses the session_factory callable pattern: every method opens its own
session, so each write commits independently. All status changes go
through ``transition()``, a single ``UPDATE ... WHERE id = :id AND status
IN (:expected) RETURNING *`` that either applies atomically or matches
nothing. Callers treat "matched nothing" as having lost a race.

Any SQLAlchemy failure is re-raised as PersistenceError.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Callable, Iterable
from datetime import datetime, timezone
from typing import Any

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from src.scribe.errors import PersistenceError
from src.scribe.jobs.models import ProcessingJobModel
from src.scribe.jobs.schemas import JobStatus, ProcessingJob

logger = structlog.get_logger(__name__)

TERMINAL_STATUSES = (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)


# ── Serialization Helpers ───────────────────────────────────────────────────


def _model_to_job(model: ProcessingJobModel) -> ProcessingJob:
    """Convert ProcessingJobModel to ProcessingJob schema."""
    return ProcessingJob(
        id=model.id,
        user_id=model.user_id,
        title=model.title,
        status=JobStatus(model.status),
        audio_ref=model.audio_ref,
        duration_seconds=model.duration_seconds or 0.0,
        transcript=model.transcript,
        summary=model.summary,
        action_items=model.action_items,
        key_topics=model.key_topics,
        sentiment=model.sentiment,
        error_note=model.error_note,
        processing_model=model.processing_model,
        credits_consumed=model.credits_consumed or 0,
        credits_held=model.credits_held or 0,
        progress=model.progress or 0,
        created_at=model.created_at,
        updated_at=model.updated_at or model.created_at,
        reprocessed_at=model.reprocessed_at,
        audio_released_at=model.audio_released_at,
    )


def _as_uuid(job_id: uuid.UUID | str) -> uuid.UUID:
    return job_id if isinstance(job_id, uuid.UUID) else uuid.UUID(str(job_id))


# ── Repository ──────────────────────────────────────────────────────────────


class JobRepository:
    """Async persistence for processing jobs.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    async def create(
        self,
        user_id: str,
        audio_ref: str | None,
        duration_seconds: float,
        title: str,
    ) -> ProcessingJob:
        """Insert a new pending job."""
        try:
            async for session in self._session_factory():
                model = ProcessingJobModel(
                    user_id=user_id,
                    title=title,
                    status=JobStatus.PENDING.value,
                    audio_ref=audio_ref,
                    duration_seconds=duration_seconds,
                    credits_consumed=0,
                    credits_held=0,
                    progress=0,
                )
                session.add(model)
                await session.commit()
                await session.refresh(model)
                return _model_to_job(model)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"failed to create job: {exc}") from exc

    async def get(self, job_id: uuid.UUID | str) -> ProcessingJob | None:
        """Get a job by ID, regardless of owner."""
        try:
            async for session in self._session_factory():
                stmt = select(ProcessingJobModel).where(
                    ProcessingJobModel.id == _as_uuid(job_id)
                )
                result = await session.execute(stmt)
                model = result.scalar_one_or_none()
                return _model_to_job(model) if model is not None else None
        except SQLAlchemyError as exc:
            raise PersistenceError(f"failed to read job {job_id}: {exc}") from exc

    async def list_for_user(self, user_id: str, limit: int = 50) -> list[ProcessingJob]:
        """Most recent jobs for a user, newest first."""
        try:
            async for session in self._session_factory():
                stmt = (
                    select(ProcessingJobModel)
                    .where(ProcessingJobModel.user_id == user_id)
                    .order_by(ProcessingJobModel.created_at.desc())
                    .limit(limit)
                )
                result = await session.execute(stmt)
                return [_model_to_job(m) for m in result.scalars().all()]
        except SQLAlchemyError as exc:
            raise PersistenceError(f"failed to list jobs: {exc}") from exc

    async def transition(
        self,
        job_id: uuid.UUID | str,
        expected: Iterable[JobStatus],
        status: JobStatus,
        *,
        fields: dict[str, Any] | None = None,
        credits_delta: int = 0,
    ) -> ProcessingJob | None:
        """Conditionally move a job from one of ``expected`` to ``status``.

        Args:
            job_id: Job UUID.
            expected: Statuses the job must currently be in.
            status: New status.
            fields: Extra column values written in the same statement.
            credits_delta: Added to credits_consumed in the same statement.

        Returns:
            The updated job, or None if the job was not in an expected status.
        """
        values: dict[str, Any] = dict(fields or {})
        values["status"] = status.value
        values["updated_at"] = datetime.now(timezone.utc)
        if credits_delta:
            values["credits_consumed"] = ProcessingJobModel.credits_consumed + credits_delta

        try:
            async for session in self._session_factory():
                stmt = (
                    update(ProcessingJobModel)
                    .where(
                        ProcessingJobModel.id == _as_uuid(job_id),
                        ProcessingJobModel.status.in_([s.value for s in expected]),
                    )
                    .values(**values)
                    .returning(ProcessingJobModel)
                    .execution_options(synchronize_session=False)
                )
                result = await session.execute(stmt)
                model = result.scalar_one_or_none()
                await session.commit()
                return _model_to_job(model) if model is not None else None
        except SQLAlchemyError as exc:
            raise PersistenceError(f"failed to transition job {job_id}: {exc}") from exc

    async def update_progress(self, job_id: uuid.UUID | str, progress: int) -> None:
        """Raise the progress of a processing job; never lowers it."""
        try:
            async for session in self._session_factory():
                stmt = (
                    update(ProcessingJobModel)
                    .where(
                        ProcessingJobModel.id == _as_uuid(job_id),
                        ProcessingJobModel.status == JobStatus.PROCESSING.value,
                        ProcessingJobModel.progress < progress,
                    )
                    .values(progress=progress)
                    .execution_options(synchronize_session=False)
                )
                await session.execute(stmt)
                await session.commit()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"failed to update progress: {exc}") from exc

    async def list_audio_expired(self, before: datetime, limit: int = 500) -> list[ProcessingJob]:
        """Terminal jobs still holding audio whose last update precedes ``before``."""
        try:
            async for session in self._session_factory():
                stmt = (
                    select(ProcessingJobModel)
                    .where(
                        ProcessingJobModel.audio_ref.is_not(None),
                        ProcessingJobModel.status.in_([s.value for s in TERMINAL_STATUSES]),
                        ProcessingJobModel.updated_at < before,
                    )
                    .order_by(ProcessingJobModel.updated_at)
                    .limit(limit)
                )
                result = await session.execute(stmt)
                return [_model_to_job(m) for m in result.scalars().all()]
        except SQLAlchemyError as exc:
            raise PersistenceError(f"failed to list expired audio: {exc}") from exc

    async def clear_audio(self, job_id: uuid.UUID | str, released_at: datetime) -> bool:
        """Detach the audio artifact from a terminal job.

        Conditional on the job not being in processing, so a sweep can never
        pull audio out from under a running reprocess.
        """
        try:
            async for session in self._session_factory():
                stmt = (
                    update(ProcessingJobModel)
                    .where(
                        ProcessingJobModel.id == _as_uuid(job_id),
                        ProcessingJobModel.status.in_([s.value for s in TERMINAL_STATUSES]),
                    )
                    .values(audio_ref=None, audio_released_at=released_at)
                    .execution_options(synchronize_session=False)
                )
                result = await session.execute(stmt)
                await session.commit()
                return result.rowcount > 0
        except SQLAlchemyError as exc:
            raise PersistenceError(f"failed to release audio: {exc}") from exc
