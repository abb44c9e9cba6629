"""Audio retention sweep.

Terminal jobs keep their audio for AUDIO_RETENTION_DAYS so they can be
reprocessed. After that the artifact is deleted and the job's audio_ref
cleared; reprocessing such a job fails with "No audio file to reprocess".
"""

from __future__ import annotations

from datetime import datetime, timedelta

import structlog

from src.scribe.audio.storage import AudioStore
from src.scribe.jobs.repository import JobRepository

logger = structlog.get_logger(__name__)


class AudioRetention:
    def __init__(self, jobs: JobRepository, store: AudioStore, retention_days: int) -> None:
        self._jobs = jobs
        self._store = store
        self._retention = timedelta(days=retention_days)

    async def release_expired(self, now: datetime) -> int:
        """Release artifacts of terminal jobs idle longer than the retention period.

        The job row is detached first; a job that moved back into
        processing in the meantime keeps its audio.
        """
        cutoff = now - self._retention
        released = 0
        for job in await self._jobs.list_audio_expired(cutoff):
            if not await self._jobs.clear_audio(job.id, now):
                continue
            await self._store.release(job.audio_ref)
            released += 1

        logger.info("audio_retention_sweep", released=released, cutoff=cutoff.isoformat())
        return released
