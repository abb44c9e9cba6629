"""On-device backend: faster-whisper transcription, LLM insight extraction."""

from __future__ import annotations

from pathlib import Path

import structlog

from src.scribe.config import Settings
from src.scribe.providers.base import ProcessingResult, ProgressSink, TranscriptionBackend
from src.scribe.providers.insights import InsightExtractor
from src.scribe.providers.worker import (
    SharedModelHandle,
    TranscriptionWorker,
    WorkerMessage,
    WorkerMessageType,
)

logger = structlog.get_logger(__name__)


class LocalTranscriptionError(RuntimeError):
    """The on-device worker reported an error for a request."""


def whisper_loader(settings: Settings):
    """Build the blocking loader passed to SharedModelHandle."""

    def load():
        from faster_whisper import WhisperModel

        return WhisperModel(
            settings.LOCAL_WHISPER_MODEL,
            device=settings.LOCAL_WHISPER_DEVICE,
            compute_type=settings.LOCAL_WHISPER_COMPUTE_TYPE,
        )

    return load


class LocalWhisperBackend(TranscriptionBackend):
    """Runs transcription on this host and sends only text upstream.

    Args:
        worker: TranscriptionWorker bound to the shared model handle.
        extractor: InsightExtractor for the summary step.
        insight_model: litellm model id used for insight extraction.
    """

    provider_id = "local"

    def __init__(
        self,
        worker: TranscriptionWorker,
        extractor: InsightExtractor | None = None,
        insight_model: str = "gemini/gemini-1.5-flash",
    ) -> None:
        self._worker = worker
        self._extractor = extractor or InsightExtractor()
        self._insight_model = insight_model

    @classmethod
    def from_settings(cls, settings: Settings) -> LocalWhisperBackend:
        handle = SharedModelHandle(whisper_loader(settings), name=settings.LOCAL_WHISPER_MODEL)
        return cls(TranscriptionWorker(handle), insight_model=settings.INSIGHT_MODEL)

    @property
    def worker(self) -> TranscriptionWorker:
        return self._worker

    async def process(
        self,
        audio_path: Path,
        model_id: str,
        api_key: str | None,
        on_progress: ProgressSink | None = None,
        job_id: str | None = None,
    ) -> ProcessingResult:
        request = WorkerMessage(
            type=WorkerMessageType.TRANSCRIBE,
            job_id=job_id or audio_path.stem,
            audio_path=str(audio_path),
        )

        transcript: str | None = None
        async for reply in self._worker.request(request):
            if reply.type == WorkerMessageType.STATUS:
                if on_progress is not None and reply.progress is not None:
                    # Transcription is the first 80% of the work here.
                    await on_progress(int(reply.progress * 0.8), reply.phase or "transcribing")
            elif reply.type == WorkerMessageType.ERROR:
                raise LocalTranscriptionError(reply.message or "on-device transcription failed")
            elif reply.type == WorkerMessageType.RESULT:
                transcript = reply.transcript or ""

        if transcript is None:
            raise LocalTranscriptionError("worker closed without a result")

        if on_progress is not None:
            await on_progress(85, "analyzing")
        insights = await self._extractor.extract(transcript, self._insight_model, api_key)
        return ProcessingResult(
            transcript=transcript,
            summary=insights.summary,
            action_items=insights.action_items,
            key_topics=insights.key_topics,
            sentiment=insights.sentiment,
            model=model_id,
        )

    def cancel(self, job_id: str) -> bool:
        return self._worker.cancel(job_id)
