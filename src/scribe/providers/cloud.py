"""Cloud backends reached through litellm.

- GeminiBackend: one multimodal call; the audio goes inline and the model
  returns transcript and insights together (instructor response model).
- WhisperApiBackend: two steps, used for OpenAI and Groq. Whisper
  transcription via ``litellm.atranscription``, then InsightExtractor on
  the provider's chat model.

All upstream calls retry transient connection failures with tenacity.
Rate-limit responses are never retried here; they propagate to the router.
"""

from __future__ import annotations

import asyncio
import base64
import mimetypes
from pathlib import Path
from typing import Literal

import litellm
import structlog
from pydantic import BaseModel, Field
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from src.scribe.providers.base import ProcessingResult, ProgressSink, TranscriptionBackend
from src.scribe.providers.insights import InsightExtractor, instructor_client

logger = structlog.get_logger(__name__)

TRANSIENT_ERRORS = (
    litellm.APIConnectionError,
    litellm.Timeout,
    litellm.ServiceUnavailableError,
    litellm.InternalServerError,
)

_upstream_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception_type(TRANSIENT_ERRORS),
    reraise=True,
)

DEFAULT_GEMINI_MODEL = "gemini-1.5-flash"

GEMINI_SYSTEM_PROMPT = (
    "You are an expert meeting assistant. Transcribe the attached recording "
    "verbatim, then analyze it. Provide a concise title, a 3-5 sentence "
    "summary, action items, key topics, and the overall sentiment "
    "(positive, neutral or negative)."
)


class AudioAnalysis(BaseModel):
    """Transcript plus insights returned by a multimodal model."""

    transcript: str = Field(description="Verbatim transcript of the recording")
    title: str = Field(description="Concise meeting title")
    summary: str = Field(description="3-5 sentence summary")
    action_items: list[str] = Field(default_factory=list)
    key_topics: list[str] = Field(default_factory=list)
    sentiment: Literal["positive", "neutral", "negative"] = "neutral"


def _audio_data_url(audio_path: Path) -> str:
    mime = mimetypes.guess_type(audio_path.name)[0] or "audio/mpeg"
    encoded = base64.b64encode(audio_path.read_bytes()).decode("ascii")
    return f"data:{mime};base64,{encoded}"


# ── Gemini ───────────────────────────────────────────────────────────────────


class GeminiBackend(TranscriptionBackend):
    """Baseline provider: single multimodal request per recording."""

    provider_id = "gemini"

    def __init__(self, client_factory=None, timeout: int = 300) -> None:
        self._client_factory = client_factory or instructor_client
        self._timeout = timeout

    @staticmethod
    def litellm_model(model_id: str) -> str:
        name = model_id if model_id.startswith("gemini-") else DEFAULT_GEMINI_MODEL
        return f"gemini/{name}"

    async def process(
        self,
        audio_path: Path,
        model_id: str,
        api_key: str | None,
        on_progress: ProgressSink | None = None,
        job_id: str | None = None,
    ) -> ProcessingResult:
        model = self.litellm_model(model_id)
        if on_progress is not None:
            await on_progress(10, "uploading")
        audio_url = await asyncio.to_thread(_audio_data_url, audio_path)
        analysis, completion = await self._analyze(audio_url, model, api_key)
        usage = getattr(completion, "usage", None)
        return ProcessingResult(
            transcript=analysis.transcript,
            summary=analysis.summary,
            action_items=analysis.action_items,
            key_topics=analysis.key_topics,
            sentiment=analysis.sentiment,
            model=model.split("/", 1)[1],
            usage={
                "prompt_tokens": getattr(usage, "prompt_tokens", 0) or 0,
                "completion_tokens": getattr(usage, "completion_tokens", 0) or 0,
            },
        )

    @_upstream_retry
    async def _analyze(self, audio_url: str, model: str, api_key: str | None):
        client = self._client_factory()
        return await client.chat.completions.create_with_completion(
            model=model,
            response_model=AudioAnalysis,
            messages=[
                {"role": "system", "content": GEMINI_SYSTEM_PROMPT},
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": "Meeting recording:"},
                        {"type": "file", "file": {"file_data": audio_url}},
                    ],
                },
            ],
            api_key=api_key,
            timeout=self._timeout,
            temperature=0.1,
        )


# ── Whisper-API providers (OpenAI, Groq) ─────────────────────────────────────


class WhisperApiBackend(TranscriptionBackend):
    """Whisper transcription followed by chat-model insight extraction.

    Args:
        provider_id: "openai" or "groq"; also the litellm route prefix.
        transcription_model: Default whisper model for this provider.
        analysis_model: Default chat model for insight extraction.
        extractor: InsightExtractor instance.
    """

    def __init__(
        self,
        provider_id: str,
        transcription_model: str,
        analysis_model: str,
        extractor: InsightExtractor | None = None,
        timeout: int = 300,
    ) -> None:
        self.provider_id = provider_id
        self._transcription_model = transcription_model
        self._analysis_model = analysis_model
        self._extractor = extractor or InsightExtractor()
        self._timeout = timeout

    def split_model(self, model_id: str) -> tuple[str, str]:
        """Pick (whisper model, chat model) for a requested model id.

        A whisper id selects the transcription model, any other provider
        model id selects the analysis model; the other half uses defaults.
        """
        if model_id.startswith("whisper"):
            return model_id, self._analysis_model
        if model_id in (self.provider_id, "grok") or model_id.startswith("grok"):
            return self._transcription_model, self._analysis_model
        return self._transcription_model, model_id

    async def process(
        self,
        audio_path: Path,
        model_id: str,
        api_key: str | None,
        on_progress: ProgressSink | None = None,
        job_id: str | None = None,
    ) -> ProcessingResult:
        whisper_model, chat_model = self.split_model(model_id)

        if on_progress is not None:
            await on_progress(10, "transcribing")
        transcript = await self._transcribe(audio_path, whisper_model, api_key)

        if on_progress is not None:
            await on_progress(70, "analyzing")
        insights = await self._extractor.extract(
            transcript, f"{self.provider_id}/{chat_model}", api_key
        )

        logger.info(
            "whisper_api_processed",
            provider=self.provider_id,
            whisper_model=whisper_model,
            chat_model=chat_model,
            transcript_chars=len(transcript),
        )
        return ProcessingResult(
            transcript=transcript,
            summary=insights.summary,
            action_items=insights.action_items,
            key_topics=insights.key_topics,
            sentiment=insights.sentiment,
            model=chat_model,
        )

    @_upstream_retry
    async def _transcribe(self, audio_path: Path, whisper_model: str, api_key: str | None) -> str:
        with audio_path.open("rb") as audio_file:
            response = await litellm.atranscription(
                model=f"{self.provider_id}/{whisper_model}",
                file=audio_file,
                api_key=api_key,
                timeout=self._timeout,
            )
        return (getattr(response, "text", None) or "").strip()
