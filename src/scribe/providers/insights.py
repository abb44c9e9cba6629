"""InsightExtractor -- structured insights from a finished transcript.

Uses the instructor + litellm pattern for structured LLM extraction. Long
transcripts go through map-reduce: chunk at speaker boundaries, summarize
each chunk, then synthesize the final insights from the chunk summaries.

Exports:
    InsightExtractor: extract() entry point.
    ExtractedInsights: instructor response model for the final result.
    ChunkSummary: instructor response model for one transcript chunk.
"""

from __future__ import annotations

import re
from collections.abc import Callable
from typing import Any, Literal

import structlog
from pydantic import BaseModel, Field

logger = structlog.get_logger(__name__)


# ── Constants ────────────────────────────────────────────────────────────────

MAX_TOKENS_PER_CHUNK = 12_000
CHARS_PER_TOKEN = 4.0


# ── Pydantic Response Models for Instructor ──────────────────────────────────


class ExtractedInsights(BaseModel):
    """Meeting insights extracted from a transcript by the LLM."""

    title: str = Field(description="Concise meeting title")
    summary: str = Field(description="3-5 sentence summary of the meeting")
    action_items: list[str] = Field(
        default_factory=list, description="Concrete follow-ups, one per entry"
    )
    key_topics: list[str] = Field(default_factory=list, description="Main topics discussed")
    sentiment: Literal["positive", "neutral", "negative"] = Field(
        "neutral", description="Overall tone of the meeting"
    )


class ChunkSummary(BaseModel):
    """Summary of a single transcript chunk for map-reduce processing."""

    summary: str = Field(description="Summary of this transcript segment")
    action_items: list[str] = Field(
        default_factory=list, description="Action items found in this segment"
    )
    key_topics: list[str] = Field(
        default_factory=list, description="Topics discussed in this segment"
    )


# ── System Prompts ───────────────────────────────────────────────────────────

SINGLE_PASS_SYSTEM_PROMPT = (
    "You are an expert meeting assistant. Analyze the transcript and extract:\n"
    "1) A concise meeting title\n"
    "2) A 3-5 sentence summary\n"
    "3) Action items\n"
    "4) Key topics\n"
    "5) Overall sentiment (positive, neutral or negative)\n\n"
    "Note absence of items rather than making assumptions."
)

CHUNK_SUMMARY_SYSTEM_PROMPT = (
    "You are summarizing a segment of a meeting transcript. Extract a "
    "concise summary, any action items, and the topics discussed in this "
    "segment."
)

REDUCE_SYSTEM_PROMPT = (
    "You are synthesizing segment summaries from a long meeting into final "
    "meeting insights. Combine and deduplicate across segments. Extract a "
    "title, a 3-5 sentence summary covering the whole meeting, all action "
    "items (deduplicated), key topics, and overall sentiment."
)


def instructor_client() -> Any:
    import instructor
    import litellm

    return instructor.from_litellm(litellm.acompletion)


# ── InsightExtractor ─────────────────────────────────────────────────────────


class InsightExtractor:
    """Extracts title, summary, action items, topics, and sentiment.

    Args:
        client_factory: Returns an instructor client; tests inject a mock.
    """

    def __init__(self, client_factory: Callable[[], Any] | None = None) -> None:
        self._client_factory = client_factory or instructor_client

    async def extract(
        self,
        transcript: str,
        model: str,
        api_key: str | None = None,
    ) -> ExtractedInsights:
        """Run single-pass or map-reduce extraction depending on length."""
        if not transcript.strip():
            return ExtractedInsights(
                title="Empty recording",
                summary="No speech was detected in this recording.",
            )

        if _estimate_tokens(transcript) < MAX_TOKENS_PER_CHUNK:
            return await self._extract_single_pass(transcript, model, api_key)
        return await self._extract_map_reduce(transcript, model, api_key)

    async def _extract_single_pass(
        self, transcript: str, model: str, api_key: str | None
    ) -> ExtractedInsights:
        client = self._client_factory()
        return await client.chat.completions.create(
            model=model,
            response_model=ExtractedInsights,
            messages=[
                {"role": "system", "content": SINGLE_PASS_SYSTEM_PROMPT},
                {"role": "user", "content": f"Transcript:\n{transcript}"},
            ],
            api_key=api_key,
            max_tokens=2048,
            temperature=0.1,
        )

    async def _summarize_chunk(
        self, chunk_text: str, model: str, api_key: str | None
    ) -> ChunkSummary:
        client = self._client_factory()
        return await client.chat.completions.create(
            model=model,
            response_model=ChunkSummary,
            messages=[
                {"role": "system", "content": CHUNK_SUMMARY_SYSTEM_PROMPT},
                {"role": "user", "content": f"Transcript segment:\n{chunk_text}"},
            ],
            api_key=api_key,
            max_tokens=1024,
            temperature=0.1,
        )

    async def _extract_map_reduce(
        self, transcript: str, model: str, api_key: str | None
    ) -> ExtractedInsights:
        """MAP: summarize each chunk. REDUCE: synthesize final insights."""
        chunks = _chunk_transcript(transcript)
        summaries: list[ChunkSummary] = []
        for chunk in chunks:
            summaries.append(await self._summarize_chunk(chunk, model, api_key))

        logger.info("insights_map_complete", chunks=len(chunks), model=model)

        combined_text = "\n\n---\n\n".join(
            f"Segment {i + 1}:\n{s.summary}\n"
            f"Action items: {'; '.join(s.action_items) or 'none'}\n"
            f"Topics: {', '.join(s.key_topics) or 'none'}"
            for i, s in enumerate(summaries)
        )

        client = self._client_factory()
        return await client.chat.completions.create(
            model=model,
            response_model=ExtractedInsights,
            messages=[
                {"role": "system", "content": REDUCE_SYSTEM_PROMPT},
                {"role": "user", "content": f"Segment Summaries:\n{combined_text}"},
            ],
            api_key=api_key,
            max_tokens=2048,
            temperature=0.1,
        )


# ── Module-Level Helpers ─────────────────────────────────────────────────────


def _estimate_tokens(text: str) -> int:
    return int(len(text) / CHARS_PER_TOKEN)


def _chunk_transcript(transcript_text: str) -> list[str]:
    """Split transcript at speaker change boundaries near the token limit.

    Keeps the last two speaker turns of a chunk as overlap at the start of
    the next one. Falls back to line-based chunking when no ``Name: text``
    turns are present (plain ASR output usually has none).
    """
    if not transcript_text.strip():
        return []

    lines = transcript_text.split("\n")
    max_chars = int(MAX_TOKENS_PER_CHUNK * CHARS_PER_TOKEN)

    speaker_pattern = re.compile(r"^[A-Za-z][A-Za-z\s'.,-]+:\s")
    turn_starts = [i for i, line in enumerate(lines) if speaker_pattern.match(line)]

    if not turn_starts:
        return _chunk_by_chars(transcript_text, max_chars)

    chunks: list[str] = []
    current_start = 0
    overlap_turns: list[int] = []

    for turn_idx in turn_starts:
        segment_to_turn = "\n".join(lines[current_start:turn_idx])

        if len(segment_to_turn) >= max_chars and turn_idx > current_start:
            if segment_to_turn.strip():
                chunks.append(segment_to_turn)

            candidates = [t for t in overlap_turns if t > current_start]
            current_start = candidates[0] if candidates else turn_idx

        overlap_turns.append(turn_idx)
        if len(overlap_turns) > 2:
            overlap_turns.pop(0)

    remaining = "\n".join(lines[current_start:])
    if remaining.strip():
        chunks.append(remaining)

    return chunks if chunks else [transcript_text]


def _chunk_by_chars(text: str, max_chars: int) -> list[str]:
    """Chunk by character count at line boundaries; splits overlong lines at spaces."""
    chunks: list[str] = []
    current_chunk: list[str] = []
    current_len = 0

    for line in _split_long_lines(text.split("\n"), max_chars):
        line_len = len(line) + 1
        if current_len + line_len > max_chars and current_chunk:
            chunks.append("\n".join(current_chunk))
            current_chunk = []
            current_len = 0
        current_chunk.append(line)
        current_len += line_len

    if current_chunk:
        chunks.append("\n".join(current_chunk))

    return chunks


def _split_long_lines(lines: list[str], max_chars: int) -> list[str]:
    out: list[str] = []
    for line in lines:
        while len(line) > max_chars:
            cut = line.rfind(" ", 0, max_chars)
            if cut <= 0:
                cut = max_chars
            out.append(line[:cut])
            line = line[cut:].lstrip()
        out.append(line)
    return out
