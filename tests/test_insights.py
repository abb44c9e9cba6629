"""Tests for InsightExtractor with a mocked instructor client."""

from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest

from src.scribe.providers.insights import (
    CHARS_PER_TOKEN,
    MAX_TOKENS_PER_CHUNK,
    ChunkSummary,
    ExtractedInsights,
    InsightExtractor,
    _chunk_by_chars,
    _chunk_transcript,
)

MAX_CHARS = int(MAX_TOKENS_PER_CHUNK * CHARS_PER_TOKEN)


def _mock_client():
    async def create(**kwargs):
        if kwargs["response_model"] is ChunkSummary:
            return ChunkSummary(summary="segment summary", action_items=["a"], key_topics=["t"])
        return ExtractedInsights(
            title="Planning",
            summary="The team planned the quarter.",
            action_items=["Alice: draft the roadmap"],
            key_topics=["roadmap"],
            sentiment="positive",
        )

    create_mock = AsyncMock(side_effect=create)
    client = SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=create_mock)))
    return client, create_mock


def _long_meeting(turns: int = 60) -> str:
    names = ["Alice", "Bob", "Carol"]
    return "\n".join(
        f"{names[i % 3]}: turn {i} " + "discussion " * 90 for i in range(turns)
    )


class TestExtract:
    @pytest.mark.asyncio
    async def test_empty_transcript_skips_llm(self):
        client, create = _mock_client()
        extractor = InsightExtractor(client_factory=lambda: client)

        insights = await extractor.extract("   \n", "gemini/gemini-1.5-flash")

        assert insights.title == "Empty recording"
        assert insights.action_items == []
        create.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_short_transcript_single_pass(self):
        client, create = _mock_client()
        extractor = InsightExtractor(client_factory=lambda: client)

        insights = await extractor.extract(
            "Alice: let's plan Q3.\nBob: agreed.", "groq/llama-3.3-70b-versatile", "key-1"
        )

        assert insights.sentiment == "positive"
        create.assert_awaited_once()
        kwargs = create.await_args.kwargs
        assert kwargs["model"] == "groq/llama-3.3-70b-versatile"
        assert kwargs["api_key"] == "key-1"
        assert kwargs["response_model"] is ExtractedInsights
        assert "Alice: let's plan Q3." in kwargs["messages"][1]["content"]

    @pytest.mark.asyncio
    async def test_long_transcript_map_reduce(self):
        client, create = _mock_client()
        extractor = InsightExtractor(client_factory=lambda: client)
        transcript = _long_meeting()
        chunks = _chunk_transcript(transcript)

        insights = await extractor.extract(transcript, "gemini/gemini-1.5-pro")

        assert insights.title == "Planning"
        assert len(chunks) >= 2
        assert create.await_count == len(chunks) + 1
        models = [c.kwargs["response_model"] for c in create.await_args_list]
        assert models[:-1] == [ChunkSummary] * len(chunks)
        assert models[-1] is ExtractedInsights
        reduce_prompt = create.await_args_list[-1].kwargs["messages"][1]["content"]
        assert "Segment 1:" in reduce_prompt
        assert f"Segment {len(chunks)}:" in reduce_prompt


class TestChunking:
    def test_speaker_chunks_overlap_by_two_turns(self):
        chunks = _chunk_transcript(_long_meeting())

        first_lines = chunks[0].split("\n")
        second_lines = chunks[1].split("\n")
        assert second_lines[:2] == first_lines[-2:]
        assert all(line.split(":")[0] in {"Alice", "Bob", "Carol"} for line in second_lines)

    def test_short_transcript_is_one_chunk(self):
        text = "Alice: hi\nBob: hello"
        assert _chunk_transcript(text) == [text]

    def test_plain_text_falls_back_to_line_chunks(self):
        line = "no speaker labels in this line " * 10
        text = "\n".join([line] * 400)

        chunks = _chunk_transcript(text)

        assert len(chunks) >= 2
        assert all(len(c) <= MAX_CHARS for c in chunks)

    def test_overlong_line_is_split_at_spaces(self):
        text = "word " * 100

        chunks = _chunk_by_chars(text, 60)

        assert len(chunks) > 1
        assert all(len(c) <= 60 for c in chunks)
        assert " ".join(c.strip() for c in chunks).split() == text.split()
