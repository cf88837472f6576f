"""Tests for TtsTextBuffer phrase grouping."""

import asyncio

import pytest

from agentdesk.services.tts_text_buffer import TtsTextBuffer


def _collector():
    phrases: list[str] = []

    async def on_flush(text: str) -> None:
        phrases.append(text)

    return phrases, on_flush


class TestTtsTextBuffer:
    @pytest.mark.asyncio
    async def test_flushes_every_three_words(self):
        phrases, on_flush = _collector()
        buffer = TtsTextBuffer(on_flush, time_threshold=10)

        await buffer.push_text("Hello there my dear friend ")

        assert phrases == ["Hello there my"]
        assert buffer.has_pending_content
        await buffer.flush()
        assert phrases == ["Hello there my", "dear friend"]
        buffer.destroy()

    @pytest.mark.asyncio
    async def test_split_word_is_held_back(self):
        phrases, on_flush = _collector()
        buffer = TtsTextBuffer(on_flush, time_threshold=10)

        await buffer.push_text("Your appoint")
        await buffer.push_text("ment is set ")

        assert phrases == ["Your appointment is"]
        buffer.destroy()

    @pytest.mark.asyncio
    async def test_time_threshold_flushes_partial_phrase(self):
        phrases, on_flush = _collector()
        buffer = TtsTextBuffer(on_flush, time_threshold=0.01)

        await buffer.push_text("Hi there")
        await asyncio.sleep(0.05)

        assert phrases == ["Hi"]
        await buffer.flush()
        assert phrases == ["Hi", "there"]
        buffer.destroy()

    @pytest.mark.asyncio
    async def test_destroy_drops_pending(self):
        phrases, on_flush = _collector()
        buffer = TtsTextBuffer(on_flush, time_threshold=0.01)

        await buffer.push_text("one two ")
        buffer.destroy()
        await asyncio.sleep(0.03)
        await buffer.push_text("three four five ")

        assert phrases == []
        assert not buffer.has_pending_content
