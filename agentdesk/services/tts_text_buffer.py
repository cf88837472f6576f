"""Word grouping for streamed text-to-speech.

Assistant text arrives in arbitrary fragments. Speech synthesis works best
on short phrases, so fragments are regrouped into runs of a few words and
flushed after ``WORD_THRESHOLD`` words or ``TIME_THRESHOLD`` seconds,
whichever comes first. A word split across two fragments is held back until
its end is seen.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)

WORD_THRESHOLD = 3
TIME_THRESHOLD = 0.05


class TtsTextBuffer:
    """Regroup streamed text into short phrases for speech synthesis.

    Args:
        on_flush: Coroutine called with each phrase.
        word_threshold: Words per phrase before an immediate flush.
        time_threshold: Seconds a partial phrase may wait.
    """

    def __init__(
        self,
        on_flush: Callable[[str], Awaitable[None]],
        word_threshold: int = WORD_THRESHOLD,
        time_threshold: float = TIME_THRESHOLD,
    ) -> None:
        self._on_flush = on_flush
        self._word_threshold = word_threshold
        self._time_threshold = time_threshold
        self._words: list[str] = []
        self._partial = ""
        self._timer: asyncio.Task[None] | None = None
        self._destroyed = False

    @property
    def has_pending_content(self) -> bool:
        return bool(self._words or self._partial.strip())

    async def push_text(self, text: str) -> None:
        """Add a text fragment, flushing whole phrases as they complete."""
        if self._destroyed or not text:
            return

        combined = self._partial + text
        pieces = combined.split()
        if combined and not combined[-1].isspace() and pieces:
            self._partial = pieces.pop()
        else:
            self._partial = ""

        for word in pieces:
            self._words.append(word)
            if len(self._words) >= self._word_threshold:
                await self._flush_words()

        if self._words:
            self._start_timer()

    async def flush(self) -> None:
        """Emit everything pending, including a trailing partial word."""
        if self._partial.strip():
            self._words.append(self._partial.strip())
        self._partial = ""
        await self._flush_words()

    def destroy(self) -> None:
        """Drop pending text and cancel the timer."""
        self._destroyed = True
        self._words = []
        self._partial = ""
        self._cancel_timer()

    def _start_timer(self) -> None:
        if self._timer is None or self._timer.done():
            self._timer = asyncio.create_task(self._flush_later())

    def _cancel_timer(self) -> None:
        if self._timer is not None and not self._timer.done():
            if self._timer is not asyncio.current_task():
                self._timer.cancel()
        self._timer = None

    async def _flush_later(self) -> None:
        await asyncio.sleep(self._time_threshold)
        if not self._destroyed and self._words:
            self._timer = None
            await self._flush_words()

    async def _flush_words(self) -> None:
        self._cancel_timer()
        if not self._words:
            return
        text = " ".join(self._words).strip()
        self._words = []
        if text:
            await self._on_flush(text)
