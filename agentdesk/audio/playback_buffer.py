"""Client-side playback buffer for streamed TTS audio.

AudioPlaybackBuffer turns a stream of binary audio chunks into continuous
playback on a PlaybackSink (the platform audio element). Chunks may repeat
when the upstream producer retries, so consecutive duplicates beyond
MAX_DUPLICATE_COUNT are dropped before they reach the sink.

Two strategies:

* Streaming append, when the sink supports appending to a live stream.
  Chunks queue (bounded, drop-oldest) and are appended one at a time; the
  sink calls ``on_append_complete()`` when an append or trim finishes.
* Segment fallback otherwise. Chunks accumulate into segments of at least
  FALLBACK_MIN_SEGMENT_BYTES that play strictly FIFO; the sink calls
  ``on_segment_ended()`` when a segment finishes.

Errors are reported through ``on_error`` and never raised to the caller.

Example:
    buffer = AudioPlaybackBuffer(sink, on_error=log_error)
    buffer.add_chunk(chunk_bytes)
"""

import asyncio
import logging
from collections import deque
from collections.abc import Callable
from typing import Protocol

logger = logging.getLogger(__name__)

BUFFER_CAPACITY = 50
FALLBACK_MIN_SEGMENT_BYTES = 4000
TRIM_WINDOW_SECONDS = 5.0
APPEND_RETRY_DELAY = 0.01
MAX_DUPLICATE_COUNT = 2
HASH_PREFIX_BYTES = 100


class PlaybackSink(Protocol):
    """Platform audio output driven by the buffer."""

    supports_streaming_append: bool

    def append(self, data: bytes) -> None: ...

    def remove(self, start: float, end: float) -> None: ...

    def play_segment(self, data: bytes) -> None: ...

    def stop(self) -> None: ...

    def set_volume(self, volume: float) -> None: ...

    @property
    def current_time(self) -> float: ...

    @property
    def buffered_start(self) -> float | None: ...

    @property
    def buffered_end(self) -> float | None: ...


def chunk_hash(data: bytes) -> int:
    """Rolling 32-bit hash over the first HASH_PREFIX_BYTES bytes.

    Chunks sharing a prefix hash the same; the heuristic trades exactness
    for constant cost per chunk.
    """
    h = 0
    for byte in data[:HASH_PREFIX_BYTES]:
        h = (h * 31 + byte) & 0xFFFFFFFF
    return h


class AudioPlaybackBuffer:
    """Dedup, queue and feed audio chunks to a PlaybackSink.

    Args:
        sink: Audio output.
        on_error: Called with every playback error.
        on_playback_start: Called once when playback first starts.
        on_playback_end: Called when queued audio has finished playing.
        schedule: ``schedule(delay, callback)`` used for the append retry.
            Defaults to the running event loop's ``call_later``.
    """

    def __init__(
        self,
        sink: PlaybackSink,
        on_error: Callable[[Exception], None] | None = None,
        on_playback_start: Callable[[], None] | None = None,
        on_playback_end: Callable[[], None] | None = None,
        schedule: Callable[[float, Callable[[], None]], object] | None = None,
    ) -> None:
        self._sink = sink
        self._on_error = on_error
        self._on_playback_start = on_playback_start
        self._on_playback_end = on_playback_end
        self._schedule = schedule
        self._streaming = bool(sink.supports_streaming_append)

        self._last_hash: int | None = None
        self._duplicate_count = 0

        # Streaming strategy
        self._queue: deque[bytes] = deque()
        self._appending = False
        self._trimming = False
        self._retry_pending = False

        # Segment fallback strategy
        self._accumulator: list[bytes] = []
        self._accumulated_bytes = 0
        self._segments: deque[bytes] = deque()
        self._playing_segment = False

        self._started = False
        self._volume = 1.0
        self._destroyed = False

        self.forwarded_count = 0
        self.duplicates_dropped = 0
        self.overflow_dropped = 0
        self.failed_dropped = 0

    @property
    def is_streaming(self) -> bool:
        return self._streaming

    @property
    def pending_count(self) -> int:
        """Chunks or segments not yet handed to the sink."""
        if self._streaming:
            return len(self._queue)
        return len(self._segments) + (1 if self._accumulated_bytes else 0)

    @property
    def is_playing(self) -> bool:
        if self._streaming:
            if not self._started:
                return False
            end = self._sink.buffered_end
            return bool(self._queue) or self._appending or (
                end is not None and end > self._sink.current_time + 0.1
            )
        return self._playing_segment

    @property
    def volume(self) -> float:
        return self._volume

    def add_chunk(self, data: bytes) -> bool:
        """Accept one chunk.

        Returns:
            True if the chunk was queued, False if it was dropped as a
            duplicate or the buffer is destroyed.
        """
        if self._destroyed:
            logger.warning("Chunk ignored: playback buffer destroyed")
            return False
        if not data:
            return False

        h = chunk_hash(data)
        if h == self._last_hash:
            self._duplicate_count += 1
            if self._duplicate_count >= MAX_DUPLICATE_COUNT:
                self.duplicates_dropped += 1
                logger.warning(
                    "Dropping duplicate audio chunk (%d consecutive)",
                    self._duplicate_count,
                )
                return False
        else:
            self._last_hash = h
            self._duplicate_count = 0

        self.forwarded_count += 1
        if self._streaming:
            self._queue.append(data)
            if len(self._queue) > BUFFER_CAPACITY:
                self._queue.popleft()
                self.overflow_dropped += 1
                logger.warning("Audio queue full, dropped oldest chunk")
            self._process_next()
        else:
            self._accumulate(data)
            if not self._playing_segment and self._segments:
                self._play_next_segment()
        return True

    def finish(self) -> None:
        """Upstream finished; play whatever is still accumulated."""
        if self._destroyed or self._streaming:
            return
        self._flush_accumulator()
        if not self._playing_segment and self._segments:
            self._play_next_segment()

    def on_append_complete(self) -> None:
        """Sink callback: the in-flight append or trim finished."""
        if self._destroyed:
            return
        if self._trimming:
            self._trimming = False
            self._process_next()
            return

        self._appending = False
        self._mark_started()
        if self._queue:
            self._process_next()
        else:
            self._trim()

    def on_playback_ended(self) -> None:
        """Sink callback: the live stream ran out of buffered audio."""
        if self._streaming and not self._queue and not self._appending:
            self._notify_end()

    def on_segment_ended(self) -> None:
        """Sink callback: the current fallback segment finished."""
        if self._destroyed or self._streaming:
            return
        self._play_next_segment()

    def set_volume(self, volume: float) -> None:
        self._volume = max(0.0, min(1.0, volume))
        try:
            self._sink.set_volume(self._volume)
        except Exception as e:
            self._report(e)

    def stop(self) -> None:
        """Discard everything queued and stop the sink."""
        self._queue.clear()
        self._segments.clear()
        self._accumulator = []
        self._accumulated_bytes = 0
        self._playing_segment = False
        self._appending = False
        self._trimming = False
        self._retry_pending = False
        self._started = False
        try:
            self._sink.stop()
        except Exception as e:
            self._report(e)

    def destroy(self) -> None:
        """Stop and detach callbacks; later chunks are ignored."""
        self.stop()
        self._destroyed = True
        self._on_error = None
        self._on_playback_start = None
        self._on_playback_end = None

    # Streaming strategy

    def _process_next(self) -> None:
        if self._appending or self._trimming or self._retry_pending or not self._queue:
            return
        self._attempt_append(self._queue.popleft(), retried=False)

    def _attempt_append(self, chunk: bytes, retried: bool) -> None:
        self._appending = True
        try:
            self._sink.append(chunk)
        except Exception as e:
            self._appending = False
            self._report(e)
            if retried:
                self.failed_dropped += 1
                logger.warning("Audio chunk dropped after failed retry")
                self._process_next()
                return
            self._retry_pending = True
            self._later(APPEND_RETRY_DELAY, lambda: self._retry_append(chunk))

    def _retry_append(self, chunk: bytes) -> None:
        if not self._retry_pending or self._destroyed:
            return
        self._retry_pending = False
        self._attempt_append(chunk, retried=True)

    def _trim(self) -> None:
        if self._appending or self._trimming:
            return
        trim_end = self._sink.current_time - TRIM_WINDOW_SECONDS
        start = self._sink.buffered_start
        if trim_end <= 0 or start is None or start >= trim_end:
            return
        self._trimming = True
        try:
            self._sink.remove(start, trim_end)
        except Exception as e:
            self._trimming = False
            self._report(e)

    # Segment fallback strategy

    def _accumulate(self, data: bytes) -> None:
        self._accumulator.append(data)
        self._accumulated_bytes += len(data)
        if self._accumulated_bytes >= FALLBACK_MIN_SEGMENT_BYTES:
            self._flush_accumulator()

    def _flush_accumulator(self) -> None:
        if not self._accumulator:
            return
        self._segments.append(b"".join(self._accumulator))
        self._accumulator = []
        self._accumulated_bytes = 0
        if len(self._segments) > BUFFER_CAPACITY:
            self._segments.popleft()
            self.overflow_dropped += 1
            logger.warning("Audio segment queue full, dropped oldest segment")

    def _play_next_segment(self) -> None:
        while True:
            if not self._segments:
                self._flush_accumulator()
            if not self._segments:
                was_playing = self._playing_segment
                self._playing_segment = False
                if was_playing:
                    self._notify_end()
                return

            segment = self._segments.popleft()
            self._playing_segment = True
            try:
                self._sink.play_segment(segment)
            except Exception as e:
                self._report(e)
                continue
            self._mark_started()
            return

    # Shared

    def _mark_started(self) -> None:
        if self._started:
            return
        self._started = True
        if self._on_playback_start:
            self._on_playback_start()

    def _notify_end(self) -> None:
        self._started = False
        if self._on_playback_end:
            self._on_playback_end()

    def _report(self, error: Exception) -> None:
        logger.warning("Audio playback error: %s", error)
        if self._on_error:
            try:
                self._on_error(error)
            except Exception as e:
                logger.error("Audio error callback failed: %s", e)

    def _later(self, delay: float, callback: Callable[[], None]) -> None:
        if self._schedule is not None:
            self._schedule(delay, callback)
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            callback()
            return
        loop.call_later(delay, callback)
