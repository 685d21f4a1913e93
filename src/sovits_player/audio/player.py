"""Streaming audio output over a sounddevice callback stream.

Buffers arrive on the asyncio thread; PortAudio pulls samples from its own
callback thread.  The only shared state is a lock-guarded FIFO that the
callback drains, so scheduling is marshalled onto the audio thread.
"""

from __future__ import annotations

import asyncio
import threading
from collections import deque
from typing import Any, Callable, Optional, Protocol

import numpy as np

from sovits_player.audio.wav_stream import AudioFormat, PCMBuffer
from sovits_player.config import Settings
from sovits_player.errors import PlaybackFailed
from sovits_player.logging import get_logger

logger = get_logger("audio.player")

AudioCallback = Callable[[np.ndarray, int, Any, Any], None]


class OutputStream(Protocol):
    """The slice of ``sounddevice.OutputStream`` the player relies on."""

    @property
    def active(self) -> bool: ...

    def start(self) -> None: ...

    def stop(self) -> None: ...

    def abort(self) -> None: ...

    def close(self) -> None: ...


StreamFactory = Callable[[AudioFormat, AudioCallback], OutputStream]


def sounddevice_stream_factory(
    device: Optional[str] = None,
    latency: str = "low",
) -> StreamFactory:
    """Build float32 callback streams on the default (or named) device."""

    def factory(fmt: AudioFormat, callback: AudioCallback) -> OutputStream:
        # PortAudio is loaded on first use so headless hosts can still import us.
        import sounddevice as sd

        return sd.OutputStream(
            samplerate=fmt.sample_rate,
            channels=fmt.channels,
            dtype="float32",
            callback=callback,
            device=device,
            latency=latency,
        )

    return factory


class StreamingAudioPlayer:
    """Plays PCM buffers in arrival order with minimal added latency."""

    def __init__(self, stream_factory: StreamFactory | None = None) -> None:
        self._factory = stream_factory or sounddevice_stream_factory()
        self._lock = threading.RLock()
        self._queue: deque[np.ndarray] = deque()
        self._current: np.ndarray | None = None
        self._offset = 0
        self._stream: OutputStream | None = None
        self._format: AudioFormat | None = None
        self._paused = False
        self._end_of_stream = False
        self._drained = threading.Event()
        self.frames_played = 0
        self.buffers_played = 0

    @classmethod
    def from_settings(cls, settings: Settings) -> StreamingAudioPlayer:
        return cls(
            sounddevice_stream_factory(settings.audio_device, settings.audio_latency)
        )

    # ── State ────────────────────────────────────────────

    @property
    def audio_format(self) -> AudioFormat | None:
        return self._format

    @property
    def pending_buffers(self) -> int:
        with self._lock:
            return len(self._queue) + (1 if self._current is not None else 0)

    @property
    def is_paused(self) -> bool:
        return self._paused

    def is_playing(self) -> bool:
        with self._lock:
            stream = self._stream
            return stream is not None and stream.active and not self._paused

    def playback_position(self) -> int:
        """Frames handed to the device so far; stalls while paused."""
        with self._lock:
            return self.frames_played

    # ── Control ──────────────────────────────────────────

    def configure(self, fmt: AudioFormat) -> None:
        """(Re)open output for ``fmt``.  Scheduled buffers are kept."""
        with self._lock:
            if self._stream is not None and self._format == fmt:
                return
            old, self._stream = self._stream, None

        # Stopping waits for the callback, which takes the lock.
        if old is not None:
            self._close_stream(old)

        try:
            stream = self._factory(fmt, self._callback)
        except Exception as exc:
            raise PlaybackFailed(f"Could not open audio output: {exc}") from exc

        with self._lock:
            self._stream = stream
            self._format = fmt
            self._end_of_stream = False
            has_audio = bool(self._queue) or self._current is not None
            if has_audio:
                self._drained.clear()
            should_start = has_audio and not self._paused

        logger.info(
            "Audio output configured: %dHz, %d channel(s)",
            fmt.sample_rate,
            fmt.channels,
            extra={"event": "audio_configured"},
        )
        if should_start:
            self._start(stream)

    def enqueue(self, buffer: PCMBuffer) -> None:
        """Schedule ``buffer`` after everything already queued."""
        with self._lock:
            stream = self._stream
            if stream is None or self._format is None:
                raise PlaybackFailed("Audio output is not configured")
            if buffer.channels != self._format.channels:
                raise PlaybackFailed(
                    f"Buffer has {buffer.channels} channel(s), output expects "
                    f"{self._format.channels}"
                )
            self._queue.append(buffer.samples)
            self._drained.clear()
            should_start = not self._paused and not stream.active

        if should_start:
            self._start(stream)

    def pause(self) -> None:
        with self._lock:
            self._paused = True
        logger.debug("Playback paused")

    def resume(self) -> None:
        with self._lock:
            if not self._paused:
                return
            self._paused = False
            stream = self._stream
        if stream is not None and not stream.active:
            self._start(stream)
        logger.debug("Playback resumed")

    def stop(self) -> None:
        """Halt now, drop everything scheduled, and forget the format."""
        stream = self._reset()
        if stream is not None:
            self._close_stream(stream, immediate=True)
            logger.info("Audio output stopped", extra={"event": "audio_stopped"})

    def finish(self) -> None:
        """Release the output once the schedule has played out.

        Unlike :meth:`stop`, the device plays what it already holds before
        the stream closes.
        """
        stream = self._reset()
        if stream is not None:
            self._close_stream(stream, immediate=False)
            logger.info("Audio output finished", extra={"event": "audio_finished"})

    def _reset(self) -> OutputStream | None:
        with self._lock:
            self._queue.clear()
            self._current = None
            self._offset = 0
            self._paused = False
            self._end_of_stream = False
            stream, self._stream = self._stream, None
            self._format = None
            # Release anyone waiting for a drain that will never come.
            self._drained.set()
        return stream

    def mark_end_of_stream(self) -> None:
        """No more buffers will arrive; signal drain once the queue empties."""
        with self._lock:
            self._end_of_stream = True
            if self._current is None and not self._queue:
                self._drained.set()

    async def wait_drained(self, timeout: float | None = None) -> bool:
        """Wait until the last scheduled buffer has been handed to the device."""
        return await asyncio.to_thread(self._drained.wait, timeout)

    # ── Internals ────────────────────────────────────────

    def _start(self, stream: OutputStream) -> None:
        try:
            stream.start()
        except Exception as exc:
            raise PlaybackFailed(f"Could not start audio output: {exc}") from exc

    @staticmethod
    def _close_stream(stream: OutputStream, *, immediate: bool = False) -> None:
        # abort() discards what PortAudio still holds; stop() waits for it.
        try:
            if immediate:
                stream.abort()
            else:
                stream.stop()
            stream.close()
        except Exception as exc:
            logger.warning("Audio stream close error: %s", exc)

    def _callback(self, outdata: np.ndarray, frames: int, time: Any, status: Any) -> None:
        if status:
            logger.warning("Audio output status: %s", status)

        with self._lock:
            if self._paused:
                outdata.fill(0)
                return

            written = 0
            while written < frames:
                if self._current is None:
                    if not self._queue:
                        break
                    self._current = self._queue.popleft()
                    self._offset = 0
                n = min(frames - written, len(self._current) - self._offset)
                outdata[written : written + n] = self._current[self._offset : self._offset + n]
                written += n
                self._offset += n
                if self._offset >= len(self._current):
                    self._current = None
                    self.buffers_played += 1

            if written < frames:
                outdata[written:] = 0
            self.frames_played += written

            if self._end_of_stream and self._current is None and not self._queue:
                self._drained.set()
