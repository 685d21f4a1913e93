"""Playback session: one synthesis task + cancellation + metrics."""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from sovits_player.audio.wav_stream import WavStreamDecoder
from sovits_player.logging import get_logger
from sovits_player.metrics import SessionMetrics
from sovits_player.request_builder import SynthesisRequest

logger = get_logger("session")


class PlaybackState(Enum):
    IDLE = "idle"
    SYNTHESIZING = "synthesizing"
    PLAYING = "playing"
    PAUSED = "paused"
    ERROR = "error"


@dataclass(frozen=True)
class PlaybackEvent:
    """Published on every state transition."""

    state: PlaybackState
    session_id: Optional[str] = None
    error: Optional[str] = None


@dataclass
class PlaybackSession:
    """One play-request-to-completion-or-stop lifecycle.

    Owns exactly one synthesis task and one decoder; the audio player is
    borrowed from the orchestrator for the session's lifetime.
    """

    request: SynthesisRequest
    decoder: WavStreamDecoder
    session_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    task: Optional[asyncio.Task[Any]] = None
    metrics: SessionMetrics = field(default=None)  # type: ignore[assignment]
    error: Optional[str] = None

    _cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    _done_event: asyncio.Event = field(default_factory=asyncio.Event)

    def __post_init__(self) -> None:
        if self.metrics is None:
            self.metrics = SessionMetrics(session_id=self.session_id)

    @property
    def is_cancelled(self) -> bool:
        return self._cancel_event.is_set()

    @property
    def is_done(self) -> bool:
        return self._done_event.is_set()

    def check_cancelled(self) -> None:
        """Raise CancelledError if the session was stopped.  Call in hot loops."""
        if self._cancel_event.is_set():
            raise asyncio.CancelledError("Playback session stopped")

    def cancel(self) -> None:
        """Flag cancellation and cancel the task; does not wait."""
        if not self._cancel_event.is_set():
            self._cancel_event.set()
            logger.info(
                "Session cancelled",
                extra={"session_id": self.session_id, "event": "session_cancel"},
            )
        if self.task is not None and not self.task.done():
            self.task.cancel()

    def mark_done(self) -> None:
        self._done_event.set()

    async def wait(self) -> None:
        """Wait until the session has fully torn down."""
        await self._done_event.wait()

    async def close(self) -> None:
        """Cancel, await the task and release the decoder."""
        task = self.task
        if task is asyncio.current_task():
            # Called from inside our own task (e.g. a completion callback).
            self._cancel_event.set()
            task = None
        else:
            self.cancel()

        if task is not None:
            (result,) = await asyncio.gather(task, return_exceptions=True)
            if isinstance(result, Exception) and not isinstance(
                result, asyncio.CancelledError
            ):
                logger.warning(
                    "Session task raised during cleanup: %s", result,
                    extra={"session_id": self.session_id},
                )
        self.decoder.stop()
        self.mark_done()
