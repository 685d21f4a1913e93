"""Playback orchestrator — client + decoder + player behind one API.

Enforces a single active session: ``play()`` stops whatever is playing
(last call wins).  Stopping executes, in order:

1. Flag the session cancelled so no further buffer reaches the player
2. Halt the player and drop its schedule
3. Cancel and await the synthesis task (closes the HTTP stream)
4. Reset decoder state

State transitions are published to subscribers as ``PlaybackEvent``s.
"""

from __future__ import annotations

import asyncio
import inspect
from contextlib import aclosing
from typing import Any, AsyncIterator, Callable, Mapping, Optional

from sovits_player.audio.base import AudioSink
from sovits_player.audio.wav_stream import AudioFormat, WavStreamDecoder
from sovits_player.client import SynthesisClient
from sovits_player.config import Settings
from sovits_player.errors import InvalidResponse, SovitsError
from sovits_player.logging import get_logger
from sovits_player.request_builder import SynthesisParams, build_request
from sovits_player.session import PlaybackEvent, PlaybackSession, PlaybackState

logger = get_logger("orchestrator")

StateCallback = Callable[[PlaybackEvent], Any]
CompletionCallback = Callable[[PlaybackSession], Any]


class PlaybackOrchestrator:
    """Public play / pause / resume / stop API over the streaming pipeline."""

    def __init__(
        self,
        settings: Settings,
        client: SynthesisClient,
        player: AudioSink,
        *,
        decoder_factory: Callable[[], WavStreamDecoder] | None = None,
    ) -> None:
        self._settings = settings
        self._client = client
        self._player = player
        self._decoder_factory = decoder_factory or (
            lambda: WavStreamDecoder(
                settings.frames_per_buffer,
                pad_partial_buffer=settings.pad_partial_buffer,
            )
        )
        self._lock = asyncio.Lock()
        self._session: PlaybackSession | None = None
        self._state = PlaybackState.IDLE
        self._error: str | None = None
        self._subscribers: list[StateCallback] = []
        self._completion_callbacks: list[CompletionCallback] = []

    # ── Observable state ──────────────────────────────────

    @property
    def state(self) -> PlaybackState:
        return self._state

    @property
    def error(self) -> str | None:
        """Human-readable reason while in ``ERROR``."""
        return self._error

    @property
    def active_session(self) -> PlaybackSession | None:
        return self._session

    def subscribe(self, callback: StateCallback) -> Callable[[], None]:
        """Register for state events; returns an unsubscribe function."""
        self._subscribers.append(callback)
        return lambda: self._subscribers.remove(callback)

    def on_complete(self, callback: CompletionCallback) -> Callable[[], None]:
        """Called after a session played to the end (not on stop or error)."""
        self._completion_callbacks.append(callback)
        return lambda: self._completion_callbacks.remove(callback)

    def _set_state(
        self,
        state: PlaybackState,
        session: PlaybackSession | None = None,
        error: str | None = None,
    ) -> None:
        if state is self._state and error == self._error:
            return
        self._state = state
        self._error = error
        session_id = session.session_id if session else None
        logger.info(
            "Playback state -> %s%s",
            state.value,
            f" ({error})" if error else "",
            extra={"session_id": session_id, "event": f"state_{state.value}"},
        )
        event = PlaybackEvent(state=state, session_id=session_id, error=error)
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception:
                logger.exception("State subscriber failed")

    # ── Controls ──────────────────────────────────────────

    async def play(
        self,
        text: str,
        reference_audio_path: Optional[str] = None,
        prompt_text: Optional[str] = None,
        params: SynthesisParams | Mapping[str, Any] | None = None,
    ) -> PlaybackSession:
        """Start speaking ``text``, replacing any active session.

        Validation and the availability probe happen before this returns;
        their failures are raised (and published as ``ERROR``).  Later
        failures surface only through state events.

        Raises:
            ValidationFailed: parameters out of range or empty text.
            ServerUnavailable: the probe got no response.
        """
        async with self._lock:
            await self._stop_locked()

            try:
                request = build_request(
                    text,
                    reference_audio_path,
                    prompt_text,
                    params,
                    max_retries=self._settings.max_retries,
                )
                await self._client.probe_availability()
            except SovitsError as exc:
                self._set_state(PlaybackState.ERROR, error=exc.message)
                raise

            session = PlaybackSession(request=request, decoder=self._decoder_factory())
            session.metrics.enabled = self._settings.metrics_enabled
            self._session = session
            self._set_state(PlaybackState.SYNTHESIZING, session)
            session.task = asyncio.create_task(
                self._run(session), name=f"playback-{session.session_id}"
            )
            logger.info(
                "Playback started (%d chars, streaming=%s)",
                len(request.text),
                request.params.streaming_mode,
                extra={"session_id": session.session_id, "event": "playback_start"},
            )
            return session

    async def pause(self) -> None:
        """Suspend output; the network stream keeps filling the schedule."""
        if self._session is None or self._state not in (
            PlaybackState.SYNTHESIZING,
            PlaybackState.PLAYING,
        ):
            return
        self._player.pause()
        self._set_state(PlaybackState.PAUSED, self._session)

    async def resume(self) -> None:
        if self._session is None or self._state is not PlaybackState.PAUSED:
            return
        self._player.resume()
        started = bool(self._session.metrics.first_audio_at)
        self._set_state(
            PlaybackState.PLAYING if started else PlaybackState.SYNTHESIZING,
            self._session,
        )

    async def stop(self) -> None:
        """Cancel synthesis, halt output, reset decoder; ends in ``IDLE``."""
        async with self._lock:
            await self._stop_locked()

    async def _stop_locked(self) -> None:
        session, self._session = self._session, None
        if session is not None:
            session.cancel()
            self._player.stop()
            await session.close()
            logger.info(
                "Playback stopped",
                extra={"session_id": session.session_id, "event": "playback_stop"},
            )
        else:
            self._player.stop()
        self._set_state(PlaybackState.IDLE)

    async def wait_until_done(self) -> None:
        """Wait for the active session (if any) to finish, fail or stop."""
        session = self._session
        if session is not None:
            await session.wait()

    async def close(self) -> None:
        await self.stop()
        await self._client.close()

    # ── Session task ──────────────────────────────────────

    async def _run(self, session: PlaybackSession) -> None:
        metrics = session.metrics
        metrics.mark("request_started")
        try:
            if session.request.params.streaming_mode:
                chunks = self._client.synthesize_stream(session.request, metrics=metrics)
            else:
                chunks = self._whole_file(session)
            await self._pump(session, chunks)
            metrics.mark("stream_finished")

            session.check_cancelled()
            self._player.mark_end_of_stream()
            drained = await self._await_drain(session)
            if not drained:
                logger.warning(
                    "Playback made no progress for %.1fs; assuming it finished",
                    self._settings.drain_timeout_s,
                    extra={"session_id": session.session_id},
                )
            metrics.mark("drained")
            session.check_cancelled()
            await self._complete(session, drained=drained)

        except asyncio.CancelledError:
            logger.debug(
                "Session task cancelled",
                extra={"session_id": session.session_id},
            )
            raise
        except SovitsError as exc:
            self._fail(session, exc.message)
        except Exception as exc:
            logger.exception(
                "Unexpected playback failure",
                extra={"session_id": session.session_id},
            )
            self._fail(session, f"Unexpected playback error: {exc}")
        finally:
            session.decoder.stop()
            metrics.emit()
            session.mark_done()

    async def _whole_file(self, session: PlaybackSession) -> AsyncIterator[bytes]:
        yield await self._client.synthesize(session.request, metrics=session.metrics)

    async def _pump(self, session: PlaybackSession, chunks: AsyncIterator[bytes]) -> None:
        """Bytes -> decoder -> player, checking cancellation at every item."""
        metrics = session.metrics
        got_format = False
        async with aclosing(chunks), aclosing(session.decoder.decode(chunks)) as items:
            async for item in items:
                session.check_cancelled()
                if isinstance(item, AudioFormat):
                    self._player.configure(item)
                    got_format = True
                    continue

                self._player.enqueue(item)
                metrics.buffers_enqueued += 1
                if not metrics.first_audio_at:
                    metrics.mark("first_audio")
                    if self._state is PlaybackState.SYNTHESIZING:
                        self._set_state(PlaybackState.PLAYING, session)

        if not got_format:
            raise InvalidResponse("The server returned no audio")

    async def _await_drain(self, session: PlaybackSession) -> bool:
        """Wait for the drain signal; ``False`` only if the device stalls.

        ``drain_timeout_s`` bounds each stretch without progress, not the
        whole wait: the clock restarts whenever frames were played, and a
        paused session never times out.
        """
        timeout = self._settings.drain_timeout_s
        last_position = self._player.playback_position()
        while True:
            if await self._player.wait_drained(timeout):
                return True
            session.check_cancelled()
            position = self._player.playback_position()
            if position != last_position or self._state is PlaybackState.PAUSED:
                last_position = position
                continue
            return False

    async def _complete(self, session: PlaybackSession, *, drained: bool = True) -> None:
        if self._session is not session:
            return
        self._session = None
        if drained:
            self._player.finish()
        self._set_state(PlaybackState.IDLE, session)
        logger.info(
            "Playback complete",
            extra={"session_id": session.session_id, "event": "playback_complete"},
        )
        for callback in list(self._completion_callbacks):
            try:
                result = callback(session)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Completion callback failed")

    def _fail(self, session: PlaybackSession, reason: str) -> None:
        session.error = reason
        if self._session is not session or session.is_cancelled:
            return
        self._session = None
        self._player.stop()
        logger.error(
            "Playback failed: %s",
            reason,
            extra={"session_id": session.session_id, "event": "playback_failed"},
        )
        self._set_state(PlaybackState.ERROR, session, error=reason)
