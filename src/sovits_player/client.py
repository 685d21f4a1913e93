"""GPT-SoVITS synthesis client — HTTP transport.

Talks to the local speech server's ``/tts`` endpoint with GET requests.
Supports a lightweight availability probe, whole-file synthesis with
retry/backoff, and streaming synthesis that yields fixed-size byte chunks.

Retries only cover whole-request failures (connection errors, non-200
status).  Once the first byte of a stream has been read, a read error
ends the stream with a failure and is never retried here.
"""

from __future__ import annotations

import asyncio
import json
from contextlib import contextmanager
from typing import AsyncIterator, Iterator

import aiohttp
from yarl import URL

from sovits_player.config import Settings
from sovits_player.errors import (
    InvalidResponse,
    ServerUnavailable,
    SovitsError,
    SynthesisFailed,
)
from sovits_player.logging import get_logger
from sovits_player.metrics import SessionMetrics
from sovits_player.request_builder import SynthesisRequest, build_query, validate_params

logger = get_logger("client")


def _describe(exc: BaseException) -> str:
    return str(exc) or type(exc).__name__


def _error_message(body: bytes, status: int) -> str:
    """Pull ``message`` out of a JSON error body, or describe the status."""
    try:
        data = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        data = None
    if isinstance(data, dict) and isinstance(data.get("message"), str):
        return data["message"]
    return f"server returned HTTP {status}"


class SynthesisClient:
    """HTTP client for the GPT-SoVITS ``api_v2`` server.

    Features:
    - Fast-fail availability probe against ``GET /``
    - Linear backoff (``attempt * retry_backoff_s``) between attempts
    - Cancellation preempts retry waits and stops streams between chunks
    """

    def __init__(
        self,
        settings: Settings,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self._settings = settings
        self._base_url = self._checked_url(settings.sovits_base_url)
        self._tts_url = self._checked_url(settings.sovits_tts_url)
        self._probe_timeout_s = settings.probe_timeout_s
        self._timeout_s = settings.request_timeout_s
        self._backoff_s = settings.retry_backoff_s
        self._chunk_bytes = settings.stream_chunk_bytes
        self._session = session
        self._owns_session = session is None
        self._in_flight: set[asyncio.Event] = set()

    @staticmethod
    def _checked_url(raw: str) -> URL:
        try:
            url = URL(raw)
        except (TypeError, ValueError) as exc:
            raise InvalidResponse(f"Malformed server URL {raw!r}") from exc
        if url.scheme not in ("http", "https") or not url.host:
            raise InvalidResponse(f"Malformed server URL {raw!r}")
        return url

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    # ── Probe ────────────────────────────────────────────

    async def probe_availability(self, timeout: float | None = None) -> None:
        """Raise :class:`ServerUnavailable` unless ``GET /`` gets any response."""
        session = await self._ensure_session()
        timeout = self._probe_timeout_s if timeout is None else timeout
        try:
            async with session.get(
                self._base_url.with_path("/"),
                timeout=aiohttp.ClientTimeout(total=timeout),
            ) as resp:
                logger.debug(
                    "Speech server responded with %d",
                    resp.status,
                    extra={"event": "probe_ok", "status": resp.status},
                )
        except asyncio.CancelledError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            logger.warning(
                "Speech server at %s is not reachable: %s",
                self._base_url,
                _describe(exc),
                extra={"event": "probe_failed", "error_code": "server_unavailable"},
            )
            raise ServerUnavailable() from exc

    # ── Whole-file synthesis ─────────────────────────────

    async def synthesize(
        self,
        request: SynthesisRequest,
        *,
        metrics: SessionMetrics | None = None,
    ) -> bytes:
        """Synthesize ``request`` and return the complete WAV file."""
        validate_params(request.params)
        with self._call_scope() as cancelled:
            await self.probe_availability()

            session = await self._ensure_session()
            query = build_query(request, self._settings, streaming=False)
            timeout = aiohttp.ClientTimeout(total=self._timeout_s)

            last_exc: SovitsError | None = None
            for attempt in range(1, request.max_retries + 1):
                self._check_cancelled(cancelled)
                logger.info(
                    "Synthesis request (attempt %d/%d)",
                    attempt,
                    request.max_retries,
                    extra={"event": "synthesis_request", "attempt": attempt},
                )
                try:
                    async with session.get(self._tts_url, params=query, timeout=timeout) as resp:
                        body = await resp.read()
                        if resp.status == 200:
                            logger.info(
                                "Received %d bytes of audio",
                                len(body),
                                extra={"event": "synthesis_ok", "status": resp.status},
                            )
                            if metrics is not None:
                                metrics.mark("first_byte")
                                metrics.bytes_received += len(body)
                            return body
                        raise SynthesisFailed(
                            _error_message(body, resp.status), status=resp.status
                        )

                except asyncio.CancelledError:
                    raise
                except SynthesisFailed as exc:
                    last_exc = exc
                    self._log_attempt_failure(attempt, request.max_retries, exc)
                except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
                    last_exc = ServerUnavailable(
                        f"Request to speech server failed: {_describe(exc)}"
                    )
                    self._log_attempt_failure(attempt, request.max_retries, last_exc)

                if attempt < request.max_retries:
                    if metrics is not None:
                        metrics.retries += 1
                    await self._backoff(attempt, cancelled)

            assert last_exc is not None
            raise last_exc

    # ── Streaming synthesis ──────────────────────────────

    async def synthesize_stream(
        self,
        request: SynthesisRequest,
        *,
        metrics: SessionMetrics | None = None,
    ) -> AsyncIterator[bytes]:
        """Yield the streamed WAV in ``stream_chunk_bytes`` pieces.

        The last chunk may be shorter.  Closing the iterator (or cancelling
        its consumer) closes the HTTP response.
        """
        validate_params(request.params)
        with self._call_scope() as cancelled:
            query = build_query(request, self._settings, streaming=True)
            resp = await self._open_stream(query, request.max_retries, metrics, cancelled)

            pending = bytearray()
            try:
                try:
                    async for data in resp.content.iter_any():
                        if metrics is not None:
                            metrics.mark("first_byte")
                            metrics.bytes_received += len(data)
                        pending.extend(data)
                        while len(pending) >= self._chunk_bytes:
                            if cancelled.is_set():
                                logger.info("Stream cancelled", extra={"event": "stream_cancelled"})
                                return
                            chunk = bytes(pending[: self._chunk_bytes])
                            del pending[: self._chunk_bytes]
                            yield chunk
                except asyncio.CancelledError:
                    raise
                except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
                    logger.error(
                        "Audio stream interrupted: %s",
                        _describe(exc),
                        extra={"event": "stream_failed", "error_code": "stream_read"},
                    )
                    raise SynthesisFailed(
                        f"audio stream interrupted: {_describe(exc)}"
                    ) from exc

                if cancelled.is_set():
                    logger.info("Stream cancelled", extra={"event": "stream_cancelled"})
                    return
                if pending:
                    yield bytes(pending)
                logger.info("Audio stream complete", extra={"event": "stream_complete"})
            finally:
                if resp.content.at_eof():
                    resp.release()
                else:
                    resp.close()

    async def _open_stream(
        self,
        query: dict[str, str],
        max_retries: int,
        metrics: SessionMetrics | None,
        cancelled: asyncio.Event,
    ) -> aiohttp.ClientResponse:
        session = await self._ensure_session()
        # No total deadline: a long text legitimately streams for minutes.
        timeout = aiohttp.ClientTimeout(
            total=None,
            sock_connect=self._probe_timeout_s,
            sock_read=self._timeout_s,
        )

        last_exc: SovitsError | None = None
        for attempt in range(1, max_retries + 1):
            self._check_cancelled(cancelled)
            logger.info(
                "Streaming synthesis request (attempt %d/%d)",
                attempt,
                max_retries,
                extra={"event": "stream_request", "attempt": attempt},
            )
            try:
                resp = await session.get(self._tts_url, params=query, timeout=timeout)
            except asyncio.CancelledError:
                raise
            except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
                last_exc = ServerUnavailable(
                    f"Request to speech server failed: {_describe(exc)}"
                )
                self._log_attempt_failure(attempt, max_retries, last_exc)
            else:
                if resp.status == 200:
                    return resp
                try:
                    body = await resp.read()
                except (aiohttp.ClientError, asyncio.TimeoutError):
                    body = b""
                finally:
                    resp.release()
                last_exc = SynthesisFailed(_error_message(body, resp.status), status=resp.status)
                self._log_attempt_failure(attempt, max_retries, last_exc)

            if attempt < max_retries:
                if metrics is not None:
                    metrics.retries += 1
                await self._backoff(attempt, cancelled)

        assert last_exc is not None
        raise last_exc

    # ── Retry helpers ────────────────────────────────────

    @staticmethod
    def _log_attempt_failure(attempt: int, max_retries: int, exc: SovitsError) -> None:
        logger.warning(
            "Attempt %d/%d failed: %s",
            attempt,
            max_retries,
            exc.message,
            extra={
                "event": "attempt_failed",
                "attempt": attempt,
                "status": getattr(exc, "status", None),
            },
        )

    async def _backoff(self, attempt: int, cancelled: asyncio.Event) -> None:
        delay = attempt * self._backoff_s
        if delay <= 0:
            self._check_cancelled(cancelled)
            return
        logger.info("Retrying in %.1fs...", delay)
        try:
            await asyncio.wait_for(cancelled.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return  # Backoff elapsed, proceed to retry
        raise asyncio.CancelledError("Synthesis cancelled during backoff")

    @staticmethod
    def _check_cancelled(cancelled: asyncio.Event) -> None:
        if cancelled.is_set():
            raise asyncio.CancelledError("Synthesis cancelled")

    @contextmanager
    def _call_scope(self) -> Iterator[asyncio.Event]:
        """Per-call cancel flag, registered so :meth:`cancel` can reach it."""
        cancelled = asyncio.Event()
        self._in_flight.add(cancelled)
        try:
            yield cancelled
        finally:
            self._in_flight.discard(cancelled)

    # ── Lifecycle ────────────────────────────────────────

    async def cancel(self) -> None:
        """Stop every in-flight call at its next chunk or retry boundary.

        Calls started afterwards are unaffected.
        """
        for cancelled in list(self._in_flight):
            cancelled.set()
        logger.debug("Synthesis cancelled (%d call(s))", len(self._in_flight))

    async def close(self) -> None:
        await self.cancel()
        if self._session is not None and self._owns_session:
            await self._session.close()
        self._session = None
        logger.info("Synthesis client closed")
