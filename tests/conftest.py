"""Shared fixtures: WAV builder, fake GPT-SoVITS server, recording audio sink."""

from __future__ import annotations

import asyncio
import struct
from typing import Any, Callable

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from sovits_player.audio.wav_stream import AudioFormat, PCMBuffer
from sovits_player.config import Settings


def build_wav(
    pcm: bytes,
    sample_rate: int = 44100,
    channels: int = 1,
    bits_per_sample: int = 16,
    riff: bytes = b"RIFF",
) -> bytes:
    """Canonical 44-byte header + ``pcm``."""
    block_align = channels * bits_per_sample // 8
    header = struct.pack(
        "<4sI4s4sIHHIIHH4sI",
        riff,
        36 + len(pcm),
        b"WAVE",
        b"fmt ",
        16,
        1,
        channels,
        sample_rate,
        sample_rate * block_align,
        block_align,
        bits_per_sample,
        b"data",
        len(pcm),
    )
    assert len(header) == 44
    return header + pcm


@pytest.fixture
def make_wav() -> Callable[..., bytes]:
    return build_wav


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        sovits_host="127.0.0.1",
        sovits_port=9880,
        retry_backoff_s=0.0,
        probe_timeout_s=1.0,
        request_timeout_s=5.0,
        drain_timeout_s=0.5,
        params_store_path=tmp_path / "params.json",
        metrics_enabled=True,
    )


class FakeSovitsServer:
    """In-process stand-in for the GPT-SoVITS ``api_v2`` server."""

    def __init__(self) -> None:
        self.requests: list[dict[str, str]] = []
        self.root_hits = 0
        self.fail_times = 0
        self.fail_status = 500
        self.fail_json: Any = {"message": "model not loaded"}
        self.wav = build_wav(b"\x00\x00" * 2048)
        self.stream_chunks: list[bytes] = [self.wav]
        self.chunk_delay = 0.0
        self.hold_open = False
        self.release = asyncio.Event()
        self.break_after_chunks: int | None = None
        self.server: TestServer | None = None

    def app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/", self._root)
        app.router.add_get("/tts", self._tts)
        return app

    async def _root(self, request: web.Request) -> web.Response:
        self.root_hits += 1
        # Like the real server: no route at "/", but it answers.
        return web.json_response({"detail": "Not Found"}, status=404)

    async def _tts(self, request: web.Request) -> web.StreamResponse:
        self.requests.append(dict(request.query))
        if self.fail_times > 0:
            self.fail_times -= 1
            if isinstance(self.fail_json, (dict, list)):
                return web.json_response(self.fail_json, status=self.fail_status)
            return web.Response(text=str(self.fail_json), status=self.fail_status)

        if request.query.get("streaming_mode") != "true":
            return web.Response(body=self.wav, content_type="audio/wav")

        resp = web.StreamResponse(status=200, headers={"Content-Type": "audio/wav"})
        await resp.prepare(request)
        for i, chunk in enumerate(self.stream_chunks):
            if self.break_after_chunks is not None and i >= self.break_after_chunks:
                assert request.transport is not None
                request.transport.close()
                return resp
            await resp.write(chunk)
            if self.chunk_delay:
                await asyncio.sleep(self.chunk_delay)
        if self.hold_open:
            await self.release.wait()
        await resp.write_eof()
        return resp


@pytest.fixture
async def sovits_server():
    fake = FakeSovitsServer()
    server = TestServer(fake.app())
    await server.start_server()
    fake.server = server
    yield fake
    fake.release.set()
    await server.close()


@pytest.fixture
def server_settings(sovits_server: FakeSovitsServer, settings: Settings) -> Settings:
    assert sovits_server.server is not None
    return settings.model_copy(
        update={
            "sovits_host": sovits_server.server.host,
            "sovits_port": sovits_server.server.port,
        }
    )


class RecordingPlayer:
    """AudioSink that records every call in order instead of making sound."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, Any]] = []
        self.buffers: list[PCMBuffer] = []
        self.format: AudioFormat | None = None
        self.paused = False
        self.playing = False
        self.drain_result = True
        self.position = 0
        self.on_enqueue: Callable[[PCMBuffer], None] | None = None

    def configure(self, fmt: AudioFormat) -> None:
        self.calls.append(("configure", fmt))
        self.format = fmt

    def enqueue(self, buffer: PCMBuffer) -> None:
        self.calls.append(("enqueue", buffer))
        self.buffers.append(buffer)
        self.playing = not self.paused
        if self.on_enqueue is not None:
            self.on_enqueue(buffer)

    def pause(self) -> None:
        self.calls.append(("pause", None))
        self.paused = True

    def resume(self) -> None:
        self.calls.append(("resume", None))
        self.paused = False

    def stop(self) -> None:
        self.calls.append(("stop", None))
        self.playing = False
        self.paused = False
        self.format = None

    def finish(self) -> None:
        self.calls.append(("finish", None))
        self.playing = False
        self.format = None

    def is_playing(self) -> bool:
        return self.playing and not self.paused

    def playback_position(self) -> int:
        return self.position

    def mark_end_of_stream(self) -> None:
        self.calls.append(("end_of_stream", None))

    async def wait_drained(self, timeout: float | None = None) -> bool:
        self.calls.append(("wait_drained", timeout))
        await asyncio.sleep(0)
        return self.drain_result

    def names(self) -> list[str]:
        return [name for name, _ in self.calls]


@pytest.fixture
def recording_player() -> RecordingPlayer:
    return RecordingPlayer()
