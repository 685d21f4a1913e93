"""Incremental WAV stream decoder.

The GPT-SoVITS server streams a canonical 44-byte RIFF/WAV header followed
by raw little-endian PCM16.  The header only becomes readable once the first
44 bytes have arrived, so the decoder accumulates bytes, parses the header,
then reframes the remainder into fixed-size float32 buffers.

States::

    AWAITING_HEADER -> HEADER_PARSED -> STREAMING
           \\________________\\_____________\\____> CLOSED
"""

from __future__ import annotations

import struct
from collections.abc import AsyncIterable, AsyncIterator
from dataclasses import dataclass
from enum import Enum, auto
from typing import Union

import numpy as np

from sovits_player.errors import MalformedHeader
from sovits_player.logging import get_logger

logger = get_logger("audio.wav_stream")

WAV_HEADER_BYTES = 44
PCM16_SAMPLE_WIDTH = 2
PCM16_MAX = 32767  # Int16.max
DEFAULT_FRAMES_PER_BUFFER = 1024


class DecoderState(Enum):
    AWAITING_HEADER = auto()
    HEADER_PARSED = auto()
    STREAMING = auto()
    CLOSED = auto()


@dataclass(frozen=True)
class AudioFormat:
    """Output format derived from the WAV header."""

    sample_rate: int
    channels: int = 1
    bits_per_sample: int = 16

    @property
    def bytes_per_frame(self) -> int:
        return self.channels * PCM16_SAMPLE_WIDTH


@dataclass
class PCMBuffer:
    """A block of normalized float32 samples, shape ``(frames, channels)``."""

    samples: np.ndarray
    sequence: int = 0

    @property
    def frames(self) -> int:
        return int(self.samples.shape[0])

    @property
    def channels(self) -> int:
        return int(self.samples.shape[1])


DecodedItem = Union[AudioFormat, PCMBuffer]


def parse_wav_header(header: bytes) -> AudioFormat:
    """Parse the fixed-offset fields of a canonical 44-byte WAV header.

    Raises:
        MalformedHeader: not RIFF, or a format this decoder cannot play.
    """
    if len(header) < WAV_HEADER_BYTES:
        raise MalformedHeader(
            f"WAV header needs {WAV_HEADER_BYTES} bytes, got {len(header)}"
        )
    if header[:4] != b"RIFF":
        raise MalformedHeader(f"Invalid WAV header: expected b'RIFF', got {header[:4]!r}")

    (channels,) = struct.unpack_from("<H", header, 22)
    (sample_rate,) = struct.unpack_from("<I", header, 24)
    (bits_per_sample,) = struct.unpack_from("<H", header, 34)

    if channels == 0 or sample_rate == 0:
        raise MalformedHeader(
            f"Invalid WAV header: {channels} channel(s) at {sample_rate}Hz"
        )
    if bits_per_sample != 16:
        raise MalformedHeader(
            f"Unsupported WAV bit depth {bits_per_sample}; only 16-bit PCM is supported"
        )
    return AudioFormat(
        sample_rate=sample_rate,
        channels=channels,
        bits_per_sample=bits_per_sample,
    )


def pcm16_to_float(block: bytes, channels: int = 1) -> np.ndarray:
    """Little-endian int16 bytes -> float32 in [-1, 1], shape ``(frames, channels)``."""
    samples = np.frombuffer(block, dtype="<i2").astype(np.float32) / PCM16_MAX
    return samples.reshape(-1, channels)


class WavStreamDecoder:
    """Turns an arbitrarily-chunked WAV byte stream into PCM buffers.

    Emission is independent of how the input was chunked: feeding one
    byte at a time yields exactly the items produced by a single feed.
    """

    def __init__(
        self,
        frames_per_buffer: int = DEFAULT_FRAMES_PER_BUFFER,
        *,
        pad_partial_buffer: bool = False,
    ) -> None:
        if frames_per_buffer < 1:
            raise ValueError("frames_per_buffer must be positive")
        self._frames_per_buffer = frames_per_buffer
        self._pad_partial = pad_partial_buffer
        self._buffer = bytearray()
        self._state = DecoderState.AWAITING_HEADER
        self._format: AudioFormat | None = None
        self._sequence = 0
        self._bytes_in = 0

    @property
    def state(self) -> DecoderState:
        return self._state

    @property
    def audio_format(self) -> AudioFormat | None:
        return self._format

    @property
    def buffered_bytes(self) -> int:
        return len(self._buffer)

    @property
    def block_bytes(self) -> int:
        channels = self._format.channels if self._format else 1
        return self._frames_per_buffer * channels * PCM16_SAMPLE_WIDTH

    def feed(self, chunk: bytes) -> list[DecodedItem]:
        """Consume ``chunk``; return the format (once) and any full buffers."""
        if self._state is DecoderState.CLOSED:
            logger.debug("Dropping %d bytes fed to closed decoder", len(chunk))
            return []

        self._buffer.extend(chunk)
        self._bytes_in += len(chunk)
        out: list[DecodedItem] = []

        if self._state is DecoderState.AWAITING_HEADER:
            if len(self._buffer) < WAV_HEADER_BYTES:
                return out
            try:
                self._format = parse_wav_header(bytes(self._buffer[:WAV_HEADER_BYTES]))
            except MalformedHeader:
                self.stop()
                raise
            del self._buffer[:WAV_HEADER_BYTES]
            self._state = DecoderState.HEADER_PARSED
            logger.info(
                "WAV header parsed: %dHz, %d channel(s), %d-bit",
                self._format.sample_rate,
                self._format.channels,
                self._format.bits_per_sample,
                extra={"event": "wav_header_parsed"},
            )
            out.append(self._format)

        if self._state is DecoderState.HEADER_PARSED:
            self._state = DecoderState.STREAMING

        out.extend(self._drain_blocks())
        return out

    def _drain_blocks(self) -> list[PCMBuffer]:
        assert self._format is not None
        block = self.block_bytes
        buffers: list[PCMBuffer] = []
        while len(self._buffer) >= block:
            raw = bytes(self._buffer[:block])
            del self._buffer[:block]
            buffers.append(self._make_buffer(raw))
        return buffers

    def _make_buffer(self, raw: bytes) -> PCMBuffer:
        assert self._format is not None
        buf = PCMBuffer(
            samples=pcm16_to_float(raw, self._format.channels),
            sequence=self._sequence,
        )
        self._sequence += 1
        return buf

    def finish(self) -> list[PCMBuffer]:
        """Handle end of stream; the decoder is closed afterwards.

        A trailing partial block is dropped (and logged) unless the decoder
        was built with ``pad_partial_buffer=True``, in which case the whole
        frames left over are zero-padded to a full buffer.
        """
        out: list[PCMBuffer] = []
        if self._state is DecoderState.CLOSED:
            return out

        if self._state is DecoderState.AWAITING_HEADER:
            if self._buffer:
                logger.warning(
                    "Stream ended before a complete WAV header (%d bytes)",
                    len(self._buffer),
                    extra={"event": "wav_header_truncated"},
                )
                self.stop()
                raise MalformedHeader(
                    f"Stream ended after {self._bytes_in} bytes, before the WAV header"
                )
            self.stop()
            return out

        leftover = len(self._buffer)
        if leftover:
            assert self._format is not None
            frame_bytes = self._format.bytes_per_frame
            usable = leftover - leftover % frame_bytes
            if self._pad_partial and usable:
                raw = bytes(self._buffer[:usable]) + b"\x00" * (self.block_bytes - usable)
                out.append(self._make_buffer(raw))
                logger.debug("Padded trailing %d bytes to a full buffer", usable)
            else:
                logger.info(
                    "Dropping %d trailing bytes that do not fill a buffer",
                    leftover,
                    extra={"event": "partial_buffer_dropped"},
                )
        self.stop()
        return out

    def stop(self) -> None:
        """Close from any state; partial frames are discarded."""
        self._buffer.clear()
        self._state = DecoderState.CLOSED

    async def decode(self, chunks: AsyncIterable[bytes]) -> AsyncIterator[DecodedItem]:
        """Async adapter: decode a lazy byte stream into formats and buffers."""
        async for chunk in chunks:
            for item in self.feed(chunk):
                yield item
            if self._state is DecoderState.CLOSED:
                return
        for item in self.finish():
            yield item
