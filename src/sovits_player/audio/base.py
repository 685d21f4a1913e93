"""Audio sink protocol — the interface the orchestrator drives."""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from sovits_player.audio.wav_stream import AudioFormat, PCMBuffer


@runtime_checkable
class AudioSink(Protocol):
    """Protocol for audio outputs fed by the playback pipeline.

    Implementations must play buffers in FIFO order and tolerate
    ``enqueue`` being called from the asyncio thread while the device
    consumes audio on its own thread.
    """

    def configure(self, fmt: AudioFormat) -> None:
        """(Re)initialize output for ``fmt``, keeping scheduled buffers."""
        ...

    def enqueue(self, buffer: PCMBuffer) -> None:
        """Schedule a buffer after all previously scheduled ones."""
        ...

    def pause(self) -> None:
        ...

    def resume(self) -> None:
        ...

    def stop(self) -> None:
        """Halt immediately and discard everything scheduled."""
        ...

    def finish(self) -> None:
        """Close output after the schedule has drained."""
        ...

    def is_playing(self) -> bool:
        ...

    def playback_position(self) -> int:
        """Monotonic count of frames consumed by the device."""
        ...

    def mark_end_of_stream(self) -> None:
        """No further buffers will arrive for this stream."""
        ...

    async def wait_drained(self, timeout: float | None = None) -> bool:
        """Wait for the last buffer to finish; ``False`` on timeout."""
        ...
