"""Latency metrics collection for playback sessions."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any

from sovits_player.logging import get_logger

logger = get_logger("metrics")


@dataclass
class SessionMetrics:
    """Latency and throughput metrics for a single playback session."""

    session_id: str = ""
    enabled: bool = True

    # Timestamps (monotonic, seconds)
    request_started_at: float = 0.0
    first_byte_at: float = 0.0
    first_audio_at: float = 0.0
    stream_finished_at: float = 0.0
    drained_at: float = 0.0

    # Counters
    bytes_received: int = 0
    buffers_enqueued: int = 0
    retries: int = 0

    @staticmethod
    def now() -> float:
        """Return monotonic timestamp for latency measurement."""
        return time.monotonic()

    def mark(self, name: str) -> None:
        """Record ``<name>_at`` once; later calls keep the first value."""
        attr = f"{name}_at"
        if not getattr(self, attr):
            setattr(self, attr, self.now())

    @property
    def first_byte_latency_ms(self) -> float:
        """Request start to first response byte."""
        if self.request_started_at and self.first_byte_at:
            return (self.first_byte_at - self.request_started_at) * 1000
        return 0.0

    @property
    def first_audio_latency_ms(self) -> float:
        """Request start to first PCM buffer scheduled for output."""
        if self.request_started_at and self.first_audio_at:
            return (self.first_audio_at - self.request_started_at) * 1000
        return 0.0

    @property
    def stream_duration_ms(self) -> float:
        if self.request_started_at and self.stream_finished_at:
            return (self.stream_finished_at - self.request_started_at) * 1000
        return 0.0

    @property
    def drain_wait_ms(self) -> float:
        """Stream end to last buffer played."""
        if self.stream_finished_at and self.drained_at:
            return (self.drained_at - self.stream_finished_at) * 1000
        return 0.0

    def summary(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "first_byte_latency_ms": round(self.first_byte_latency_ms, 1),
            "first_audio_latency_ms": round(self.first_audio_latency_ms, 1),
            "stream_duration_ms": round(self.stream_duration_ms, 1),
            "drain_wait_ms": round(self.drain_wait_ms, 1),
            "bytes_received": self.bytes_received,
            "buffers_enqueued": self.buffers_enqueued,
            "retries": self.retries,
        }

    def emit(self) -> None:
        """Log the session metrics summary."""
        if not self.enabled:
            return
        logger.info(
            "Session metrics: %s",
            self.summary(),
            extra={"session_id": self.session_id, "event": "session_metrics"},
        )
