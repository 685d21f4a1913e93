"""Centralised configuration via pydantic-settings + .env."""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """All knobs live here.  Loaded from environment / .env in project root."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── GPT-SoVITS server ───────────────────────────────
    sovits_host: str = "127.0.0.1"
    sovits_port: int = 9880
    sovits_tts_path: str = "/tts"
    text_lang: str = "zh"
    prompt_lang: str = "zh"
    default_prompt_text: str = "这是一个测试音频"

    # ── Timeouts / retries ──────────────────────────────
    probe_timeout_s: float = 5.0
    request_timeout_s: float = 180.0
    max_retries: int = 3
    retry_backoff_s: float = 2.0

    # ── Streaming ───────────────────────────────────────
    stream_chunk_bytes: int = 4096
    frames_per_buffer: int = 1024
    pad_partial_buffer: bool = False
    drain_timeout_s: float = 10.0

    # ── Audio output ────────────────────────────────────
    audio_device: str | None = None
    audio_latency: Literal["low", "high"] = "low"

    # ── Persisted parameters ────────────────────────────
    params_store_path: Path = Path.home() / ".sovits_player" / "params.json"

    # ── Logging / Metrics ───────────────────────────────
    log_level: str = "INFO"
    log_json: bool = True
    metrics_enabled: bool = True

    # ── Derived helpers ──────────────────────────────────
    @property
    def sovits_base_url(self) -> str:
        return f"http://{self.sovits_host}:{self.sovits_port}"

    @property
    def sovits_tts_url(self) -> str:
        return f"{self.sovits_base_url}{self.sovits_tts_path}"

    @field_validator("stream_chunk_bytes", "frames_per_buffer", "max_retries")
    @classmethod
    def _positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be a positive integer")
        return v

    @field_validator("retry_backoff_s")
    @classmethod
    def _non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("must not be negative")
        return v

    @field_validator("drain_timeout_s")
    @classmethod
    def _positive_duration(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("must be greater than zero")
        return v


def get_settings() -> Settings:
    """Build settings from the environment; call from the composition root."""
    return Settings()
