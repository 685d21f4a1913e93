"""Persisted playback preferences: reference audio, prompt text and params."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field

from sovits_player.config import Settings
from sovits_player.errors import SovitsError
from sovits_player.logging import get_logger
from sovits_player.request_builder import SynthesisParams, validate_params

logger = get_logger("store")


class StoredPreferences(BaseModel):
    """What the settings screen writes and each playback reads."""

    model_config = ConfigDict(frozen=True)

    reference_audio_path: Optional[str] = None
    prompt_text: str = ""
    params: SynthesisParams = Field(default_factory=SynthesisParams)


class ParamsStore:
    """JSON-file key-value store for :class:`StoredPreferences`.

    Reads never fail: missing or unreadable data falls back to defaults.
    Writes validate first, so invalid parameters are never persisted.
    """

    def __init__(self, path: Path) -> None:
        self._path = Path(path)

    @classmethod
    def from_settings(cls, settings: Settings) -> ParamsStore:
        return cls(settings.params_store_path)

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> StoredPreferences:
        if not self._path.exists():
            return StoredPreferences()
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
            if not isinstance(raw, dict):
                raise ValueError("top-level JSON value is not an object")
            params = validate_params(raw.get("params") or {})
            return StoredPreferences(
                reference_audio_path=raw.get("reference_audio_path"),
                prompt_text=raw.get("prompt_text") or "",
                params=params,
            )
        except (OSError, ValueError, SovitsError) as exc:
            logger.warning(
                "Ignoring unreadable preferences at %s: %s",
                self._path,
                exc,
                extra={"event": "store_load_failed"},
            )
            return StoredPreferences()

    def save(self, prefs: StoredPreferences) -> None:
        """Validate and atomically write ``prefs``."""
        validate_params(prefs.params)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_suffix(self._path.suffix + ".tmp")
        tmp.write_text(
            json.dumps(prefs.model_dump(mode="json"), ensure_ascii=False, indent=2),
            encoding="utf-8",
        )
        tmp.replace(self._path)
        logger.info("Preferences saved to %s", self._path, extra={"event": "store_saved"})

    def update(
        self,
        *,
        reference_audio_path: Optional[str] = None,
        prompt_text: Optional[str] = None,
        params: Mapping[str, Any] | None = None,
    ) -> StoredPreferences:
        """Merge the given values into the stored preferences and save."""
        current = self.load()
        changes: dict[str, Any] = {}
        if reference_audio_path is not None:
            changes["reference_audio_path"] = reference_audio_path
        if prompt_text is not None:
            changes["prompt_text"] = prompt_text
        if params:
            merged = current.params.model_dump()
            merged.update(params)
            changes["params"] = validate_params(merged)
        prefs = current.model_copy(update=changes)
        self.save(prefs)
        return prefs
