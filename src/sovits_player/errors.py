"""Error taxonomy surfaced by the synthesis and playback pipeline.

Every error carries a human-readable ``message`` suitable for display.
"""

from __future__ import annotations

from dataclasses import dataclass


class SovitsError(Exception):
    """Base class for all player errors."""

    default_message = "Speech playback error"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


@dataclass(frozen=True)
class FieldViolation:
    """One rejected parameter: outside its closed range, or otherwise invalid."""

    field: str
    value: object
    lower: float | None = None
    upper: float | None = None
    reason: str | None = None

    def describe(self) -> str:
        if self.lower is not None and self.upper is not None:
            return f"{self.field} must be between {self.lower} and {self.upper} (got {self.value!r})"
        return f"{self.field}: {self.reason or 'invalid value'} (got {self.value!r})"


class ValidationFailed(SovitsError):
    """Bad parameter range.  Local; never sent over the wire."""

    default_message = "Invalid synthesis parameters"

    def __init__(self, violations: list[FieldViolation], message: str | None = None) -> None:
        self.violations = list(violations)
        if message is None:
            message = f"{self.default_message}: " + "; ".join(
                v.describe() for v in self.violations
            )
        super().__init__(message)

    @property
    def fields(self) -> list[str]:
        return [v.field for v in self.violations]


class ServerUnavailable(SovitsError):
    """Availability probe or connection failure."""

    default_message = "Cannot reach the speech server; check that it is running"


class SynthesisFailed(SovitsError):
    """Server answered with a non-200 status, or the stream broke mid-way."""

    default_message = "unknown error"

    def __init__(self, reason: str | None = None, status: int | None = None) -> None:
        self.reason = reason or self.default_message
        self.status = status
        super().__init__(f"Speech synthesis failed: {self.reason}")


class InvalidResponse(SovitsError):
    """Malformed URL or unexpected response shape."""

    default_message = "The server returned an invalid response"


class MalformedHeader(SovitsError):
    """The byte stream did not start with a usable RIFF/WAV header."""

    default_message = "Invalid WAV header in audio stream"


class PlaybackFailed(SovitsError):
    """The audio output engine failed."""

    default_message = "Audio playback failed; check the output device"
