"""Synthesis parameters, range validation and wire serialization.

Pure data and validation; nothing here performs I/O.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, ValidationError, model_validator

from sovits_player.config import Settings
from sovits_player.errors import FieldViolation, ValidationFailed

# Closed intervals, inclusive at both ends.
PARAM_RANGES: dict[str, tuple[float, float]] = {
    "batch_size": (1, 200),
    "batch_threshold": (0.0, 1.0),
    "top_k": (1, 100),
    "top_p": (0.01, 1.0),
    "temperature": (0.01, 1.0),
    "repetition_penalty": (0.0, 2.0),
    "speed_factor": (0.01, 2.0),
    "fragment_interval": (0.01, 1.0),
}


class TextSplitMethod(str, Enum):
    """How the server cuts long text before inference."""

    NONE = "cut0"
    FOUR_SENTENCES = "cut1"
    FIFTY_CHARS = "cut2"
    CHINESE_PERIOD = "cut3"
    ENGLISH_PERIOD = "cut4"
    PUNCTUATION = "cut5"

    @property
    def label(self) -> str:
        return _SPLIT_LABELS[self]


_SPLIT_LABELS = {
    TextSplitMethod.NONE: "no split",
    TextSplitMethod.FOUR_SENTENCES: "every four sentences",
    TextSplitMethod.FIFTY_CHARS: "every 50 characters",
    TextSplitMethod.CHINESE_PERIOD: "by Chinese period (。)",
    TextSplitMethod.ENGLISH_PERIOD: "by English period (.)",
    TextSplitMethod.PUNCTUATION: "by punctuation",
}


def check_params(params: SynthesisParams | Mapping[str, Any]) -> list[FieldViolation]:
    """Return every bounded field that lies outside its range.

    An empty list means the parameters are valid.
    """
    if isinstance(params, BaseModel):
        values: Mapping[str, Any] = params.__dict__
    else:
        values = params

    violations: list[FieldViolation] = []
    for name, (lower, upper) in PARAM_RANGES.items():
        if name not in values:
            continue
        value = values[name]
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            violations.append(FieldViolation(name, value, lower, upper))
        elif not lower <= value <= upper:
            violations.append(FieldViolation(name, value, lower, upper))
    return violations


class SynthesisParams(BaseModel):
    """Inference knobs sent with every synthesis request.

    Frozen once built.  Construction raises :class:`ValidationFailed` when
    any bounded field is out of range.
    """

    model_config = ConfigDict(frozen=True, use_enum_values=False, extra="forbid")

    # Text splitting
    text_split_method: TextSplitMethod = TextSplitMethod.PUNCTUATION
    batch_size: int = 1
    batch_threshold: float = 0.75
    split_bucket: bool = True

    # Inference
    top_k: int = 5
    top_p: float = 1.0
    temperature: float = 1.0
    repetition_penalty: float = 1.35
    parallel_infer: bool = True
    speed_factor: float = 1.0
    fragment_interval: float = 0.3

    # Streaming output
    streaming_mode: bool = True

    @model_validator(mode="after")
    def _check_ranges(self) -> SynthesisParams:
        violations = check_params(self)
        if violations:
            raise ValidationFailed(violations)
        return self


def validate_params(params: SynthesisParams | Mapping[str, Any] | None = None) -> SynthesisParams:
    """Validate ``params`` and return a fresh, frozen snapshot.

    Accepts a model (possibly produced by ``model_copy(update=...)``, which
    skips validation) or a plain mapping such as persisted settings.
    Missing keys take their defaults.

    Raises:
        ValidationFailed: listing every violated field with its bounds.
    """
    if params is None:
        return SynthesisParams()
    raw = params.model_dump() if isinstance(params, BaseModel) else dict(params)

    violations = check_params(raw)
    if violations:
        raise ValidationFailed(violations)
    try:
        return SynthesisParams.model_validate(raw)
    except ValidationError as exc:
        # Unknown keys and bad enum/bool values have no range to quote.
        bad = []
        for err in exc.errors():
            name = str(err["loc"][0]) if err["loc"] else "params"
            if err["type"] == "extra_forbidden":
                reason = "unknown parameter"
            else:
                reason = err["msg"]
            bad.append(FieldViolation(name, err.get("input"), reason=reason))
        raise ValidationFailed(bad) from exc


@dataclass(frozen=True)
class SynthesisRequest:
    """Everything needed for one synthesis call.  Built once per playback."""

    text: str
    reference_audio_path: str | None = None
    prompt_text: str | None = None
    params: SynthesisParams = field(default_factory=SynthesisParams)
    max_retries: int = 3


def build_request(
    text: str,
    reference_audio_path: str | None = None,
    prompt_text: str | None = None,
    params: SynthesisParams | Mapping[str, Any] | None = None,
    *,
    max_retries: int = 3,
) -> SynthesisRequest:
    """Validate inputs and assemble a :class:`SynthesisRequest`."""
    if not text or not text.strip():
        raise ValidationFailed(
            [FieldViolation("text", text, 1, float("inf"))],
            "Nothing to synthesize: text is empty",
        )
    if max_retries < 1:
        raise ValidationFailed(
            [FieldViolation("max_retries", max_retries, 1, float("inf"))],
            "max_retries must allow at least one attempt",
        )

    return SynthesisRequest(
        text=text,
        reference_audio_path=reference_audio_path,
        prompt_text=prompt_text,
        params=validate_params(params),
        max_retries=max_retries,
    )


def _wire(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, Enum):
        return str(value.value)
    return str(value)


def build_query(
    request: SynthesisRequest,
    settings: Settings,
    *,
    streaming: bool,
) -> dict[str, str]:
    """Serialize a request into ``/tts`` query parameters."""
    p = request.params
    query = {
        "text": request.text,
        "text_lang": settings.text_lang,
        "ref_audio_path": request.reference_audio_path or "",
        "prompt_lang": settings.prompt_lang,
        "prompt_text": request.prompt_text or settings.default_prompt_text,
        "text_split_method": p.text_split_method,
        "batch_size": p.batch_size,
        "batch_threshold": p.batch_threshold,
        "split_bucket": p.split_bucket,
        "top_k": p.top_k,
        "top_p": p.top_p,
        "temperature": p.temperature,
        "repetition_penalty": p.repetition_penalty,
        "parallel_infer": p.parallel_infer,
        "speed_factor": p.speed_factor,
        "fragment_interval": p.fragment_interval,
        "streaming_mode": streaming,
        "media_type": "wav",
    }
    return {key: _wire(value) for key, value in query.items()}
