"""asr-sidecar wire protocol: host commands and recognizer events.

WHY: The sidecar talks newline-delimited JSON over stdin/stdout. Anything
it prints goes straight to the UI, so every line is decoded into one of a
closed set of event types before it is forwarded. Unknown or malformed
lines are errors, not something to pass through.

HOW: parse_sidecar_event_line() decodes one line, reads the "t"
discriminant, and validates the object against that variant's JSON schema
with jsonschema. The encoders build the three host commands as compact
single-line JSON.

RULES:
- Invalid JSON (including nesting too deep to decode) -> sidecar_invalid_json
- Non-object, missing/unknown "t", or a missing/wrong-typed required
  field -> sidecar_invalid_schema
- Optional fields are lenient: a wrong-typed unstable/start/end becomes
  None, a wrong-typed log msg becomes "", and error context is forwarded
  as it arrives
- LogEvent is decoded but intentionally carries no behavior
- Parsing is pure: no I/O, no event emission
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Optional, Union

import jsonschema

from localdesk_audio import config
from localdesk_audio.errors import SidecarProtocolError

# ---------------------------------------------------------------------------
# Recognizer -> host events
# ---------------------------------------------------------------------------


@dataclass
class PartialEvent:
    """Interim hypothesis; unstable is the tail that may still change."""

    text: str
    unstable: Optional[str] = None


@dataclass
class FinalEvent:
    """Committed segment with optional start/end offsets in seconds."""

    text: str
    start: Optional[float] = None
    end: Optional[float] = None


@dataclass
class AudioLevelEvent:
    level: float


@dataclass
class ErrorEvent:
    """Recognizer-side failure. Ends the session's stdout stream."""

    code: str
    msg: str
    context: Any = field(default_factory=dict)


@dataclass
class LogEvent:
    """Diagnostic chatter from the recognizer. Decoded, then ignored."""

    msg: str = ""


SidecarEvent = Union[PartialEvent, FinalEvent, AudioLevelEvent, ErrorEvent, LogEvent]

EVENT_SCHEMAS: dict[str, dict[str, Any]] = {
    "partial": {
        "type": "object",
        "required": ["text"],
        "properties": {"text": {"type": "string"}},
    },
    "final": {
        "type": "object",
        "required": ["text"],
        "properties": {"text": {"type": "string"}},
    },
    "audio_level": {
        "type": "object",
        "required": ["level"],
        "properties": {"level": {"type": "number"}},
    },
    "log": {"type": "object"},
    "error": {
        "type": "object",
        "required": ["code", "msg"],
        "properties": {"code": {"type": "string"}, "msg": {"type": "string"}},
    },
}
"""Required fields only; optional fields are normalized in _build_event."""


def _optional_str(value: Any) -> Optional[str]:
    return value if isinstance(value, str) else None


def _optional_float(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


def _build_event(t: str, obj: dict[str, Any]) -> SidecarEvent:
    if t == "partial":
        return PartialEvent(text=obj["text"], unstable=_optional_str(obj.get("unstable")))
    if t == "final":
        return FinalEvent(
            text=obj["text"],
            start=_optional_float(obj.get("start")),
            end=_optional_float(obj.get("end")),
        )
    if t == "audio_level":
        return AudioLevelEvent(level=float(obj["level"]))
    if t == "log":
        return LogEvent(msg=_optional_str(obj.get("msg")) or "")
    return ErrorEvent(code=obj["code"], msg=obj["msg"], context=obj.get("context", {}))


def parse_sidecar_event_line(line: str) -> SidecarEvent:
    """Decode one trimmed, non-empty stdout line into a SidecarEvent.

    Raises:
        SidecarProtocolError: with code sidecar_invalid_json or
            sidecar_invalid_schema.
    """
    try:
        obj = json.loads(line)
    except (json.JSONDecodeError, RecursionError) as exc:
        raise SidecarProtocolError("sidecar_invalid_json", str(exc), line) from exc

    if not isinstance(obj, dict):
        raise SidecarProtocolError("sidecar_invalid_schema", "line is not a JSON object", line)

    t = obj.get("t")
    if not isinstance(t, str):
        raise SidecarProtocolError("sidecar_invalid_schema", "missing t", line)

    schema = EVENT_SCHEMAS.get(t)
    if schema is None:
        raise SidecarProtocolError("sidecar_invalid_schema", f"unknown t value: {t}", line)

    try:
        jsonschema.validate(instance=obj, schema=schema)
    except jsonschema.ValidationError as exc:
        raise SidecarProtocolError("sidecar_invalid_schema", f"{t}: {exc.message}", line) from exc

    return _build_event(t, obj)


# ---------------------------------------------------------------------------
# Host -> recognizer commands
# ---------------------------------------------------------------------------


def _encode(command: dict[str, Any]) -> str:
    return json.dumps(command, separators=(",", ":"))


def init_command(
    model_key: str = config.ASR_MODEL_KEY,
    sample_rate: int = config.SAMPLE_RATE,
    mode: str = config.DICTATION_MODE,
) -> str:
    return _encode(
        {
            "cmd": "init",
            "config": {"sample_rate": sample_rate, "mode": mode, "model_key": model_key},
        }
    )


def mic_start_command(device_id: str = config.MIC_DEVICE_ID) -> str:
    return _encode({"cmd": "mic_start", "device_id": device_id})


def mic_stop_command() -> str:
    return _encode({"cmd": "mic_stop"})
