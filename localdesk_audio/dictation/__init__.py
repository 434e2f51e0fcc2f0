"""Live dictation through the external asr-sidecar recognizer.

WHY: Speech recognition runs out of process; the host only drives it and
relays what it says. This package holds the wire protocol and the
process supervisor.
"""

from localdesk_audio.dictation.protocol import (
    AudioLevelEvent,
    ErrorEvent,
    FinalEvent,
    LogEvent,
    PartialEvent,
    SidecarEvent,
    parse_sidecar_event_line,
)
from localdesk_audio.dictation.supervisor import DictationManager, resolve_sidecar_entry

__all__ = [
    "AudioLevelEvent",
    "DictationManager",
    "ErrorEvent",
    "FinalEvent",
    "LogEvent",
    "PartialEvent",
    "SidecarEvent",
    "parse_sidecar_event_line",
    "resolve_sidecar_entry",
]
