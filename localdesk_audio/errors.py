"""Exception types shared by the assets and dictation subpackages.

WHY: Both subsystems report failures with a machine-readable code, a
human-readable message, and structured context so the UI can show a
useful diagnostic. Keeping the types in one module lets the server and
CLI catch them without importing the whole pipeline.

RULES:
- AudioModelsError.code is one of the asset taxonomy codes
- SidecarProtocolError.code is sidecar_invalid_json or sidecar_invalid_schema
- DictationError is only for call-boundary failures (bad input, bad state)
"""

from __future__ import annotations

from typing import Any


class AudioModelsError(Exception):
    """Raised when model assets cannot be checked or installed.

    WHY: Readiness checks and download campaigns fail for many reasons
    (bad manifest, disk errors, network errors, checksum mismatches) and
    the host needs to tell them apart.

    HOW: Carries code, message and a JSON-serializable context dict.
    to_dict() produces the payload used for error events.

    RULES:
    - context is always a dict (never None)
    - context values must be JSON-serializable
    """

    def __init__(
        self,
        code: str,
        message: str,
        context: dict[str, Any] | None = None,
    ) -> None:
        self.code = code
        self.message = message
        self.context = context or {}
        super().__init__(f"{message} ({code})")

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "context": self.context}


class DictationError(Exception):
    """Raised when a dictation start/stop request is rejected outright."""


class SidecarProtocolError(ValueError):
    """Raised when a sidecar stdout line cannot be decoded.

    WHY: Callers need to distinguish transport corruption (the line is not
    JSON at all) from protocol violations (valid JSON, wrong shape).

    RULES:
    - code is "sidecar_invalid_json" or "sidecar_invalid_schema"
    - line holds the offending input for diagnostics
    """

    def __init__(self, code: str, message: str, line: str) -> None:
        self.code = code
        self.message = message
        self.line = line
        super().__init__(f"{code}: {message}; line={line}")
