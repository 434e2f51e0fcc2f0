"""Pydantic request/response models for the control API.

WHY: The FastAPI endpoints need typed schemas for request validation,
response serialization and the generated OpenAPI docs.

RULES:
- Field names match the host IPC payloads (camelCase via aliases)
- Python 3.9+ compatible (no PEP 604 unions, use Optional from typing)
"""

from __future__ import annotations

from typing import Any, Dict, List

from pydantic import BaseModel, ConfigDict, Field


class DictationRequest(BaseModel):
    """Body of the dictation start/stop endpoints."""

    model_config = ConfigDict(populate_by_name=True)

    dictation_id: str = Field(
        alias="dictationId",
        description="Caller-chosen id of the dictation session.",
    )


class StatusResponse(BaseModel):
    """Current model readiness, tagged by its "state" field."""

    status: Dict[str, Any] = Field(
        description="One of manifest_incomplete, not_installed, ready, error.",
    )


class DownloadStartedResponse(BaseModel):
    accepted: bool = Field(
        description="False when a download campaign was already running.",
    )


class EventEnvelope(BaseModel):
    seq: int = Field(description="Monotonic sequence number.")
    type: str = Field(description="Event type, e.g. 'audio.dictation.final'.")
    payload: Dict[str, Any] = Field(description="Event payload.")


class EventListResponse(BaseModel):
    """Events buffered since the requested sequence number."""

    events: List[EventEnvelope] = Field(description="Events in emission order.")
    last_seq: int = Field(description="Highest sequence number emitted so far.")


class ErrorResponse(BaseModel):
    detail: str = Field(description="Human-readable error description.")


class HealthResponse(BaseModel):
    status: str = Field(description="Service health status.", json_schema_extra={"example": "ok"})
    version: str = Field(description="API version string.", json_schema_extra={"example": "0.1.0"})
