"""Model manifest dataclasses and loader.

WHY: The sidecar needs a fixed set of model files on disk. The manifest is
the single declarative source for which files exist, where they come from,
and what size and checksum they must have. Typed dataclasses make the
structure explicit for the readiness checker and the downloader.

HOW: The manifest JSON ships as package data (model_manifest.json) and can
be overridden with LOCALDESK_MODEL_MANIFEST. load_manifest() parses it,
validates the structure with jsonschema, and builds AssetManifest via the
from_dict factories. Each model carries one file set per platform; only the
configured platform's set is loaded.

RULES:
- Structural problems (wrong types, missing keys) raise manifest_invalid
- Blank values are NOT structural problems: they are reported later by
  the readiness checker as manifest_incomplete
- A model without a section for the platform gets an empty FileSet
- sha256 may be blank, meaning "skip checksum verification"
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import jsonschema

from localdesk_audio.config import MANIFEST_PATH_OVERRIDE, MANIFEST_PLATFORM
from localdesk_audio.errors import AudioModelsError

BUNDLED_MANIFEST_PATH = Path(__file__).resolve().parent / "model_manifest.json"

_FILE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["path", "download_url", "size"],
    "properties": {
        "path": {"type": "string"},
        "download_url": {"type": "string"},
        "sha256": {"type": "string"},
        "size": {"type": "integer", "minimum": 0},
    },
}

_FILE_SET_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "revision_sha": {"type": "string"},
        "files": {"type": "array", "items": _FILE_SCHEMA},
    },
}

MANIFEST_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["models"],
    "properties": {
        "models": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["key", "repo_dirname", "model_id", "source_page_url"],
                "properties": {
                    "key": {"type": "string"},
                    "repo_dirname": {"type": "string"},
                    "model_id": {"type": "string"},
                    "source_page_url": {"type": "string"},
                },
                "additionalProperties": _FILE_SET_SCHEMA,
            },
        },
    },
}


@dataclass
class ModelFile:
    """One downloadable file belonging to a model.

    RULES:
    - path is relative to the model's repo directory
    - size is in bytes and is the readiness criterion
    - sha256 is lowercase or uppercase hex, or blank
    """

    path: str
    download_url: str
    sha256: str
    size: int

    @classmethod
    def from_dict(cls, data: dict) -> ModelFile:
        return cls(
            path=data["path"],
            download_url=data["download_url"],
            sha256=data.get("sha256", ""),
            size=data["size"],
        )


@dataclass
class FileSet:
    """The files of one model for one platform, pinned to a revision."""

    revision_sha: str = ""
    files: list[ModelFile] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict | None) -> FileSet:
        if not data:
            return cls()
        return cls(
            revision_sha=data.get("revision_sha", ""),
            files=[ModelFile.from_dict(f) for f in data.get("files", [])],
        )


@dataclass
class ModelSpec:
    """A single model entry of the manifest.

    WHY: Each model installs into its own subdirectory of the models root
    and is identified by a stable key that the rest of the app refers to.

    RULES:
    - key is unique within a manifest
    - repo_dirname must be a relative path without ".." (checked on use)
    - file_set is the configured platform's FileSet
    """

    key: str
    repo_dirname: str
    model_id: str
    source_page_url: str
    file_set: FileSet

    @classmethod
    def from_dict(cls, data: dict, platform: str = MANIFEST_PLATFORM) -> ModelSpec:
        return cls(
            key=data["key"],
            repo_dirname=data["repo_dirname"],
            model_id=data["model_id"],
            source_page_url=data["source_page_url"],
            file_set=FileSet.from_dict(data.get(platform)),
        )


@dataclass
class AssetManifest:
    """Ordered list of model specs plus the platform they were loaded for."""

    models: list[ModelSpec]
    platform: str = MANIFEST_PLATFORM

    @classmethod
    def from_dict(cls, data: dict, platform: str = MANIFEST_PLATFORM) -> AssetManifest:
        """Validate and parse a raw manifest dict.

        Raises:
            AudioModelsError: manifest_invalid if the structure does not
                match MANIFEST_SCHEMA.
        """
        try:
            jsonschema.validate(instance=data, schema=MANIFEST_SCHEMA)
        except jsonschema.ValidationError as exc:
            path = ".".join(str(p) for p in exc.absolute_path)
            raise AudioModelsError(
                "manifest_invalid",
                "Model manifest does not match the expected structure",
                {"error": exc.message, "at": path},
            ) from exc

        return cls(
            models=[ModelSpec.from_dict(m, platform) for m in data["models"]],
            platform=platform,
        )

    def get(self, key: str) -> ModelSpec | None:
        for model in self.models:
            if model.key == key:
                return model
        return None

    @property
    def keys(self) -> list[str]:
        return [m.key for m in self.models]


def manifest_path() -> Path:
    """Path of the manifest in effect (override or bundled)."""
    if MANIFEST_PATH_OVERRIDE:
        return Path(MANIFEST_PATH_OVERRIDE)
    return BUNDLED_MANIFEST_PATH


def load_manifest(path: Path | None = None, platform: str = MANIFEST_PLATFORM) -> AssetManifest:
    """Read and parse the model manifest.

    WHY: Loaded fresh on every status query and download campaign so that
    a replaced manifest takes effect without restarting the host.

    RULES:
    - Unreadable file or invalid JSON raises manifest_invalid
    - Structure is validated by AssetManifest.from_dict
    """
    path = Path(path) if path is not None else manifest_path()
    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as exc:
        raise AudioModelsError(
            "manifest_invalid",
            "Failed to parse model manifest JSON",
            {"path": str(path), "error": str(exc)},
        ) from exc

    return AssetManifest.from_dict(data, platform)
