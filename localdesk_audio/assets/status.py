"""Asset readiness: compare the manifest against what is on disk.

WHY: Dictation must not start until every required model file is in place,
and the settings UI needs an itemized picture of what is missing. The
answer is computed fresh on every query; nothing about readiness is
cached or persisted.

HOW: get_status() walks the required models of the manifest, validates
their fields, resolves every declared file path under the models root and
applies the presence rule (regular file with the declared byte size). The
result is one of four status variants, each serializable with to_dict()
using a "state" discriminant.

RULES:
- Empty required_keys raises settings_invalid
- A required key missing from the manifest raises manifest_invalid
- Blank manifest fields are accumulated and returned as ManifestIncomplete
- Absolute or ".." file paths raise manifest_invalid before any disk access
- Presence is size-only; checksums are enforced by the downloader
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path, PurePath
from typing import Any, Sequence, Union

from localdesk_audio import config
from localdesk_audio.assets.manifest import AssetManifest, ModelFile, load_manifest
from localdesk_audio.errors import AudioModelsError
from localdesk_audio.events import EventBus


@dataclass
class ModelInstallStatus:
    """Per-model file and byte counts."""

    key: str
    repo_dirname: str
    revision_sha: str
    total_files: int = 0
    present_files: int = 0
    total_bytes: int = 0
    present_bytes: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "repoDirname": self.repo_dirname,
            "revisionSha": self.revision_sha,
            "totalFiles": self.total_files,
            "presentFiles": self.present_files,
            "totalBytes": self.total_bytes,
            "presentBytes": self.present_bytes,
        }


@dataclass
class ManifestIncomplete:
    """The manifest lacks fields needed to decide readiness."""

    message: str
    missing: list[str] = field(default_factory=list)

    state = "manifest_incomplete"

    def to_dict(self) -> dict[str, Any]:
        return {"state": self.state, "message": self.message, "missing": list(self.missing)}


@dataclass
class NotInstalled:
    """At least one required file is absent or has the wrong size."""

    models_dir: str
    total_files: int
    present_files: int
    total_bytes: int
    present_bytes: int
    models: list[ModelInstallStatus]

    state = "not_installed"

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state,
            "models_dir": self.models_dir,
            "total_files": self.total_files,
            "present_files": self.present_files,
            "total_bytes": self.total_bytes,
            "present_bytes": self.present_bytes,
            "models": [m.to_dict() for m in self.models],
        }


@dataclass
class Ready:
    """Every required file is present with its declared size."""

    models_dir: str
    total_files: int
    total_bytes: int
    models: list[ModelInstallStatus]

    state = "ready"

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state,
            "models_dir": self.models_dir,
            "total_files": self.total_files,
            "total_bytes": self.total_bytes,
            "models": [m.to_dict() for m in self.models],
        }


@dataclass
class StatusError:
    """The status could not be computed; mirrors an AudioModelsError."""

    code: str
    message: str
    context: dict[str, Any] = field(default_factory=dict)

    state = "error"

    @classmethod
    def from_exception(cls, exc: AudioModelsError) -> StatusError:
        return cls(code=exc.code, message=exc.message, context=exc.context)

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state,
            "code": self.code,
            "message": self.message,
            "context": self.context,
        }


AudioAssetsStatus = Union[ManifestIncomplete, NotInstalled, Ready, StatusError]


# ---------------------------------------------------------------------------
# Path helpers (shared with the downloader)
# ---------------------------------------------------------------------------


def _escapes_root(rel: PurePath) -> bool:
    return rel.is_absolute() or bool(rel.anchor) or ".." in rel.parts


def repo_dir(models_root: Path, repo_dirname: str) -> Path:
    """Resolve and create the install directory of one model.

    Raises:
        AudioModelsError: invalid_args for a blank or escaping name,
            io_failed if the directory cannot be created.
    """
    if not repo_dirname.strip():
        raise AudioModelsError(
            "invalid_args", "repo_dirname is required", {"repo_dirname": repo_dirname}
        )

    rel = PurePath(repo_dirname)
    if _escapes_root(rel):
        raise AudioModelsError(
            "invalid_args",
            "repo_dirname must be a relative path without '..'",
            {"repo_dirname": repo_dirname},
        )

    path = models_root / rel
    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise AudioModelsError(
            "io_failed",
            "Failed to create model repo dir",
            {"path": str(path), "error": str(exc)},
        ) from exc
    return path


def model_file_path(repo: Path, model_file: ModelFile) -> Path:
    """Join a manifest file path onto its repo dir, refusing traversal."""
    rel = PurePath(model_file.path)
    if not model_file.path or _escapes_root(rel):
        raise AudioModelsError(
            "manifest_invalid",
            "Manifest contains an invalid relative path",
            {"path": model_file.path},
        )
    return repo / rel


def is_present(path: Path, expected_size: int) -> bool:
    """True iff path is a regular file of exactly expected_size bytes."""
    try:
        return path.is_file() and path.stat().st_size == expected_size
    except OSError:
        return False


# ---------------------------------------------------------------------------
# Readiness
# ---------------------------------------------------------------------------


def _missing_fields(manifest: AssetManifest, required_keys: Sequence[str]) -> list[str]:
    missing: list[str] = []
    platform = manifest.platform
    for idx, m in enumerate(manifest.models):
        if m.key not in required_keys:
            continue
        prefix = f"models[{idx}]"
        if not m.key.strip():
            missing.append(f"{prefix}.key")
        if not m.repo_dirname.strip():
            missing.append(f"{prefix}.repo_dirname")
        if not m.model_id.strip():
            missing.append(f"{prefix}.model_id")
        if not m.source_page_url.strip():
            missing.append(f"{prefix}.source_page_url")
        if not m.file_set.revision_sha.strip():
            missing.append(f"{prefix}.{platform}.revision_sha")
        if not m.file_set.files:
            missing.append(f"{prefix}.{platform}.files")
    return missing


def get_status(
    required_keys: Sequence[str],
    manifest: AssetManifest | None = None,
    models_root: Path | None = None,
) -> AudioAssetsStatus:
    """Classify the on-disk state of the required models.

    WHY: This is the gate for dictation and the data behind the settings
    screen. Configuration mistakes (no keys, unknown key, traversal paths)
    are hard failures; an unfinished manifest or missing files are normal,
    user-facing states.

    HOW: Validates inputs, then counts files and bytes per model and
    globally. manifest and models_root default to the bundled manifest and
    config.models_dir().

    RULES:
    - Never returns StatusError; failures raise AudioModelsError
    - Only models listed in required_keys are inspected
    - missing dot-paths use the model's index in the full manifest

    Args:
        required_keys: Manifest keys that must be installed.
        manifest: Pre-loaded manifest (loaded from disk when None).
        models_root: Models root directory (config default when None).

    Returns:
        ManifestIncomplete, NotInstalled or Ready.
    """
    if not required_keys:
        raise AudioModelsError("settings_invalid", "No required models configured")

    if manifest is None:
        manifest = load_manifest()

    if not manifest.models:
        return ManifestIncomplete(message="Model manifest has no models", missing=["models"])

    for key in required_keys:
        if manifest.get(key) is None:
            raise AudioModelsError(
                "manifest_invalid",
                "Required model key does not exist in manifest",
                {"model_key": key, "available_keys": manifest.keys},
            )

    missing = _missing_fields(manifest, required_keys)
    if missing:
        return ManifestIncomplete(
            message="Model manifest is missing required fields to determine readiness",
            missing=missing,
        )

    root = models_root if models_root is not None else config.models_dir()
    models: list[ModelInstallStatus] = []

    for m in manifest.models:
        if m.key not in required_keys:
            continue

        repo = repo_dir(root, m.repo_dirname)
        item = ModelInstallStatus(
            key=m.key,
            repo_dirname=m.repo_dirname,
            revision_sha=m.file_set.revision_sha,
        )

        for f in m.file_set.files:
            item.total_files += 1
            item.total_bytes += f.size
            if is_present(model_file_path(repo, f), f.size):
                item.present_files += 1
                item.present_bytes += f.size

        models.append(item)

    total_files = sum(m.total_files for m in models)
    present_files = sum(m.present_files for m in models)
    total_bytes = sum(m.total_bytes for m in models)
    present_bytes = sum(m.present_bytes for m in models)

    if present_files != total_files:
        return NotInstalled(
            models_dir=str(root),
            total_files=total_files,
            present_files=present_files,
            total_bytes=total_bytes,
            present_bytes=present_bytes,
            models=models,
        )

    return Ready(
        models_dir=str(root),
        total_files=total_files,
        total_bytes=total_bytes,
        models=models,
    )


def status_snapshot(
    required_keys: Sequence[str] = config.REQUIRED_MODEL_KEYS,
    manifest: AssetManifest | None = None,
    models_root: Path | None = None,
) -> AudioAssetsStatus:
    """get_status() with hard failures folded into the StatusError variant."""
    try:
        return get_status(required_keys, manifest=manifest, models_root=models_root)
    except AudioModelsError as exc:
        return StatusError.from_exception(exc)


def publish_status(
    bus: EventBus,
    required_keys: Sequence[str] = config.REQUIRED_MODEL_KEYS,
    manifest: AssetManifest | None = None,
    models_root: Path | None = None,
) -> AudioAssetsStatus:
    """Compute the status snapshot and emit it as audio.models.status."""
    status = status_snapshot(required_keys, manifest=manifest, models_root=models_root)
    bus.emit("audio.models.status", {"status": status.to_dict()})
    return status
