"""Shared test fixtures for the localdesk_audio test suite.

WHY: Readiness, download and dictation tests all need small manifests whose
files either exist on disk or are served over a fake HTTP transport, and
none of them may touch the real user data directory.

HOW: Fixtures return factories: file_entry() builds a manifest file dict
(size and sha256 derived from the payload), model_entry() wraps files into
a model dict, and build_manifest() validates dicts into an AssetManifest.
An autouse fixture points LOCALDESK_DATA_DIR at a temp directory.

RULES:
- Every test gets its own models_root under tmp_path
- Download URLs all live under https://models.test/
- Factories use the default "macos" platform section
"""

import hashlib
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

from localdesk_audio.assets.manifest import AssetManifest
from localdesk_audio.events import EventBus

BASE_URL = "https://models.test"


@pytest.fixture(autouse=True)
def _isolated_data_dir(tmp_path, monkeypatch):
    """Keep config.models_dir() away from the real home directory."""
    monkeypatch.setenv("LOCALDESK_DATA_DIR", str(tmp_path / "appdata"))


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def models_root(tmp_path):
    root = tmp_path / "models"
    root.mkdir()
    return root


@pytest.fixture
def file_entry():
    """Factory for a manifest file dict describing payload."""

    def _make(
        path: str,
        payload: bytes = b"",
        size: Optional[int] = None,
        sha256: Optional[str] = None,
    ) -> Dict[str, Any]:
        return {
            "path": path,
            "download_url": "{}/{}".format(BASE_URL, path),
            "sha256": hashlib.sha256(payload).hexdigest() if sha256 is None else sha256,
            "size": len(payload) if size is None else size,
        }

    return _make


@pytest.fixture
def model_entry():
    """Factory for a manifest model dict."""

    def _make(
        key: str,
        files: List[Dict[str, Any]],
        repo_dirname: Optional[str] = None,
        revision_sha: str = "0123abcd",
        **overrides: Any,
    ) -> Dict[str, Any]:
        entry = {
            "key": key,
            "repo_dirname": repo_dirname if repo_dirname is not None else "{}-repo".format(key),
            "model_id": "Example/{}".format(key),
            "source_page_url": "https://huggingface.co/Example/{}".format(key),
            "macos": {"revision_sha": revision_sha, "files": files},
        }
        entry.update(overrides)
        return entry

    return _make


@pytest.fixture
def build_manifest():
    def _make(models: List[Dict[str, Any]]) -> AssetManifest:
        return AssetManifest.from_dict({"models": models})

    return _make


def write_model_file(models_root: Path, repo_dirname: str, path: str, payload: bytes) -> Path:
    """Place payload where the manifest expects it."""
    dest = models_root / repo_dirname / path
    dest.parent.mkdir(parents=True, exist_ok=True)
    dest.write_bytes(payload)
    return dest


@pytest.fixture
def install_file(models_root):
    def _install(repo_dirname: str, path: str, payload: bytes) -> Path:
        return write_model_file(models_root, repo_dirname, path, payload)

    return _install
