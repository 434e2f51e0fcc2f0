"""Model asset provisioning: manifest, readiness, downloads.

WHY: The dictation sidecar refuses to run without its CoreML model files.
This package decides whether they are installed and installs them when
they are not.

RULES:
- Readiness is recomputed on every query (no cached flag)
- Downloads are verified before they become visible at their final path
"""

from localdesk_audio.assets.downloader import AssetDownloader
from localdesk_audio.assets.manifest import AssetManifest, ModelFile, ModelSpec, load_manifest
from localdesk_audio.assets.status import (
    ManifestIncomplete,
    NotInstalled,
    Ready,
    StatusError,
    get_status,
    publish_status,
    status_snapshot,
)

__all__ = [
    "AssetDownloader",
    "AssetManifest",
    "ManifestIncomplete",
    "ModelFile",
    "ModelSpec",
    "NotInstalled",
    "Ready",
    "StatusError",
    "get_status",
    "load_manifest",
    "publish_status",
    "status_snapshot",
]
