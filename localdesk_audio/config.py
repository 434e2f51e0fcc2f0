"""Configuration constants, directory resolution, and .env loading.

WHY: Centralizes the values both subsystems depend on (required model keys,
the sidecar binary prefix, protocol constants, directories) so they are
easy to find and override without touching pipeline code.

HOW: python-dotenv loads the .env file on import. Constants are module-level
values; anything environment-dependent is read through os.getenv with a
default. Directory helpers resolve lazily so importing this module never
touches the filesystem.

RULES:
- All defaults can be overridden via LOCALDESK_* environment variables
- models_dir() creates the directory and raises AudioModelsError on failure
- The app data directory name matches the desktop product name ("LocalDesk")
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

from dotenv import load_dotenv

from localdesk_audio.errors import AudioModelsError

load_dotenv()

APP_DIR_NAME = "LocalDesk"

# ---------------------------------------------------------------------------
# Model assets
# ---------------------------------------------------------------------------

REQUIRED_MODEL_KEYS: tuple[str, ...] = ("asr_tdt_v3", "silero_vad_v6")
"""Manifest keys that must be installed before dictation can start."""

ASR_MODEL_KEY = "asr_tdt_v3"

MANIFEST_PLATFORM = os.getenv("LOCALDESK_MANIFEST_PLATFORM", "macos")
"""Which per-platform file set of each manifest entry to use."""

MANIFEST_PATH_OVERRIDE = os.getenv("LOCALDESK_MODEL_MANIFEST", "")

DOWNLOAD_CHUNK_SIZE = 64 * 1024
DOWNLOAD_TIMEOUT_S = 300.0
DOWNLOAD_CONNECT_TIMEOUT_S = 30.0

# ---------------------------------------------------------------------------
# Dictation sidecar
# ---------------------------------------------------------------------------

SIDECAR_PREFIX = "asr-sidecar"
SAMPLE_RATE = 16000
DICTATION_MODE = "mic"
MIC_DEVICE_ID = "default"

# ---------------------------------------------------------------------------
# Control surfaces
# ---------------------------------------------------------------------------

LOG_LEVEL = os.getenv("LOCALDESK_LOG_LEVEL", "INFO").upper()
API_HOST = os.getenv("LOCALDESK_API_HOST", "127.0.0.1")
API_PORT = int(os.getenv("LOCALDESK_API_PORT", "8765"))


def app_data_dir() -> Path:
    """Return the per-user LocalDesk data directory.

    HOW: LOCALDESK_DATA_DIR wins when set. Otherwise follows the platform
    convention: %APPDATA% on Windows, ~/Library/Application Support on
    macOS, $XDG_CONFIG_HOME (or ~/.config) elsewhere.

    RULES:
    - Raises AudioModelsError("path_resolve_failed") if no base can be found
    - Does not create the directory
    """
    override = os.getenv("LOCALDESK_DATA_DIR", "").strip()
    if override:
        return Path(override)

    if sys.platform.startswith("win"):
        appdata = os.getenv("APPDATA", "").strip()
        if not appdata:
            raise AudioModelsError("path_resolve_failed", "[path] APPDATA is not set")
        return Path(appdata) / APP_DIR_NAME

    try:
        home = Path.home()
    except RuntimeError as exc:
        raise AudioModelsError(
            "path_resolve_failed",
            "[path] Failed to resolve home directory",
            {"error": str(exc)},
        ) from exc

    if sys.platform == "darwin":
        return home / "Library" / "Application Support" / APP_DIR_NAME

    xdg = os.getenv("XDG_CONFIG_HOME", "").strip()
    if xdg:
        return Path(xdg) / APP_DIR_NAME
    return home / ".config" / APP_DIR_NAME


def models_dir() -> Path:
    """Return the models root directory, creating it if needed."""
    path = app_data_dir() / "models"
    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise AudioModelsError(
            "io_failed",
            "Failed to create models dir",
            {"path": str(path), "error": str(exc)},
        ) from exc
    return path


def sidecar_search_dir() -> Path:
    """Directory scanned for the asr-sidecar binary.

    The sidecar ships beside the host executable, so the default is the
    directory of the running interpreter (the frozen app binary in a
    bundled build).
    """
    override = os.getenv("LOCALDESK_SIDECAR_DIR", "").strip()
    if override:
        return Path(override)
    return Path(sys.executable).resolve().parent
