"""Verified, atomic download campaigns for model assets.

WHY: Model files are large and come over the network. A half-written or
corrupted file at its final path would make the readiness check lie (it
only compares sizes), so a file must never appear at its destination
until it has been fully downloaded and verified.

HOW: A campaign is planned first (manifest -> worklist of missing or
wrong-sized files), then executed sequentially. Each file streams through
httpx into "<name>.partial" beside its destination while a SHA-256 digest
and byte counter are updated. After the stream ends the size and checksum
are checked, any existing destination is removed, and the partial file is
renamed into place. Progress events carry a global byte offset so the UI
sees one monotonically increasing bar across all files.

RULES:
- Only one campaign runs per process; a second start emits invalid_state
- The single-flight guard is released on every exit path
- Any failure deletes the partial file and aborts the whole campaign
- Blank sha256 in the manifest skips checksum verification (size is still checked)
- A trailing progress event pinned to bytesTotal precedes every done event
"""

from __future__ import annotations

import hashlib
import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Sequence

import httpx

from localdesk_audio import config
from localdesk_audio.assets.manifest import AssetManifest, load_manifest
from localdesk_audio.assets.status import is_present, model_file_path, repo_dir
from localdesk_audio.errors import AudioModelsError
from localdesk_audio.events import EventBus

logger = logging.getLogger(__name__)

EVENT_PROGRESS = "audio.models.download.progress"
EVENT_DONE = "audio.models.download.done"
EVENT_ERROR = "audio.models.download.error"

_CAMPAIGN_GUARD = threading.Lock()
"""Process-wide single-flight flag: held for the lifetime of a campaign."""


@dataclass
class PendingDownload:
    """One worklist entry: a file that is missing or has the wrong size."""

    dest_path: Path
    download_url: str
    expected_sha256: str
    expected_size: int

    @property
    def tmp_path(self) -> Path:
        return self.dest_path.with_name(self.dest_path.name + ".partial")


@dataclass
class CampaignPlan:
    pending: list[PendingDownload]
    bytes_total: int
    bytes_present: int


class AssetDownloader:
    """Runs download campaigns and reports them on the event bus.

    WHY: The settings UI triggers "download models" and then only listens
    for progress, done and error events. The downloader owns everything in
    between.

    HOW: start() claims the single-flight guard and runs the campaign on a
    daemon thread; run() does the same on the calling thread. Both funnel
    into _run_claimed(), whose finally block releases the guard.

    RULES:
    - All HTTP goes through one httpx.Client per campaign
    - Network errors and non-2xx responses map to http_failed
    - Filesystem errors map to io_failed
    - transport is injectable so tests can use httpx.MockTransport
    """

    def __init__(
        self,
        bus: EventBus,
        required_keys: Sequence[str] = config.REQUIRED_MODEL_KEYS,
        manifest: AssetManifest | None = None,
        models_root: Path | None = None,
        transport: httpx.BaseTransport | None = None,
        chunk_size: int = config.DOWNLOAD_CHUNK_SIZE,
        guard: threading.Lock | None = None,
    ) -> None:
        self._bus = bus
        self._required_keys = tuple(required_keys)
        self._manifest = manifest
        self._models_root = models_root
        self._transport = transport
        self._chunk_size = chunk_size
        self._guard = guard if guard is not None else _CAMPAIGN_GUARD
        self.thread: threading.Thread | None = None

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def start(self) -> bool:
        """Start a campaign in the background.

        Returns:
            True if the campaign was accepted, False if one is already
            running (an invalid_state error event is emitted instead).
        """
        if not self._claim():
            return False

        self.thread = threading.Thread(
            target=self._run_claimed,
            name="asset-download",
            daemon=True,
        )
        self.thread.start()
        return True

    def run(self) -> bool:
        """Run a campaign on the calling thread. Returns True on success."""
        if not self._claim():
            return False
        return self._run_claimed()

    @property
    def in_progress(self) -> bool:
        return self._guard.locked()

    # ------------------------------------------------------------------
    # Campaign
    # ------------------------------------------------------------------

    def _claim(self) -> bool:
        if self._guard.acquire(blocking=False):
            return True
        self._emit_error(
            AudioModelsError("invalid_state", "Download is already in progress")
        )
        return False

    def _run_claimed(self) -> bool:
        try:
            return self._campaign()
        finally:
            self._guard.release()

    def _campaign(self) -> bool:
        try:
            plan = self.plan()
            if plan.pending:
                self._download_all(plan)
        except AudioModelsError as err:
            logger.error(
                "audio_models_download_failed code=%s message=%s context=%s",
                err.code,
                err.message,
                err.context,
            )
            self._emit_error(err)
            return False
        except Exception as exc:
            logger.exception("Model download campaign crashed")
            self._emit_error(
                AudioModelsError("io_failed", "Unexpected download failure", {"error": str(exc)})
            )
            return False

        self._emit_progress(plan.bytes_total, plan.bytes_total)
        self._bus.emit(EVENT_DONE, {})
        logger.info(
            "Model download campaign finished (%d file(s), %d bytes total)",
            len(plan.pending),
            plan.bytes_total,
        )
        return True

    def plan(self) -> CampaignPlan:
        """Build the worklist without touching the network.

        HOW: Same presence rule as the readiness checker: a file of the
        declared size counts as installed and contributes to bytes_present.

        RULES:
        - Raises manifest_invalid for unknown required keys or traversal paths
        - Raises manifest_incomplete for a required model with no files
        - Worklist order follows manifest order
        """
        manifest = self._manifest if self._manifest is not None else load_manifest()
        root = self._models_root if self._models_root is not None else config.models_dir()

        for key in self._required_keys:
            if manifest.get(key) is None:
                raise AudioModelsError(
                    "manifest_invalid",
                    "Required model key does not exist in manifest",
                    {"model_key": key, "available_keys": manifest.keys},
                )

        required = [m for m in manifest.models if m.key in self._required_keys]
        bytes_total = sum(f.size for m in required for f in m.file_set.files)
        bytes_present = 0
        pending: list[PendingDownload] = []

        for m in required:
            if not m.file_set.files:
                raise AudioModelsError(
                    "manifest_incomplete",
                    "Model manifest has a required model with no files",
                    {"modelKey": m.key, "missing": [f"{manifest.platform}.files"]},
                )

            repo = repo_dir(root, m.repo_dirname)
            for f in m.file_set.files:
                dest_path = model_file_path(repo, f)
                if is_present(dest_path, f.size):
                    bytes_present += f.size
                    continue
                pending.append(
                    PendingDownload(
                        dest_path=dest_path,
                        download_url=f.download_url,
                        expected_sha256=f.sha256,
                        expected_size=f.size,
                    )
                )

        return CampaignPlan(pending=pending, bytes_total=bytes_total, bytes_present=bytes_present)

    def _download_all(self, plan: CampaignPlan) -> None:
        offset = plan.bytes_present
        self._emit_progress(offset, plan.bytes_total)

        timeout = httpx.Timeout(config.DOWNLOAD_TIMEOUT_S, connect=config.DOWNLOAD_CONNECT_TIMEOUT_S)
        with httpx.Client(timeout=timeout, follow_redirects=True, transport=self._transport) as client:
            for item in plan.pending:
                logger.info("Downloading %s -> %s", item.download_url, item.dest_path)
                try:
                    downloaded = self._download_to_tmp(client, item, offset, plan.bytes_total)
                    _install(item)
                except BaseException:
                    _discard(item.tmp_path)
                    raise
                offset += downloaded

    def _download_to_tmp(
        self,
        client: httpx.Client,
        item: PendingDownload,
        offset: int,
        bytes_total: int,
    ) -> int:
        """Stream one file into its .partial path and verify it.

        Returns:
            Number of bytes written.
        """
        url = item.download_url
        tmp_path = item.tmp_path
        expected_sha256 = item.expected_sha256.strip()
        hasher = hashlib.sha256() if expected_sha256 else None
        written = 0

        try:
            tmp_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise AudioModelsError(
                "io_failed",
                "Failed to create download directory",
                {"path": str(tmp_path.parent), "error": str(exc)},
            ) from exc

        try:
            with client.stream("GET", url) as response:
                if not response.is_success:
                    raise AudioModelsError(
                        "http_failed",
                        "HTTP download returned non-success status",
                        {"url": url, "status": response.status_code},
                    )

                with open(tmp_path, "wb") as f:
                    for chunk in response.iter_bytes(self._chunk_size):
                        f.write(chunk)
                        if hasher is not None:
                            hasher.update(chunk)
                        written += len(chunk)
                        self._emit_progress(offset + written, bytes_total)
        except httpx.HTTPError as exc:
            raise AudioModelsError(
                "http_failed",
                "Failed while streaming HTTP response",
                {"url": url, "error": str(exc)},
            ) from exc
        except OSError as exc:
            raise AudioModelsError(
                "io_failed",
                "Failed to write downloaded file",
                {"path": str(tmp_path), "error": str(exc)},
            ) from exc

        try:
            actual_size = tmp_path.stat().st_size
        except OSError as exc:
            raise AudioModelsError(
                "io_failed",
                "Failed to stat downloaded file",
                {"path": str(tmp_path), "error": str(exc)},
            ) from exc

        if actual_size != item.expected_size:
            raise AudioModelsError(
                "size_mismatch",
                "Downloaded file size does not match expected value",
                {
                    "path": str(tmp_path),
                    "expectedSize": item.expected_size,
                    "actualSize": actual_size,
                    "url": url,
                },
            )

        if hasher is not None:
            actual_sha256 = hasher.hexdigest()
            if actual_sha256.lower() != expected_sha256.lower():
                raise AudioModelsError(
                    "sha256_mismatch",
                    "Downloaded file SHA256 does not match expected value",
                    {
                        "path": str(tmp_path),
                        "expectedSha256": expected_sha256,
                        "actualSha256": actual_sha256,
                    },
                )

        return written

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def _emit_progress(self, downloaded: int, total: int) -> None:
        self._bus.emit(EVENT_PROGRESS, {"bytesDownloaded": downloaded, "bytesTotal": total})

    def _emit_error(self, err: AudioModelsError) -> None:
        self._bus.emit(EVENT_ERROR, err.to_dict())


def _install(item: PendingDownload) -> None:
    """Move a verified .partial file to its destination."""
    dest_path = item.dest_path
    tmp_path = item.tmp_path

    try:
        dest_path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise AudioModelsError(
            "io_failed",
            "Failed to create destination directory",
            {"path": str(dest_path.parent), "error": str(exc)},
        ) from exc

    if dest_path.exists():
        try:
            dest_path.unlink()
        except OSError as exc:
            raise AudioModelsError(
                "io_failed",
                "Failed to remove existing file before replacing it",
                {"destPath": str(dest_path), "error": str(exc)},
            ) from exc

    try:
        tmp_path.replace(dest_path)
    except OSError as exc:
        raise AudioModelsError(
            "io_failed",
            "Failed to move downloaded file into place",
            {"tmpPath": str(tmp_path), "destPath": str(dest_path), "error": str(exc)},
        ) from exc


def _discard(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except OSError:
        logger.warning("Failed to remove partial download: %s", path)
