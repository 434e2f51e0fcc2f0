"""Dictation session supervisor: owns the asr-sidecar process.

WHY: Live dictation runs in a separate recognizer process. The host must
start it only when the models are installed, feed it control commands,
turn its stdout into UI events, and shut it down cleanly, all without a
second session ever running alongside the first and without the UI ever
seeing two "done" events for one session.

HOW: DictationManager holds at most one DictationSession in a lock-guarded
slot. start() does the already-running / needs-reaping check under the
lock, reserves the slot, then (outside the lock) gates on readiness,
locates the sidecar binary, spawns it, and starts two reader threads:
  stdout -> decoded with parse_sidecar_event_line and forwarded as events
  stderr -> accumulated into a string for postmortem diagnostics
stop() takes the session out of the slot, asks the sidecar to stop, waits
for it to exit, joins both readers and reports a non-zero exit.

RULES:
- Empty ids, id mismatches and a poisoned slot raise DictationError
- Not-ready models, missing binary and already-running are events only
- done is emitted at most once per session (OnceFlag), whoever gets there first
- The slot lock is never held while waiting on the process or threads
- The process is only killed when the mic_stop write itself fails
"""

from __future__ import annotations

import contextlib
import logging
import subprocess
import threading
from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Any, Sequence

from localdesk_audio import config
from localdesk_audio.assets.manifest import AssetManifest
from localdesk_audio.assets.status import Ready, get_status
from localdesk_audio.dictation.protocol import (
    AudioLevelEvent,
    ErrorEvent,
    FinalEvent,
    LogEvent,
    PartialEvent,
    init_command,
    mic_start_command,
    mic_stop_command,
    parse_sidecar_event_line,
)
from localdesk_audio.errors import AudioModelsError, DictationError, SidecarProtocolError
from localdesk_audio.events import EventBus

logger = logging.getLogger(__name__)

EVENT_PARTIAL = "audio.dictation.partial"
EVENT_FINAL = "audio.dictation.final"
EVENT_AUDIO_LEVEL = "audio.dictation.audio_level"
EVENT_ERROR = "audio.dictation.error"
EVENT_DONE = "audio.dictation.done"

STATE_LOCK_POISONED = "[audio.dictation] state lock poisoned"


class OnceFlag:
    """One-way boolean: set() returns True only for the first caller."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._set = False

    def set(self) -> bool:
        with self._lock:
            if self._set:
                return False
            self._set = True
            return True

    @property
    def is_set(self) -> bool:
        with self._lock:
            return self._set


class _StderrReader(threading.Thread):
    """Collects everything the sidecar writes to stderr."""

    def __init__(self, stream: IO[str], dictation_id: str) -> None:
        super().__init__(name=f"asr-stderr-{dictation_id}", daemon=True)
        self._stream = stream
        self.text = ""

    def run(self) -> None:
        try:
            self.text = self._stream.read()
        except (OSError, ValueError) as exc:
            logger.warning("Failed to read sidecar stderr: %s", exc)

    def result(self) -> str:
        self.join()
        return self.text


@dataclass
class DictationSession:
    """A running sidecar process and the threads reading from it."""

    dictation_id: str
    process: subprocess.Popen
    stdout_thread: threading.Thread
    stderr_reader: _StderrReader
    done: OnceFlag
    had_error: OnceFlag

    def has_exited(self) -> bool:
        try:
            return self.process.poll() is not None
        except OSError:
            return True


class _SessionSlot:
    """The single mutually exclusive home of the active session.

    RULES:
    - pending_id marks a start() that owns the slot but has not finished
      spawning yet; a concurrent start() treats it as running
    - An unexpected exception while the lock is held poisons the slot;
      every later claim() raises DictationError instead of touching state
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._poisoned = False
        self.session: DictationSession | None = None
        self.pending_id: str | None = None

    @contextlib.contextmanager
    def claim(self) -> Iterator[_SessionSlot]:
        with self._lock:
            if self._poisoned:
                raise DictationError(STATE_LOCK_POISONED)
            try:
                yield self
            except DictationError:
                raise
            except BaseException:
                self._poisoned = True
                raise


def resolve_sidecar_entry(search_dir: Path, prefix: str = config.SIDECAR_PREFIX) -> Path | None:
    """Find the first file in search_dir whose name starts with prefix."""
    try:
        entries = sorted(search_dir.iterdir())
    except OSError as exc:
        logger.warning("Failed to read sidecar dir %s: %s", search_dir, exc)
        return None

    for entry in entries:
        if entry.name.startswith(prefix) and entry.is_file():
            return entry
    return None


class DictationManager:
    """Starts and stops dictation sessions and reports them on the bus.

    WHY: The UI issues start/stop by dictation id and then only listens for
    events. All process and thread lifecycle lives here.

    RULES:
    - manifest/models_root/sidecar_dir default to the bundled manifest and
      config locations; tests inject their own
    - Every emitted dictation event payload carries "dictationId"
    """

    def __init__(
        self,
        bus: EventBus,
        required_keys: Sequence[str] = config.REQUIRED_MODEL_KEYS,
        manifest: AssetManifest | None = None,
        models_root: Path | None = None,
        sidecar_dir: Path | None = None,
        model_key: str = config.ASR_MODEL_KEY,
    ) -> None:
        self._bus = bus
        self._required_keys = tuple(required_keys)
        self._manifest = manifest
        self._models_root = models_root
        self._sidecar_dir = sidecar_dir
        self._model_key = model_key
        self._slot = _SessionSlot()

    # ------------------------------------------------------------------
    # start
    # ------------------------------------------------------------------

    def start(self, dictation_id: str) -> None:
        """Start a dictation session.

        WHY: Called when the user presses the dictation button. Everything
        that can go wrong after the request is accepted is reported as an
        audio.dictation.error event so the UI has one place to look.

        HOW: Check/reserve the slot under the lock, reap a finished session
        outside it, then gate, spawn and wire up readers. The reservation
        is always cleared in a finally block; the new session is stored
        only if the sidecar actually started.

        RULES:
        - Raises DictationError for an empty id or readiness lookup failure
        - Already running -> invalid_state event with activeDictationId
        - Models not ready -> model_not_ready event, nothing spawned
        - Binary missing -> sidecar_not_found event with expectedPath

        Args:
            dictation_id: Caller-chosen, non-empty session id.
        """
        if not dictation_id or not dictation_id.strip():
            raise DictationError("[audio.dictation.start] dictationId is required")

        stale: DictationSession | None = None
        active_id: str | None = None

        with self._slot.claim() as slot:
            existing = slot.session
            if slot.pending_id is not None:
                active_id = slot.pending_id
            elif existing is not None and not existing.has_exited():
                active_id = existing.dictation_id
            else:
                stale, slot.session = existing, None
                slot.pending_id = dictation_id

        if active_id is not None:
            self._emit_error(
                dictation_id,
                None,
                "invalid_state",
                "Dictation is already running",
                {"activeDictationId": active_id},
            )
            return

        session: DictationSession | None = None
        try:
            if stale is not None:
                logger.info("Reaping finished dictation session %s", stale.dictation_id)
                self._reap(stale)
            session = self._launch(dictation_id)
        finally:
            with self._slot.claim() as slot:
                slot.pending_id = None
                if session is not None:
                    slot.session = session

    def _launch(self, dictation_id: str) -> DictationSession | None:
        try:
            models_root = self._models_root if self._models_root is not None else config.models_dir()
            status = get_status(self._required_keys, manifest=self._manifest, models_root=models_root)
        except AudioModelsError as exc:
            raise DictationError(
                f"[audio.dictation.start] Failed to check audio model status: {exc.message} ({exc.code})"
            ) from exc

        if not isinstance(status, Ready):
            self._emit_error(
                dictation_id,
                None,
                "model_not_ready",
                "Speech models are not ready; download them in Settings -> Audio",
                {"status": status.to_dict()},
            )
            return None

        search_dir = self._sidecar_dir if self._sidecar_dir is not None else config.sidecar_search_dir()
        sidecar_path = resolve_sidecar_entry(search_dir)
        if sidecar_path is None:
            self._emit_error(
                dictation_id,
                None,
                "sidecar_not_found",
                "asr-sidecar binary not found",
                {"expectedPath": str(search_dir / config.SIDECAR_PREFIX)},
            )
            return None

        try:
            process = subprocess.Popen(
                [str(sidecar_path), "--models-dir", str(models_root)],
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
            )
        except OSError as exc:
            raise DictationError(f"[audio.dictation.start] Failed to spawn asr-sidecar: {exc}") from exc

        logger.info("Started asr-sidecar pid=%s for dictation %s", process.pid, dictation_id)

        done = OnceFlag()
        had_error = OnceFlag()
        stderr_reader = _StderrReader(process.stderr, dictation_id)
        stdout_thread = threading.Thread(
            target=self._read_stdout,
            args=(dictation_id, process.stdout, done, had_error),
            name=f"asr-stdout-{dictation_id}",
            daemon=True,
        )
        session = DictationSession(
            dictation_id=dictation_id,
            process=process,
            stdout_thread=stdout_thread,
            stderr_reader=stderr_reader,
            done=done,
            had_error=had_error,
        )
        stderr_reader.start()
        stdout_thread.start()

        try:
            _send(process, init_command(model_key=self._model_key))
            _send(process, mic_start_command())
        except (OSError, ValueError) as exc:
            self._emit_error(
                dictation_id,
                had_error,
                "sidecar_io_failed",
                "Failed to write start commands to sidecar stdin",
                {"error": str(exc)},
            )
            _kill(process)
            self._reap(session)
            self._emit_done_once(dictation_id, done)
            return None

        return session

    # ------------------------------------------------------------------
    # stop
    # ------------------------------------------------------------------

    def stop(self, dictation_id: str) -> None:
        """Stop the active session and wait for the sidecar to exit.

        RULES:
        - No active session -> logged and ignored (double stop is fine)
        - Id mismatch -> DictationError naming the active id
        - Non-zero exit with no earlier error -> sidecar_failed event
        - done is always emitted (once) before returning
        """
        if not dictation_id or not dictation_id.strip():
            raise DictationError("[audio.dictation.stop] dictationId is required")

        with self._slot.claim() as slot:
            session = slot.session
            if session is None:
                if slot.pending_id == dictation_id:
                    raise DictationError("[audio.dictation.stop] dictation is still starting")
                logger.warning(
                    "audio_dictation_stop_ignored reason=not_running dictationId=%s",
                    dictation_id,
                )
                return
            if session.dictation_id != dictation_id:
                raise DictationError(
                    "[audio.dictation.stop] dictationId does not match active session "
                    f"(active={session.dictation_id})"
                )
            slot.session = None

        try:
            _send(session.process, mic_stop_command())
        except (OSError, ValueError) as exc:
            self._emit_error(
                dictation_id,
                session.had_error,
                "sidecar_io_failed",
                "Failed to write mic_stop to sidecar stdin",
                {"error": str(exc)},
            )
            _kill(session.process)
            self._reap(session)
            self._emit_done_once(dictation_id, session.done)
            return

        exit_code, stderr_text = self._reap(session)

        if exit_code != 0 and not session.had_error.is_set:
            self._emit_error(
                dictation_id,
                session.had_error,
                "sidecar_failed",
                "asr-sidecar exited with non-zero status",
                {"exitCode": exit_code, "stderr": stderr_text},
            )

        self._emit_done_once(dictation_id, session.done)

    def active_dictation_id(self) -> str | None:
        with self._slot.claim() as slot:
            return slot.session.dictation_id if slot.session is not None else None

    def shutdown(self) -> None:
        """Stop whatever session is active (host exit path)."""
        active_id = self.active_dictation_id()
        if active_id is not None:
            self.stop(active_id)

    # ------------------------------------------------------------------
    # Readers
    # ------------------------------------------------------------------

    def _read_stdout(
        self,
        dictation_id: str,
        stream: IO[str],
        done: OnceFlag,
        had_error: OnceFlag,
    ) -> None:
        try:
            self._pump_stdout(dictation_id, stream, had_error)
        finally:
            self._emit_done_once(dictation_id, done)
            # Keep the pipe drained so the sidecar never blocks on a full stdout.
            with contextlib.suppress(OSError, ValueError):
                for _ in stream:
                    pass

    def _pump_stdout(self, dictation_id: str, stream: IO[str], had_error: OnceFlag) -> None:
        try:
            for raw in stream:
                line = raw.strip()
                if not line:
                    continue

                try:
                    event = parse_sidecar_event_line(line)
                except SidecarProtocolError as err:
                    self._emit_error(
                        dictation_id,
                        had_error,
                        err.code,
                        "Failed to parse sidecar stdout line",
                        {"error": err.message, "line": line},
                    )
                    return

                if isinstance(event, ErrorEvent):
                    self._emit_error(dictation_id, had_error, event.code, event.msg, event.context)
                    return
                if isinstance(event, PartialEvent):
                    self._emit(
                        EVENT_PARTIAL,
                        {"dictationId": dictation_id, "text": event.text, "unstable": event.unstable},
                    )
                elif isinstance(event, FinalEvent):
                    self._emit(
                        EVENT_FINAL,
                        {
                            "dictationId": dictation_id,
                            "text": event.text,
                            "start": event.start,
                            "end": event.end,
                        },
                    )
                elif isinstance(event, AudioLevelEvent):
                    self._emit(EVENT_AUDIO_LEVEL, {"dictationId": dictation_id, "level": event.level})
                elif isinstance(event, LogEvent):
                    # Intentionally ignored (can be noisy).
                    pass
        except (OSError, ValueError) as exc:
            self._emit_error(
                dictation_id,
                had_error,
                "sidecar_io_failed",
                "Failed while reading sidecar stdout",
                {"error": str(exc)},
            )

    def _reap(self, session: DictationSession) -> tuple[int, str]:
        """Wait for the process and join both readers.

        Returns:
            (exit code, accumulated stderr text)
        """
        _close_stdin(session.process)
        exit_code = session.process.wait()
        session.stdout_thread.join()
        stderr_text = session.stderr_reader.result()
        if exit_code != 0:
            logger.warning(
                "asr-sidecar for dictation %s exited with %s: %s",
                session.dictation_id,
                exit_code,
                stderr_text.strip()[-500:],
            )
        return exit_code, stderr_text

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def _emit(self, event_type: str, payload: dict[str, Any]) -> None:
        self._bus.emit(event_type, payload)

    def _emit_error(
        self,
        dictation_id: str,
        had_error: OnceFlag | None,
        code: str,
        message: str,
        context: dict[str, Any],
    ) -> None:
        if had_error is not None:
            had_error.set()
        self._emit(
            EVENT_ERROR,
            {"dictationId": dictation_id, "code": code, "message": message, "context": context},
        )

    def _emit_done_once(self, dictation_id: str, done: OnceFlag) -> None:
        if done.set():
            self._emit(EVENT_DONE, {"dictationId": dictation_id})


def _send(process: subprocess.Popen, line: str) -> None:
    process.stdin.write(line + "\n")
    process.stdin.flush()


def _close_stdin(process: subprocess.Popen) -> None:
    if process.stdin is None or process.stdin.closed:
        return
    try:
        process.stdin.close()
    except OSError as exc:
        logger.debug("Closing sidecar stdin failed: %s", exc)


def _kill(process: subprocess.Popen) -> None:
    try:
        process.kill()
    except OSError as exc:
        logger.warning("Failed to kill asr-sidecar pid=%s: %s", process.pid, exc)
