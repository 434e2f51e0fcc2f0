"""Tests for the dictation supervisor against a scripted fake sidecar.

WHY: The supervisor's hard guarantees (one session at a time, exactly one
done event per session, errors instead of crashes) only show up with a
real child process, real pipes and real reader threads.

HOW: Each test writes an executable "asr-sidecar" Python script into a
temp sidecar directory. The script records every stdin command to
<models-dir>/commands.jsonl and reacts to mic_start / mic_stop with a
per-test snippet. Events arrive on reader threads, so assertions wait on
the bus with _wait_for().

RULES:
- POSIX only (shebang scripts); skipped on Windows
- Every started session is stopped before the test ends
- Models are always installed unless the test is about readiness
"""

import json
import stat
import sys
import textwrap
import time

import pytest

from localdesk_audio.dictation import supervisor
from localdesk_audio.dictation.supervisor import (
    EVENT_AUDIO_LEVEL,
    EVENT_DONE,
    EVENT_ERROR,
    EVENT_FINAL,
    EVENT_PARTIAL,
    STATE_LOCK_POISONED,
    DictationManager,
    OnceFlag,
    resolve_sidecar_entry,
)
from localdesk_audio.errors import DictationError

pytestmark = pytest.mark.skipif(sys.platform.startswith("win"), reason="shebang sidecar scripts need POSIX")

_SIDECAR_TEMPLATE = """\
#!{python}
import json
import os
import sys

models_dir = sys.argv[sys.argv.index("--models-dir") + 1]
open(os.path.join(models_dir, "spawned.marker"), "w").close()


def emit(obj):
    sys.stdout.write(json.dumps(obj) + "\\n")
    sys.stdout.flush()


for line in sys.stdin:
    with open(os.path.join(models_dir, "commands.jsonl"), "a") as log:
        log.write(line)
    cmd = json.loads(line)["cmd"]
    if cmd == "mic_start":
{on_start}
    elif cmd == "mic_stop":
{on_stop}
        break
"""

_ECHO_START = """\
emit({"t": "log", "msg": "listening"})
emit({"t": "partial", "text": "hel", "unstable": "lo"})
emit({"t": "audio_level", "level": 0.25})
emit({"t": "final", "text": "hello", "start": 0.0, "end": 1.2})
"""

_EXIT_FIRST_RUN = """\
flag = os.path.join(models_dir, "first-run.done")
if not os.path.exists(flag):
    open(flag, "w").close()
    sys.exit(0)
"""


def _wait_for(predicate, timeout=10.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def _payloads(bus, event_type):
    return [e["payload"] for e in bus.events(event_type)]


def _done_ids(bus):
    return [p["dictationId"] for p in _payloads(bus, EVENT_DONE)]


@pytest.fixture
def sidecar_dir(tmp_path):
    path = tmp_path / "bin"
    path.mkdir()
    return path


@pytest.fixture
def write_sidecar(sidecar_dir):
    """Install a fake asr-sidecar with the given mic_start/mic_stop snippets."""

    def _write(on_start="pass\n", on_stop="pass\n", name="asr-sidecar"):
        script = _SIDECAR_TEMPLATE.format(
            python=sys.executable,
            on_start=textwrap.indent(on_start, " " * 8),
            on_stop=textwrap.indent(on_stop, " " * 8),
        )
        path = sidecar_dir / name
        path.write_text(script)
        path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return path

    return _write


@pytest.fixture
def ready_manifest(build_manifest, model_entry, file_entry, install_file):
    install_file("asr_tdt_v3-repo", "model.bin", b"weights")
    return build_manifest([model_entry("asr_tdt_v3", [file_entry("model.bin", b"weights")])])


@pytest.fixture
def make_manager(bus, models_root, sidecar_dir, ready_manifest):
    managers = []

    def _make(manifest=None):
        manager = DictationManager(
            bus,
            required_keys=("asr_tdt_v3",),
            manifest=manifest if manifest is not None else ready_manifest,
            models_root=models_root,
            sidecar_dir=sidecar_dir,
        )
        managers.append(manager)
        return manager

    yield _make

    for manager in managers:
        manager.shutdown()


def _commands(models_root):
    path = models_root / "commands.jsonl"
    return [json.loads(line) for line in path.read_text().splitlines()]


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------


class TestSessionLifecycle:
    def test_forwards_events_and_stops(self, bus, models_root, write_sidecar, make_manager):
        write_sidecar(on_start=_ECHO_START)
        manager = make_manager()

        manager.start("d1")
        assert manager.active_dictation_id() == "d1"
        assert _wait_for(lambda: bus.events(EVENT_FINAL))
        manager.stop("d1")

        assert _payloads(bus, EVENT_PARTIAL) == [{"dictationId": "d1", "text": "hel", "unstable": "lo"}]
        assert _payloads(bus, EVENT_AUDIO_LEVEL) == [{"dictationId": "d1", "level": 0.25}]
        assert _payloads(bus, EVENT_FINAL) == [
            {"dictationId": "d1", "text": "hello", "start": 0.0, "end": 1.2}
        ]
        assert bus.events(EVENT_ERROR) == []
        assert _done_ids(bus) == ["d1"]
        assert manager.active_dictation_id() is None

    def test_sends_init_then_mic_start_then_mic_stop(self, models_root, write_sidecar, make_manager):
        write_sidecar()
        manager = make_manager()

        manager.start("d1")
        manager.stop("d1")

        assert _commands(models_root) == [
            {"cmd": "init", "config": {"sample_rate": 16000, "mode": "mic", "model_key": "asr_tdt_v3"}},
            {"cmd": "mic_start", "device_id": "default"},
            {"cmd": "mic_stop"},
        ]

    def test_log_events_are_not_forwarded(self, bus, write_sidecar, make_manager):
        write_sidecar(on_start='emit({"t": "log", "msg": "noise"})\nemit({"t": "final", "text": "x"})\n')
        manager = make_manager()

        manager.start("d1")
        assert _wait_for(lambda: bus.events(EVENT_FINAL))
        manager.stop("d1")

        assert {e["type"] for e in bus.events()} == {EVENT_FINAL, EVENT_DONE}

    @pytest.mark.parametrize("second_id", ["d1", "d2"])
    def test_second_start_reports_invalid_state(self, bus, write_sidecar, make_manager, second_id):
        write_sidecar()
        manager = make_manager()

        manager.start("d1")
        manager.start(second_id)

        errors = _payloads(bus, EVENT_ERROR)
        assert errors == [
            {
                "dictationId": second_id,
                "code": "invalid_state",
                "message": "Dictation is already running",
                "context": {"activeDictationId": "d1"},
            }
        ]
        assert manager.active_dictation_id() == "d1"
        manager.stop("d1")
        assert _done_ids(bus) == ["d1"]

    def test_exited_session_is_reaped_on_next_start(self, bus, write_sidecar, make_manager):
        write_sidecar(on_start=_EXIT_FIRST_RUN)
        manager = make_manager()

        manager.start("d1")
        assert _wait_for(lambda: manager._slot.session.has_exited())
        manager.start("d2")

        assert manager.active_dictation_id() == "d2"
        manager.stop("d2")
        assert bus.events(EVENT_ERROR) == []
        assert sorted(_done_ids(bus)) == ["d1", "d2"]


# ---------------------------------------------------------------------------
# Start rejections
# ---------------------------------------------------------------------------


class TestStartGate:
    def test_models_not_ready(self, bus, models_root, build_manifest, model_entry, file_entry, write_sidecar, make_manager):
        write_sidecar()
        manifest = build_manifest([model_entry("asr_tdt_v3", [file_entry("other.bin", b"zz")])])
        manager = make_manager(manifest)

        manager.start("d1")

        errors = _payloads(bus, EVENT_ERROR)
        assert len(errors) == 1
        assert errors[0]["code"] == "model_not_ready"
        assert errors[0]["context"]["status"]["state"] == "not_installed"
        assert not (models_root / "spawned.marker").exists()
        assert manager.active_dictation_id() is None
        assert bus.events(EVENT_DONE) == []

    def test_sidecar_not_found(self, bus, sidecar_dir, make_manager):
        manager = make_manager()

        manager.start("d1")

        errors = _payloads(bus, EVENT_ERROR)
        assert [e["code"] for e in errors] == ["sidecar_not_found"]
        assert errors[0]["context"] == {"expectedPath": str(sidecar_dir / "asr-sidecar")}
        assert manager.active_dictation_id() is None

    def test_status_lookup_failure_raises(self, build_manifest, model_entry, file_entry, make_manager):
        manifest = build_manifest([model_entry("silero_vad_v6", [file_entry("v.bin", b"v")])])
        manager = make_manager(manifest)

        with pytest.raises(DictationError, match="manifest_invalid"):
            manager.start("d1")

        assert manager._slot.pending_id is None

    @pytest.mark.parametrize("dictation_id", ["", "   "])
    def test_empty_id(self, make_manager, dictation_id):
        manager = make_manager()
        with pytest.raises(DictationError):
            manager.start(dictation_id)
        with pytest.raises(DictationError):
            manager.stop(dictation_id)

    def test_poisoned_slot(self, bus, models_root, sidecar_dir, ready_manifest):
        manager = DictationManager(
            bus, manifest=ready_manifest, models_root=models_root, sidecar_dir=sidecar_dir
        )
        with pytest.raises(RuntimeError):
            with manager._slot.claim():
                raise RuntimeError("panic while holding the lock")

        with pytest.raises(DictationError, match=STATE_LOCK_POISONED):
            manager.start("d1")
        with pytest.raises(DictationError, match=STATE_LOCK_POISONED):
            manager.stop("d1")
        assert bus.events() == []


# ---------------------------------------------------------------------------
# Stop
# ---------------------------------------------------------------------------


class TestStop:
    def test_stop_without_session_is_ignored(self, bus, make_manager):
        manager = make_manager()
        manager.stop("nope")
        assert bus.events() == []

    def test_double_stop(self, bus, write_sidecar, make_manager):
        write_sidecar()
        manager = make_manager()

        manager.start("d1")
        manager.stop("d1")
        manager.stop("d1")

        assert _done_ids(bus) == ["d1"]

    def test_id_mismatch(self, bus, write_sidecar, make_manager):
        write_sidecar()
        manager = make_manager()

        manager.start("d1")
        with pytest.raises(DictationError, match="active=d1"):
            manager.stop("d2")

        assert manager.active_dictation_id() == "d1"
        manager.stop("d1")

    def test_nonzero_exit_reports_sidecar_failed(self, bus, write_sidecar, make_manager):
        write_sidecar(on_stop='sys.stderr.write("boom\\n")\nsys.exit(3)\n')
        manager = make_manager()

        manager.start("d1")
        manager.stop("d1")

        errors = _payloads(bus, EVENT_ERROR)
        assert [e["code"] for e in errors] == ["sidecar_failed"]
        assert errors[0]["context"]["exitCode"] == 3
        assert "boom" in errors[0]["context"]["stderr"]
        assert _done_ids(bus) == ["d1"]

    def test_shutdown_stops_active_session(self, bus, write_sidecar, make_manager):
        write_sidecar()
        manager = make_manager()

        manager.start("d1")
        manager.shutdown()

        assert manager.active_dictation_id() is None
        assert _done_ids(bus) == ["d1"]


# ---------------------------------------------------------------------------
# Sidecar misbehavior
# ---------------------------------------------------------------------------


class TestSidecarErrors:
    def test_invalid_json_line(self, bus, write_sidecar, make_manager):
        write_sidecar(on_start='sys.stdout.write("not json\\n")\nsys.stdout.flush()\n')
        manager = make_manager()

        manager.start("d1")
        assert _wait_for(lambda: bus.events(EVENT_DONE))
        manager.stop("d1")

        errors = _payloads(bus, EVENT_ERROR)
        assert [e["code"] for e in errors] == ["sidecar_invalid_json"]
        assert errors[0]["context"]["line"] == "not json"
        assert _done_ids(bus) == ["d1"]

    def test_deeply_nested_line_then_more_output(self, bus, write_sidecar, make_manager):
        write_sidecar(
            on_start=(
                'sys.stdout.write("[" * 200000 + "]" * 200000 + "\\n")\n'
                "for i in range(20000):\n"
                '    emit({"t": "partial", "text": "still talking %d" % i})\n'
            )
        )
        manager = make_manager()

        manager.start("d1")
        assert _wait_for(lambda: bus.events(EVENT_DONE))
        manager.stop("d1")

        errors = _payloads(bus, EVENT_ERROR)
        assert [e["code"] for e in errors] == ["sidecar_invalid_json"]
        assert bus.events(EVENT_PARTIAL) == []
        assert _done_ids(bus) == ["d1"]

    def test_unknown_event_type(self, bus, write_sidecar, make_manager):
        write_sidecar(on_start='emit({"t": "weird"})\n')
        manager = make_manager()

        manager.start("d1")
        assert _wait_for(lambda: bus.events(EVENT_ERROR))
        manager.stop("d1")

        assert [e["code"] for e in _payloads(bus, EVENT_ERROR)] == ["sidecar_invalid_schema"]

    def test_error_event_is_forwarded_without_sidecar_failed(self, bus, write_sidecar, make_manager):
        write_sidecar(
            on_start='emit({"t": "error", "code": "mic_denied", "msg": "Microphone access denied"})\n',
            on_stop="sys.exit(2)\n",
        )
        manager = make_manager()

        manager.start("d1")
        assert _wait_for(lambda: bus.events(EVENT_DONE))
        manager.stop("d1")

        errors = _payloads(bus, EVENT_ERROR)
        assert errors == [
            {
                "dictationId": "d1",
                "code": "mic_denied",
                "message": "Microphone access denied",
                "context": {},
            }
        ]
        assert _done_ids(bus) == ["d1"]

    def test_start_write_failure(self, bus, write_sidecar, make_manager, monkeypatch):
        write_sidecar()
        manager = make_manager()

        def _broken_send(process, line):
            raise BrokenPipeError("stdin closed")

        monkeypatch.setattr(supervisor, "_send", _broken_send)
        manager.start("d1")

        assert [e["code"] for e in _payloads(bus, EVENT_ERROR)] == ["sidecar_io_failed"]
        assert _done_ids(bus) == ["d1"]
        assert manager.active_dictation_id() is None

    def test_stop_write_failure(self, bus, write_sidecar, make_manager, monkeypatch):
        write_sidecar()
        manager = make_manager()
        manager.start("d1")

        def _broken_send(process, line):
            raise BrokenPipeError("stdin closed")

        monkeypatch.setattr(supervisor, "_send", _broken_send)
        manager.stop("d1")

        assert [e["code"] for e in _payloads(bus, EVENT_ERROR)] == ["sidecar_io_failed"]
        assert _done_ids(bus) == ["d1"]
        assert manager.active_dictation_id() is None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class TestHelpers:
    def test_once_flag(self):
        flag = OnceFlag()
        assert flag.is_set is False
        assert flag.set() is True
        assert flag.set() is False
        assert flag.is_set is True

    def test_resolve_prefers_prefixed_file(self, tmp_path):
        (tmp_path / "asr-sidecar.d").mkdir()
        (tmp_path / "other").write_text("")
        target = tmp_path / "asr-sidecar-aarch64-apple-darwin"
        target.write_text("")
        assert resolve_sidecar_entry(tmp_path) == target

    def test_resolve_missing_dir(self, tmp_path):
        assert resolve_sidecar_entry(tmp_path / "nope") is None
