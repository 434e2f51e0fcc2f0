"""Command-line interface for the LocalDesk audio core.

WHY: Developers and support need to inspect model readiness, install the
models and try dictation without the desktop UI. The CLI drives the same
objects the host uses and prints the events they produce.

HOW: argparse with four subcommands:
  status    print the readiness status as JSON (stdout)
  download  run a download campaign in the foreground, progress on stderr
  dictate   start a session, print transcripts until Enter/Ctrl-C, stop
  serve     run the FastAPI control surface with uvicorn

RULES:
- Status/progress messages go to stderr; machine-readable output to stdout
- Exit code 1 when the requested operation failed
- argv=None means sys.argv (explicit argv is for testing)
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
import uuid
from typing import Any, Dict, List, Optional

from localdesk_audio import config
from localdesk_audio.assets.downloader import AssetDownloader
from localdesk_audio.assets.status import Ready, status_snapshot
from localdesk_audio.dictation.supervisor import DictationManager
from localdesk_audio.errors import DictationError
from localdesk_audio.events import EventBus


def _status(msg: str) -> None:
    """Print a status message to stderr."""
    print(msg, file=sys.stderr, flush=True)


def _format_bytes(size: int) -> str:
    if size < 1024:
        return f"{size} B"
    value = size / 1024
    for unit in ("KB", "MB"):
        if value < 1024:
            return f"{value:.1f} {unit}"
        value /= 1024
    return f"{value:.1f} GB"


# ---------------------------------------------------------------------------
# Subcommands
# ---------------------------------------------------------------------------


def _cmd_status(args: argparse.Namespace) -> int:
    status = status_snapshot()
    print(json.dumps(status.to_dict(), indent=2))
    return 0 if isinstance(status, Ready) else 1


def _print_download_event(envelope: Dict[str, Any]) -> None:
    payload = envelope["payload"]
    if envelope["type"] == "audio.models.download.progress":
        total = payload["bytesTotal"]
        done = payload["bytesDownloaded"]
        pct = (done / total * 100) if total else 100.0
        _status(f"  {pct:5.1f}%  {_format_bytes(done)} / {_format_bytes(total)}")
    elif envelope["type"] == "audio.models.download.error":
        _status(f"Download failed: {payload['message']} ({payload['code']})")
        if payload.get("context"):
            _status("  " + json.dumps(payload["context"]))
    elif envelope["type"] == "audio.models.download.done":
        _status("Models installed.")


def _cmd_download(args: argparse.Namespace) -> int:
    bus = EventBus()
    bus.subscribe(_print_download_event)
    ok = AssetDownloader(bus).run()
    return 0 if ok else 1


def _print_dictation_event(envelope: Dict[str, Any]) -> None:
    payload = envelope["payload"]
    kind = envelope["type"]
    if kind == "audio.dictation.final":
        print(payload["text"], flush=True)
    elif kind == "audio.dictation.partial":
        _status(f"... {payload['text']}")
    elif kind == "audio.dictation.error":
        _status(f"Dictation error: {payload['message']} ({payload['code']})")
    elif kind == "audio.dictation.done":
        _status("Dictation finished.")


def _cmd_dictate(args: argparse.Namespace) -> int:
    bus = EventBus()
    bus.subscribe(_print_dictation_event)
    manager = DictationManager(bus)
    dictation_id = args.id or uuid.uuid4().hex

    try:
        manager.start(dictation_id)
        if manager.active_dictation_id() != dictation_id:
            return 1
        _status("Listening. Press Enter to stop.")
        try:
            sys.stdin.readline()
        except KeyboardInterrupt:
            pass
        manager.stop(dictation_id)
    except DictationError as exc:
        _status(f"Error: {exc}")
        return 1

    return 1 if bus.events("audio.dictation.error") else 0


def _cmd_serve(args: argparse.Namespace) -> int:
    from localdesk_audio.server.app import run_api

    run_api(host=args.host, port=args.port)
    return 0


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse parser for the CLI."""
    parser = argparse.ArgumentParser(
        prog="localdesk_audio",
        description="Manage LocalDesk speech models and run live dictation.",
    )
    parser.add_argument(
        "--log-level",
        default=config.LOG_LEVEL,
        help="Logging level (default: %(default)s).",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    status = sub.add_parser("status", help="Show model readiness as JSON.")
    status.set_defaults(func=_cmd_status)

    download = sub.add_parser("download", help="Download missing model files.")
    download.set_defaults(func=_cmd_download)

    dictate = sub.add_parser("dictate", help="Dictate until Enter is pressed.")
    dictate.add_argument("--id", default=None, help="Dictation id (default: random).")
    dictate.set_defaults(func=_cmd_dictate)

    serve = sub.add_parser("serve", help="Run the HTTP control API.")
    serve.add_argument("--host", default=config.API_HOST, help="Bind address (default: %(default)s).")
    serve.add_argument("--port", type=int, default=config.API_PORT, help="Port (default: %(default)s).")
    serve.set_defaults(func=_cmd_serve)

    return parser


def main(argv: Optional[List[str]] = None) -> None:
    """Entry point for ``python -m localdesk_audio``."""
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )
    sys.exit(args.func(args))


if __name__ == "__main__":
    main()
