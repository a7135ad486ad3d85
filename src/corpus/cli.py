from __future__ import annotations

import argparse
import json
import signal
import sys
from threading import Event
from types import FrameType
from typing import Any, Sequence

from corpus.config import get_settings
from corpus.errors import PipelineError
from corpus.logging_config import configure_logging
from corpus.services.pipeline import PipelineOrchestrator, build_orchestrator


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="corpus",
        description="Check and repair the refined/ingested retrieval corpus",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("check", help="Report drift between sources, derivatives and chunks")

    repair = subparsers.add_parser("repair", help="Refine and re-ingest a single source file")
    repair.add_argument("filename", help="Source filename relative to the source directory")

    reprocess = subparsers.add_parser("reprocess", help="Refine and re-ingest every source file")
    reprocess.add_argument(
        "--no-prune",
        action="store_true",
        help="Keep derived data of source files that no longer exist",
    )

    subparsers.add_parser("prune", help="Remove derived data of deleted source files")
    return parser


def _install_interrupt_handler(cancel_event: Event) -> None:
    def _handle(signum: int, frame: FrameType | None) -> None:
        if cancel_event.is_set():
            raise KeyboardInterrupt
        print("[corpus] cancelling after in-flight documents finish", file=sys.stderr, flush=True)
        cancel_event.set()

    signal.signal(signal.SIGINT, _handle)


def run_command(
    args: argparse.Namespace,
    orchestrator: PipelineOrchestrator,
    cancel_event: Event | None = None,
) -> tuple[dict[str, Any], bool]:
    """Execute one subcommand; returns the JSON payload and whether it succeeded."""
    if args.command == "check":
        report = orchestrator.check_integrity()
        return {"healthy": report.is_healthy, **report.to_dict()}, True
    if args.command == "repair":
        result = orchestrator.repair_file(args.filename)
        return result.to_dict(), result.ok
    if args.command == "reprocess":
        summary = orchestrator.reprocess_all(cancel_event, prune_orphans=not args.no_prune)
        return summary.to_dict(), not summary.cancelled
    if args.command == "prune":
        removed = orchestrator.prune_orphans()
        return {"removed": [result.to_dict() for result in removed]}, True
    raise ValueError(f"unknown command: {args.command}")


def main(argv: Sequence[str] | None = None) -> None:
    parser = _build_parser()
    args = parser.parse_args(argv)
    settings = get_settings()
    configure_logging(settings.log_level, json_output=settings.log_json)

    cancel_event = Event()
    _install_interrupt_handler(cancel_event)

    try:
        orchestrator = build_orchestrator(settings)
        payload, ok = run_command(args, orchestrator, cancel_event)
    except (PipelineError, ValueError, OSError) as exc:
        print(f"[corpus] {args.command} failed: {exc}", file=sys.stderr, flush=True)
        raise SystemExit(1) from exc

    print(json.dumps(payload, ensure_ascii=False), flush=True)
    if not ok:
        raise SystemExit(1)


if __name__ == "__main__":
    main()
