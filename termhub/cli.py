"""CLI entry point for termhub.

Offline inspection of the program table and the durable history written by
a running service: ``termhub programs``, ``termhub history``,
``termhub transcript``, ``termhub recover`` and ``termhub probe``.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys

import structlog


def main(argv: list[str] | None = None) -> None:
    """Main CLI entry point (``termhub`` command)."""
    parser = argparse.ArgumentParser(
        prog="termhub",
        description="termhub: pseudo-terminal session manager for interactive CLIs",
    )
    sub = parser.add_subparsers(dest="command")

    sub.add_parser("programs", help="List launchable programs and their variants")

    history_parser = sub.add_parser("history", help="List an owner's session history")
    history_parser.add_argument("owner")

    transcript_parser = sub.add_parser("transcript", help="Print a stored chat transcript")
    transcript_parser.add_argument("owner")
    transcript_parser.add_argument("session_id")

    sub.add_parser("recover", help="Close out sessions left live by a crashed service")

    probe_parser = sub.add_parser("probe", help="Ask a program which models it offers")
    probe_parser.add_argument("program")
    probe_parser.add_argument("--timeout", type=float, help="Seconds to wait for output")

    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        sys.exit(1)

    # Config files must be applied before anything reads settings.
    from termhub.config import load_config

    loaded = load_config()

    from termhub.log_config import configure_logging

    configure_logging()
    if loaded.files:
        structlog.get_logger(__name__).debug(
            "Loaded config files",
            files=[str(path) for path in loaded.files],
            applied=loaded.applied,
            shadowed=loaded.shadowed,
        )

    from termhub.errors import TermhubError

    handlers = {
        "programs": _run_programs,
        "history": _run_history,
        "transcript": _run_transcript,
        "recover": _run_recover,
        "probe": _run_probe,
    }
    try:
        code = handlers[args.command](args)
    except TermhubError as exc:
        print(f"termhub: {exc}", file=sys.stderr)
        sys.exit(2)
    if code:
        sys.exit(code)


def _print_json(payload: object) -> None:
    print(json.dumps(payload, indent=2, ensure_ascii=False))


def _history_store():
    from termhub.history import HistoryStore
    from termhub.settings import settings

    return HistoryStore(settings.history_dir(), settings.history_limit())


def _run_programs(args: argparse.Namespace) -> int:
    from termhub.programs import ProgramCatalog

    catalog = ProgramCatalog.default()
    _print_json([d.model_dump(mode="json") for d in catalog.descriptors()])
    return 0


def _run_history(args: argparse.Namespace) -> int:
    entries = _history_store().list(args.owner)
    _print_json([e.model_dump(mode="json") for e in entries])
    return 0


def _run_transcript(args: argparse.Namespace) -> int:
    transcript = _history_store().load_transcript(args.owner, args.session_id)
    if transcript is None:
        print(f"termhub: no transcript for {args.session_id}", file=sys.stderr)
        return 1
    _print_json(transcript.model_dump(mode="json"))
    return 0


def _run_recover(args: argparse.Namespace) -> int:
    recovered = _history_store().recover()
    _print_json([e.model_dump(mode="json") for e in recovered])
    return 0


def _run_probe(args: argparse.Namespace) -> int:
    from termhub.discovery import PROBE_TIMEOUT_SECONDS, discover_variants
    from termhub.programs import ProgramCatalog

    program = ProgramCatalog.default().get(args.program)
    timeout = args.timeout if args.timeout is not None else PROBE_TIMEOUT_SECONDS
    variants = asyncio.run(discover_variants(program, timeout=timeout))
    _print_json([v.model_dump(mode="json") for v in variants])
    return 0


if __name__ == "__main__":
    main()
