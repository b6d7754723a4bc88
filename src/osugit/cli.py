"""
osugit CLI - entry point for running and inspecting the scraper.

Usage:
    python -m osugit.cli run
    python -m osugit.cli sync --since 2024-01-01T00:00:00Z
    python -m osugit.cli history 1234567
    python -m osugit.cli check-setup

Progress lines are printed as OSUGIT_PROGRESS:{json} on stdout so wrappers
can follow a cycle without parsing logs. Logs go to stderr.
"""

import argparse
import asyncio
import json
import signal
import sys

from osugit.config import check_setup, load_settings
from osugit.core.version_store import VersionStore
from osugit.errors import ConfigError
from osugit.main import Engine
from osugit.utils.log import setup_logging


def emit_progress(status: str, message: str, documents_processed: int = None, total_documents: int = None):
    """
    Emit structured progress.

    Format: OSUGIT_PROGRESS:{"status": "...", "message": "...", "documents_processed": N, "total_documents": M}
    """
    payload = {
        "status": status,
        "message": message
    }
    if documents_processed is not None:
        payload["documents_processed"] = documents_processed
    if total_documents is not None:
        payload["total_documents"] = total_documents

    print(f"OSUGIT_PROGRESS:{json.dumps(payload)}", flush=True)


async def _run(settings):
    engine = Engine(settings, progress_callback=emit_progress)
    stop = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows event loops
            pass

    async with engine:
        task = engine.start()
        stopper = asyncio.create_task(stop.wait())
        await asyncio.wait({task, stopper}, return_when=asyncio.FIRST_COMPLETED)
        stopper.cancel()
        if task.done() and not task.cancelled() and task.exception() is not None:
            raise task.exception()


async def _sync_once(settings):
    async with Engine(settings, progress_callback=emit_progress) as engine:
        report = await engine.run_once()
    print(report.model_dump_json(indent=2))
    return report


def show_history(settings, record_id: int):
    store = VersionStore(settings.storage_root_path)
    if record_id not in store.record_ids():
        print(f"No history for beatmapset {record_id}")
        return 1
    handle = store.open_or_init(record_id)
    for entry in store.log(handle):
        summary = entry.message.splitlines()[0] if entry.message else ""
        print(f"{entry.id[:10]}  {entry.authored_at.isoformat()}  {entry.author_name:<20}  {summary}")
    return 0


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="osugit - mirrors pending osu! beatmapsets into per-set git histories"
    )
    parser.add_argument("--env", help="Path to a .env file (default: ./.env)")
    parser.add_argument("--log-level", default=None, help="Log level (default: INFO)")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    subparsers.add_parser("run", help="Poll forever until interrupted")

    sync_parser = subparsers.add_parser("sync", help="Run a single poll cycle")
    sync_parser.add_argument(
        "--since",
        help="Starting watermark (RFC3339). Default: now"
    )

    history_parser = subparsers.add_parser("history", help="Show the commit log of one beatmapset")
    history_parser.add_argument("record_id", type=int)

    subparsers.add_parser("check-setup", help="Print setup status as JSON and exit")

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 1

    # stdout carries JSON and progress lines only; logging must be on stderr first
    setup_logging(args.log_level or "INFO")

    overrides = {}
    if getattr(args, "since", None) is not None:
        overrides["initial_watermark"] = args.since

    try:
        settings = load_settings(args.env, **overrides)
    except ConfigError as e:
        if args.command == "check-setup":
            print(json.dumps({"credentials": False, "error": str(e)}))
        else:
            emit_progress("error", str(e))
        return 1

    if args.log_level is None and settings.log_level.upper() != "INFO":
        setup_logging(settings.log_level)

    if args.command == "check-setup":
        print(json.dumps(check_setup(settings)))
        return 0

    if args.command == "history":
        return show_history(settings, args.record_id)

    if args.command == "sync":
        report = asyncio.run(_sync_once(settings))
        return 1 if report.aborted else 0

    if args.command == "run":
        asyncio.run(_run(settings))
        return 0

    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
