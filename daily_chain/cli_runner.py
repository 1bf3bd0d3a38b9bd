"""Command-line entry point: ``daily-chain <command>``."""

import argparse
import sys
from typing import List, Optional

from daily_chain import __version__
from daily_chain.messaging import emit_error
from daily_chain.scheduler import cli
from daily_chain.settings import get_settings


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="daily-chain",
        description="Daily Chain - run one action every day at a fixed local time",
    )
    parser.add_argument(
        "--version",
        "-v",
        action="version",
        version=f"{__version__}",
        help="Show version and exit",
    )
    sub = parser.add_subparsers(dest="command", metavar="command")

    sub.add_parser("status", help="Show daemon state and chain health")
    sub.add_parser("describe", help="Show a diagnostic summary of the chain")
    sub.add_parser("reset", help="Cancel the pending trigger and re-arm the next occurrence")
    sub.add_parser("run-now", help="Run the action as soon as possible")
    test_in = sub.add_parser("test-in", help="Arm a one-off test run after an interval")
    test_in.add_argument("interval", help="e.g. 30s, 2m, 1h")
    sub.add_parser("cancel", help="Cancel the pending trigger, leaving the task unarmed")
    history = sub.add_parser("history", help="Show recent executions")
    history.add_argument("-n", "--limit", type=int, default=10, help="Number of records")
    sub.add_parser("start", help="Start the scheduler daemon in the background")
    sub.add_parser("stop", help="Stop the scheduler daemon")
    sub.add_parser("daemon", help="Run the scheduler daemon in the foreground")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the daily-chain CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 2

    try:
        get_settings()
    except ValueError as e:
        # pydantic's ValidationError is a ValueError
        emit_error(f"Invalid configuration: {e}")
        return 2

    if args.command == "daemon":
        from daily_chain.scheduler.daemon import start_daemon

        return start_daemon(foreground=True)

    handlers = {
        "status": cli.handle_scheduler_status,
        "describe": cli.handle_scheduler_describe,
        "reset": cli.handle_scheduler_reset,
        "run-now": cli.handle_scheduler_run_now,
        "cancel": cli.handle_scheduler_cancel,
        "start": cli.handle_scheduler_start,
        "stop": cli.handle_scheduler_stop,
    }
    if args.command == "test-in":
        ok = cli.handle_scheduler_test_in(args.interval)
    elif args.command == "history":
        ok = cli.handle_scheduler_history(args.limit)
    else:
        ok = handlers[args.command]()
    return 0 if ok else 1


def main_entry() -> None:
    """Entry point for the installed CLI tool."""
    sys.exit(main())
