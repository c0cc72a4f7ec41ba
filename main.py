#!/usr/bin/env python3
"""Hub / External Registry Device Sync CLI.

This module provides a command-line interface for keeping a hub device
registry in line with an external network-operator registry (Actility
ThingPark by default).

Architecture:
    - HubSyncApp wires the registries, staging store and workflow runtime
    - Every run is a durable workflow; its effect log lives in PostgreSQL
      when DATABASE_URL is set, so an interrupted run can be resumed
    - TokenCache shares OAuth2 tokens between all HTTP clients

Environment Variables Required:
    - HUB_BASE_URL, HUB_TOKEN_URL, HUB_CLIENT_ID, HUB_CLIENT_SECRET
    - ACTILITY_API_TOKEN_URI, ACTILITY_API_CLIENT_ID,
      ACTILITY_API_CLIENT_SECRET, ACTILITY_API_DEVICES_URI
    - DATABASE_URL: PostgreSQL connection string (optional)

Example Usage:
    $ python main.py reconcile                         # Bulk resync into the hub
    $ python main.py reconcile --run-id nightly-0412   # Named (resumable) run
    $ python main.py schedule                          # Reconcile every SYNC_INTERVAL_MINUTES
    $ python main.py dispatch-events events.json       # Route hub lifecycle events
    $ python main.py create-device dev-1 --tags tags.json
    $ python main.py delete-device dev-1
    $ python main.py resume nightly-0412               # Continue an interrupted run
    $ python main.py resume --all                      # Continue every unfinished run
"""
import argparse
import asyncio
import json
import logging
import signal
import sys
from datetime import datetime, timezone
from pathlib import Path

import pydantic

from src.hubsync.api.exceptions import HubSyncError
from src.hubsync.app import HubSyncApp
from src.hubsync.config import SyncSettings
from src.hubsync.scheduler import scheduler_loop

logger = logging.getLogger("hubsync.main")


def _print_outcome(outcome) -> bool:
    print(f"\n[Main] {outcome.name} {outcome.instance_id}: {outcome.status.value}")
    if outcome.output is not None:
        print(json.dumps(outcome.output, indent=2, default=str))
    if outcome.error:
        print(json.dumps(outcome.error, indent=2, default=str))
    return outcome.succeeded


# ============================================
# Commands
# ============================================

async def cmd_reconcile(app: HubSyncApp, args: argparse.Namespace) -> bool:
    outcome = await app.reconcile(run_id=args.run_id)
    return _print_outcome(outcome)


async def cmd_schedule(app: HubSyncApp, args: argparse.Namespace) -> bool:
    settings = app.settings
    interval_minutes = args.interval or settings.sync_interval_minutes
    shutdown_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def handle_shutdown(signum, frame):
        print(f"\n[Scheduler] Received signal {signum}, initiating shutdown...")
        loop.call_soon_threadsafe(shutdown_event.set)

    signal.signal(signal.SIGTERM, handle_shutdown)
    signal.signal(signal.SIGINT, handle_shutdown)

    print(f"[Main] Reconciling every {interval_minutes} minute(s)")
    if not app.synchronizer_enabled:
        print("[Main] HUB_SYNCHRONIZER_ENABLED=false: every scheduled run will be skipped")

    state = await scheduler_loop(
        app,
        interval_seconds=interval_minutes * 60,
        shutdown_event=shutdown_event,
        run_on_startup=settings.sync_on_startup and not args.no_startup_run,
    )
    return state.failed_runs == 0


async def cmd_dispatch_events(app: HubSyncApp, args: argparse.Namespace) -> bool:
    payload = Path(args.file).read_text(encoding="utf-8")
    started = await app.dispatch_events(payload)
    print(f"[Main] Started {len(started)} workflow(s)")

    if args.no_wait:
        return True

    ok = True
    for outcome in await app.wait_all(started):
        ok = _print_outcome(outcome) and ok
    return ok


async def cmd_create_device(app: HubSyncApp, args: argparse.Namespace) -> bool:
    tags = {}
    if args.tags:
        tags = json.loads(Path(args.tags).read_text(encoding="utf-8"))
    result = await app.facade.create_device(args.device_id, tags)
    print(f"[Main] Create {args.device_id}: {result.outcome.value}")
    return result.succeeded


async def cmd_delete_device(app: HubSyncApp, args: argparse.Namespace) -> bool:
    result = await app.facade.delete_device(args.device_id)
    print(f"[Main] Delete {args.device_id}: {result.outcome.value}")
    return result.succeeded


async def cmd_resume(app: HubSyncApp, args: argparse.Namespace) -> bool:
    if args.all:
        instance_ids = await app.resume_pending()
        print(f"[Main] Resumed {len(instance_ids)} instance(s)")
        ok = True
        for outcome in await app.wait_all(instance_ids):
            ok = _print_outcome(outcome) and ok
        return ok

    if not args.instance_id:
        print("[Main] resume needs an instance id or --all")
        return False
    return _print_outcome(await app.resume(args.instance_id))


COMMANDS = {
    "reconcile": cmd_reconcile,
    "schedule": cmd_schedule,
    "dispatch-events": cmd_dispatch_events,
    "create-device": cmd_create_device,
    "delete-device": cmd_delete_device,
    "resume": cmd_resume,
}


async def run(args: argparse.Namespace) -> int:
    """Build the app and run one command.

    Returns:
        Process exit code.
    """
    start_time = datetime.now(timezone.utc)
    settings = SyncSettings.from_env()

    try:
        async with HubSyncApp(settings) as app:
            ok = await COMMANDS[args.command](app, args)
    except HubSyncError as e:
        logger.error(f"{args.command} failed: {e}")
        return 1
    except pydantic.ValidationError as e:
        logger.error(f"{args.command} failed: invalid event payload: {e}")
        return 1
    except KeyError as e:
        # unknown workflow instance or orchestration
        logger.error(f"{args.command} failed: {e.args[0] if e.args else e}")
        return 1

    duration = (datetime.now(timezone.utc) - start_time).total_seconds()
    print(f"\n[Main] Completed in {duration:.1f} seconds")
    return 0 if ok else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Sync devices between a hub registry and an external registry",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py reconcile                       # Bulk resync into the hub
  python main.py schedule --interval 30           # Bulk resync every 30 minutes
  python main.py dispatch-events events.json     # Route hub lifecycle events
  python main.py create-device dev-1             # Create a hub device
  python main.py delete-device dev-1             # Delete (or disable) a hub device
  python main.py resume --all                    # Continue unfinished workflows
        """
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)"
    )

    commands = parser.add_subparsers(dest="command", required=True)

    reconcile = commands.add_parser("reconcile", help="Run a bulk reconciliation")
    reconcile.add_argument(
        "--run-id",
        metavar="ID",
        help="Workflow instance id (also the staging container name)"
    )

    schedule = commands.add_parser("schedule", help="Run bulk reconciliation on an interval")
    schedule.add_argument(
        "--interval",
        type=int,
        metavar="MINUTES",
        help="Minutes between runs (default: SYNC_INTERVAL_MINUTES)"
    )
    schedule.add_argument(
        "--no-startup-run",
        action="store_true",
        help="Wait one interval before the first run"
    )

    events = commands.add_parser("dispatch-events", help="Dispatch hub lifecycle events")
    events.add_argument("file", help="JSON file holding an array of events")
    events.add_argument(
        "--no-wait",
        action="store_true",
        help="Return once workflows are started"
    )

    create = commands.add_parser("create-device", help="Create a hub device")
    create.add_argument("device_id")
    create.add_argument("--tags", metavar="FILE", help="JSON file with twin tags")

    delete = commands.add_parser("delete-device", help="Delete or disable a hub device")
    delete.add_argument("device_id")

    resume = commands.add_parser("resume", help="Resume workflows from the effect log")
    resume.add_argument("instance_id", nargs="?")
    resume.add_argument("--all", action="store_true", help="Resume every unfinished instance")

    return parser


def main():
    args = build_parser().parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    sys.exit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()
