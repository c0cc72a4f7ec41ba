#!/usr/bin/env python3
"""Recurring bulk reconciliation.

Runs HubSyncApp.reconcile() every SYNC_INTERVAL_MINUTES until shutdown is
requested. Each run is its own durable workflow instance, so a run cut
short by a restart can still be finished with ``main.py resume --all``.

Features:
    - Optional run on startup (SYNC_ON_STARTUP)
    - HUB_SYNCHRONIZER_ENABLED=false turns every tick into a skip
    - A failed run is counted and logged; the schedule keeps going
    - Graceful shutdown through an asyncio.Event (set from SIGTERM/SIGINT)

Usage:
    SYNC_INTERVAL_MINUTES=30 python main.py schedule
"""
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from .api.exceptions import HubSyncError

logger = logging.getLogger(__name__)


@dataclass
class SchedulerState:
    """Counters for the scheduled runs of one process."""
    total_runs: int = 0
    failed_runs: int = 0
    skipped_runs: int = 0
    last_run_at: Optional[datetime] = None
    last_run_success: Optional[bool] = None
    last_instance_id: Optional[str] = None


async def run_scheduled_reconcile(app, state: SchedulerState) -> None:
    """One tick: reconcile unless the synchronizer is switched off."""
    if not app.synchronizer_enabled:
        state.skipped_runs += 1
        logger.info("Hub synchronizer disabled (HUB_SYNCHRONIZER_ENABLED=false), skipping run")
        return

    state.total_runs += 1
    state.last_run_at = datetime.now(timezone.utc)
    try:
        outcome = await app.reconcile()
    except HubSyncError as e:
        state.failed_runs += 1
        state.last_run_success = False
        logger.error(f"Scheduled reconciliation failed to run: {e}")
        return

    state.last_instance_id = outcome.instance_id
    state.last_run_success = outcome.succeeded
    if outcome.succeeded:
        logger.info(f"Scheduled reconciliation {outcome.instance_id} completed: {outcome.output}")
    else:
        state.failed_runs += 1
        logger.error(f"Scheduled reconciliation {outcome.instance_id} failed: {outcome.error}")


async def scheduler_loop(
    app,
    interval_seconds: float,
    shutdown_event: asyncio.Event,
    run_on_startup: bool = True,
    state: Optional[SchedulerState] = None,
) -> SchedulerState:
    """Reconcile on a fixed interval until ``shutdown_event`` is set.

    Args:
        app: Entered HubSyncApp (anything with ``reconcile()`` and
            ``synchronizer_enabled``)
        interval_seconds: Time between the end of one run and the next
        shutdown_event: Set to stop the loop; an in-flight run finishes first
        run_on_startup: Run once before the first wait
        state: Counters to update (a fresh SchedulerState by default)

    Returns:
        The counters after shutdown.
    """
    state = state or SchedulerState()

    if run_on_startup and not shutdown_event.is_set():
        print("[Scheduler] Running initial reconciliation on startup...")
        await run_scheduled_reconcile(app, state)

    while not shutdown_event.is_set():
        next_run = datetime.now(timezone.utc) + timedelta(seconds=interval_seconds)
        print(f"[Scheduler] Next reconciliation at {next_run.isoformat()}")
        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=interval_seconds)
            break
        except asyncio.TimeoutError:
            pass

        print("\n[Scheduler] ========== SCHEDULED RECONCILIATION ==========")
        await run_scheduled_reconcile(app, state)

    print(
        f"[Scheduler] Shutdown requested after {state.total_runs} run(s) "
        f"({state.failed_runs} failed, {state.skipped_runs} skipped)"
    )
    return state


__all__ = ["SchedulerState", "run_scheduled_reconcile", "scheduler_loop"]
