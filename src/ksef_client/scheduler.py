"""
Scheduler: periodic execution of the tenant sync.

Infrastructure layer: uses APScheduler (3.x) AsyncIOScheduler so the sync
job runs on the same event loop as the Exchange clients and the ASGI app.

Two jobs:
  ksef_sync      every `interval_minutes`; optionally fired once at startup
  ledger_purge   daily; drops submission records past the retention window

A job never raises into the scheduler: outcomes are logged and the next
tick runs regardless. max_instances=1 keeps a slow run from overlapping the
next one.
"""

from __future__ import annotations

import time
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from ksef_client.domain.models import SyncRunResult
from ksef_client.result import Result

log = structlog.get_logger()

SYNC_JOB_ID = "ksef_sync"
PURGE_JOB_ID = "ledger_purge"


async def run_sync_job(sync_fn: Callable[[], Awaitable[list[SyncRunResult]]]) -> list[SyncRunResult]:
    """Execute one sync run, timing it and logging the outcome."""
    started = time.perf_counter()
    try:
        results = await sync_fn()
    except Exception as e:
        log.exception("scheduler.job_crashed", job=SYNC_JOB_ID, error=str(e))
        return []

    elapsed = round(time.perf_counter() - started, 3)
    failed = [r.tenant_id for r in results if not r.succeeded]
    if failed:
        log.warning(
            "scheduler.job_completed_with_errors",
            duration_seconds=elapsed,
            tenants=len(results),
            failed_tenants=failed,
        )
    else:
        log.info(
            "scheduler.job_completed",
            duration_seconds=elapsed,
            tenants=len(results),
            documents=sum(r.total_documents for r in results),
        )
    return results


async def run_purge_job(purge_fn: Callable[[], Awaitable[Result[int]]]) -> Result[int]:
    result = await purge_fn()
    if result.is_success():
        log.info("scheduler.purge_completed", removed=result.value())
    else:
        log.error("scheduler.purge_failed", failure=str(result.error()))
    return result


def create_scheduler(
    sync_fn: Callable[[], Awaitable[list[SyncRunResult]]],
    interval_minutes: int = 15,
    run_on_startup: bool = True,
    purge_fn: Callable[[], Awaitable[Result[int]]] | None = None,
) -> AsyncIOScheduler:
    """
    Create an AsyncIOScheduler running the sync every `interval_minutes`.

    Args:
        sync_fn: Zero-argument coroutine function running one sync across tenants.
        interval_minutes: Minutes between runs.
        run_on_startup: If True, the first run is scheduled for "now" instead
            of one interval after start.
        purge_fn: Optional coroutine function purging expired ledger entries,
            scheduled daily at 03:00 UTC.

    Returns:
        A configured scheduler; call .start() from inside a running event loop.
    """
    if interval_minutes < 1:
        raise ValueError("interval_minutes must be at least 1")

    scheduler = AsyncIOScheduler(timezone=UTC)
    # an explicit next_run_time=None adds the job paused
    first_run = {"next_run_time": datetime.now(UTC)} if run_on_startup else {}
    scheduler.add_job(
        run_sync_job,
        trigger=IntervalTrigger(minutes=interval_minutes, timezone=UTC),
        args=[sync_fn],
        id=SYNC_JOB_ID,
        name="Exchange document sync",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
        **first_run,
    )
    if run_on_startup:
        log.info("scheduler.startup_run", message="First sync scheduled immediately")

    if purge_fn is not None:
        scheduler.add_job(
            run_purge_job,
            trigger=CronTrigger(hour=3, minute=0, timezone=UTC),
            args=[purge_fn],
            id=PURGE_JOB_ID,
            name="Submission ledger retention purge",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
    return scheduler
