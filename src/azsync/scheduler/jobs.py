"""
APScheduler jobs for background sync.

Bounded syncs run on a cron for every enabled tenant: metrics hourly, SQL
insights hourly (or daily when sql_insights_sync_hour is set), costs daily,
the resource inventory every resource_sync_hours hours.
The reaper runs on an interval so a run whose continuation was lost is
failed even when no new sync request arrives.

The same scheduler also carries chunk continuations when the "scheduler"
transport is configured (see azsync.sync.continuation).
"""
import logging
from datetime import datetime
from typing import Tuple

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from azsync.config import get_settings
from azsync.sync.engine import SyncEngine, build_sync_engine

logger = logging.getLogger(__name__)


def build_scheduler(engine=None) -> Tuple[AsyncIOScheduler, SyncEngine]:
    """
    Create the scheduler and the SyncEngine that sends continuations through it.

    Args:
        engine: SQLAlchemy engine; defaults to the application engine.

    Returns:
        (scheduler, sync_engine). The scheduler is configured but not started.
    """
    scheduler = AsyncIOScheduler()
    sync_engine = build_sync_engine(engine, scheduler)
    add_periodic_jobs(scheduler, sync_engine)
    return scheduler, sync_engine


def add_periodic_jobs(scheduler: AsyncIOScheduler, sync_engine: SyncEngine) -> None:
    settings = get_settings()

    scheduler.add_job(
        _periodic_sync,
        trigger="cron",
        minute=settings.metrics_sync_minute,
        id="metrics_sync",
        replace_existing=True,
        kwargs={"sync_engine": sync_engine, "sync_type": "metrics"},
    )

    sql_trigger = {"minute": 30}
    if settings.sql_insights_sync_hour is not None:
        sql_trigger["hour"] = settings.sql_insights_sync_hour
    scheduler.add_job(
        _periodic_sync,
        trigger="cron",
        id="sql_insights_sync",
        replace_existing=True,
        kwargs={"sync_engine": sync_engine, "sync_type": "sql-insights"},
        **sql_trigger,
    )

    scheduler.add_job(
        _periodic_sync,
        trigger="cron",
        hour=settings.cost_sync_hour,
        minute=0,
        id="cost_sync",
        replace_existing=True,
        kwargs={"sync_engine": sync_engine, "sync_type": "costs"},
    )

    scheduler.add_job(
        _periodic_sync,
        trigger="cron",
        hour=f"*/{settings.resource_sync_hours}",
        minute=0,
        id="resources_sync",
        replace_existing=True,
        kwargs={"sync_engine": sync_engine, "sync_type": "resources"},
    )

    scheduler.add_job(
        _reap,
        trigger="interval",
        minutes=settings.reaper_interval_minutes,
        id="reap_stuck_jobs",
        replace_existing=True,
        kwargs={"sync_engine": sync_engine},
    )


async def _periodic_sync(sync_engine: SyncEngine, sync_type: str) -> None:
    """
    Bounded sync of one kind for every enabled tenant.

    A failing tenant is logged and the loop moves on to the next one.
    """
    logger.info("Periodic %s sync starting at %s", sync_type, datetime.utcnow().isoformat())
    for tenant_id in sync_engine.enabled_tenant_ids():
        try:
            result = await sync_engine.run_bounded(sync_type, tenant_id)
            logger.info("Tenant %s: %s", tenant_id, result["message"])
        except Exception as exc:
            logger.error("Periodic %s sync failed for tenant %s: %s", sync_type, tenant_id, exc)


def _reap(sync_engine: SyncEngine) -> None:
    try:
        sync_engine.reap()
    except Exception as exc:
        logger.error("Reaper failed: %s", exc)
