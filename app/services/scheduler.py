from __future__ import annotations
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from zoneinfo import ZoneInfo
import structlog

from .container import ServiceContainer

_log = structlog.get_logger()


def schedule_warm_job(container: ServiceContainer, sched: AsyncIOScheduler | None = None) -> AsyncIOScheduler:
    """Interval warm passes alongside the read-triggered ones; the in-flight flag keeps them exclusive."""
    sched = sched or AsyncIOScheduler(timezone=ZoneInfo("UTC"))
    interval = max(1.0, float(container.settings.market_data_warm_interval_seconds))
    sched.add_job(
        container.warm.run_once,
        IntervalTrigger(seconds=interval),
        id="market_data_warm",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    sched.start()
    _log.info("warm_scheduler_started", interval_seconds=interval)
    return sched
