from __future__ import annotations

import asyncio
import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from .logging_utils import get_logger, log_json
from .manager import CrawlManager

logger = get_logger(__name__)


def build_scheduler(manager: CrawlManager) -> AsyncIOScheduler:
    """Interval job that crawls every configured source."""
    sched = AsyncIOScheduler(timezone="UTC")

    async def job() -> None:
        try:
            results = await manager.crawl_all()
        except Exception as e:
            log_json(logger, logging.ERROR, "scheduled_job_failed", job="crawl_all", error=str(e))
            return
        log_json(logger, logging.INFO, "scheduled_crawl_done", results=results)

    sched.add_job(
        job,
        IntervalTrigger(minutes=manager.settings.sched_crawl_minutes),
        id="crawl_all",
        max_instances=1,
        coalesce=True,
    )
    return sched


async def run_forever(manager: CrawlManager) -> None:
    sched = build_scheduler(manager)
    async with manager.stall_checker():
        sched.start()
        log_json(
            logger,
            logging.INFO,
            "scheduler_started",
            sources=[s.source_name for s in manager.get_all_statuses()],
            crawl_minutes=manager.settings.sched_crawl_minutes,
        )
        try:
            await asyncio.Event().wait()
        finally:
            sched.shutdown(wait=False)
