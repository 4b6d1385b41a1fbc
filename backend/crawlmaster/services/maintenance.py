import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from crawlmaster.database import async_session
from crawlmaster.models import CrawlTask
from crawlmaster.services.config_store import load_config
from crawlmaster.services.task_store import ACTIVE_STATUSES
from crawlmaster.services.worker_meta_store import WorkerMetaStore

logger = logging.getLogger(__name__)

scheduler = AsyncIOScheduler()

PURGE_JOB_ID = "purge_worker_meta"


async def purge_worker_meta(config_name: str, session_factory=async_session) -> int:
    """Delete completed worker meta older than the configured retention."""
    async with session_factory() as db:
        config = await load_config(db, config_name)
        result = await db.execute(
            select(CrawlTask.id, CrawlTask.worker_meta)
            .where(CrawlTask.status.in_(ACTIVE_STATUSES))
            .where(CrawlTask.worker_meta.is_not(None))
        )
        tables = result.all()

        num_purged = 0
        for task_id, name in tables:
            try:
                num_purged += await WorkerMetaStore(db, name).purge(
                    config.purge_worker_meta_after_minutes
                )
            except SQLAlchemyError:
                logger.exception("[%s] Failed to purge worker meta %s", task_id, name)
                await db.rollback()

    if num_purged:
        logger.info(
            "Purged %s worker meta records older than %s minutes",
            num_purged,
            config.purge_worker_meta_after_minutes,
        )
    return num_purged


def add_purge_job(config_name: str, interval_minutes: float = 10):
    """Add or replace the periodic worker meta purge."""
    if scheduler.get_job(PURGE_JOB_ID):
        scheduler.remove_job(PURGE_JOB_ID)

    scheduler.add_job(
        purge_worker_meta,
        trigger=IntervalTrigger(minutes=interval_minutes),
        id=PURGE_JOB_ID,
        args=[config_name],
        replace_existing=True,
    )
    logger.info("Purging worker meta every %s minutes", interval_minutes)
