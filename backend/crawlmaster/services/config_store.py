import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from crawlmaster.database import insert_ignoring_conflicts
from crawlmaster.models import ElasticIp, SchedulerConfigRecord
from crawlmaster.models.base import utcnow
from crawlmaster.schemas.config import SchedulerConfig

logger = logging.getLogger(__name__)


async def _get_record(db: AsyncSession, name: str) -> SchedulerConfigRecord | None:
    result = await db.execute(
        select(SchedulerConfigRecord).where(SchedulerConfigRecord.name == name)
    )
    return result.scalar_one_or_none()


def _to_config(record: SchedulerConfigRecord) -> SchedulerConfig:
    data = dict(record.data or {})
    data["name"] = record.name
    data["scheduler_started"] = record.scheduler_started
    return SchedulerConfig.model_validate(data)


async def create_default_config(db: AsyncSession, name: str) -> SchedulerConfig:
    """Store the default config under ``name`` unless one already exists."""
    record = await _get_record(db, name)
    if record is not None:
        return _to_config(record)

    config = SchedulerConfig(name=name)
    record = SchedulerConfigRecord(
        name=name,
        data=config.model_dump(mode="json", exclude={"name", "scheduler_started"}),
    )
    db.add(record)
    await db.commit()
    logger.info("Created default scheduler config %s", name)
    return config


async def load_config(db: AsyncSession, name: str) -> SchedulerConfig:
    record = await _get_record(db, name)
    if record is None:
        logger.warning("Scheduler config %s not found, using defaults", name)
        return SchedulerConfig(name=name)
    return _to_config(record)


async def update_config(db: AsyncSession, name: str, **changes) -> SchedulerConfig:
    record = await _get_record(db, name)
    if record is None:
        await create_default_config(db, name)
        record = await _get_record(db, name)

    current = _to_config(record)
    # validate before persisting
    updated = current.model_copy(update=changes)
    updated = SchedulerConfig.model_validate(updated.model_dump())
    record.data = updated.model_dump(mode="json", exclude={"name", "scheduler_started"})
    await db.commit()
    logger.info("Updated scheduler config %s: %s", name, sorted(changes))
    return updated


async def record_scheduler_started(db: AsyncSession, name: str) -> None:
    record = await _get_record(db, name)
    if record is None:
        await create_default_config(db, name)
        record = await _get_record(db, name)
    record.scheduler_started = utcnow()
    await db.commit()


async def seed_elastic_ips(db: AsyncSession, config: SchedulerConfig) -> int:
    """Insert the configured elastic ips that are not yet in the pool."""
    if not config.elastic_ips:
        return 0
    rows = [{"eid": e.eid, "ip": e.ip, "used": False} for e in config.elastic_ips]
    num_added = await insert_ignoring_conflicts(db, ElasticIp, rows, ["eid"])
    if num_added:
        logger.info("Added %s elastic ips to the pool", num_added)
    return num_added
