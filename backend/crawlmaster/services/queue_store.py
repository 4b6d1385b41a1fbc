import logging
from dataclasses import dataclass
from datetime import timedelta

from sqlalchemy import (
    Column,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    bindparam,
    func,
    insert,
    select,
    update,
)
from sqlalchemy.ext.asyncio import AsyncSession

from crawlmaster.models.base import UTCDateTime, utcnow
from crawlmaster.models.enums import QueueItemStatus

logger = logging.getLogger(__name__)

INITIAL = QueueItemStatus.initial.value
RUNNING = QueueItemStatus.running.value
COMPLETED = QueueItemStatus.completed.value
FAILED = QueueItemStatus.failed.value

_tables: dict[str, Table] = {}


def queue_name(task_id: int) -> str:
    return f"item_queue_{task_id}"


def queue_table(name: str) -> Table:
    table = _tables.get(name)
    if table is None:
        table = Table(
            name,
            MetaData(),
            Column("id", Integer, primary_key=True),
            Column("item", Text, nullable=False),
            Column("status", String(20), nullable=False, default=INITIAL, index=True),
            Column("crawled", UTCDateTime),
            Column("retries", Integer, nullable=False, default=0),
            Column("error", Text),
            Column("region", String(64)),
        )
        _tables[name] = table
    return table


@dataclass
class QueueStats:
    initial: int = 0
    running: int = 0
    completed: int = 0
    failed: int = 0
    # failed items that reached the retry ceiling, None for lean statistics
    terminally_failed: int | None = None

    @property
    def total(self) -> int:
        return self.initial + self.running + self.completed + self.failed


class QueueStore:
    """Work items of one task, one row per item."""

    def __init__(self, db: AsyncSession, name: str):
        self.db = db
        self.name = name
        self.table = queue_table(name)

    async def create(self) -> None:
        conn = await self.db.connection()
        await conn.run_sync(self.table.create, checkfirst=True)
        await self.db.commit()

    async def drop(self) -> None:
        conn = await self.db.connection()
        await conn.run_sync(self.table.drop, checkfirst=True)
        await self.db.commit()
        _tables.pop(self.name, None)

    async def insert_items(self, items: list[str]) -> int:
        rows = [
            {"item": item, "status": INITIAL, "retries": 0}
            for item in items
            if isinstance(item, str) and item.strip()
        ]
        if not rows:
            return 0
        await self.db.execute(insert(self.table), rows)
        await self.db.commit()
        logger.info("Inserted %s items into %s", len(rows), self.name)
        return len(rows)

    async def claim_item(self) -> dict | None:
        """Atomically move one initial item to running."""
        t = self.table
        candidate = t.alias("candidate")
        next_id = (
            select(candidate.c.id)
            .where(candidate.c.status == INITIAL)
            .order_by(candidate.c.id)
            .limit(1)
            .with_for_update(skip_locked=True)
            .scalar_subquery()
        )
        result = await self.db.execute(
            update(t)
            .where(t.c.id == next_id)
            .where(t.c.status == INITIAL)
            .values(status=RUNNING, retries=t.c.retries + 1)
            .returning(t.c.id, t.c.item, t.c.retries)
        )
        row = result.first()
        await self.db.commit()
        if row is None:
            return None
        return dict(row._mapping)

    async def claim_items(self, n: int) -> list[dict]:
        claimed = []
        for _ in range(n):
            item = await self.claim_item()
            if item is None:
                break
            claimed.append(item)
        return claimed

    async def update_items(self, results: list[dict]) -> int:
        """Write back worker results, each a dict with ``id`` and ``status``."""
        if not results:
            return 0
        now = utcnow()
        rows = []
        for result in results:
            status = result["status"]
            crawled = result.get("crawled")
            if crawled is None and status == COMPLETED:
                crawled = now
            rows.append(
                {
                    "item_id": result["id"],
                    "new_status": status,
                    "new_crawled": crawled,
                    "new_error": result.get("error"),
                    "new_region": result.get("region"),
                }
            )
        t = self.table
        await self.db.execute(
            update(t)
            .where(t.c.id == bindparam("item_id"))
            .values(
                status=bindparam("new_status"),
                crawled=bindparam("new_crawled"),
                error=bindparam("new_error"),
                region=bindparam("new_region"),
            ),
            rows,
        )
        await self.db.commit()
        return len(rows)

    async def get_statistics_lean(self) -> QueueStats:
        t = self.table
        result = await self.db.execute(
            select(t.c.status, func.count()).group_by(t.c.status)
        )
        stats = QueueStats()
        for status, count in result.all():
            if status in (INITIAL, RUNNING, COMPLETED, FAILED):
                setattr(stats, status, count)
        return stats

    async def get_statistics(self, retry_failed_items: int) -> QueueStats:
        stats = await self.get_statistics_lean()
        stats.terminally_failed = await self.count_terminally_failed(retry_failed_items)
        return stats

    async def count_terminally_failed(self, retry_failed_items: int) -> int:
        t = self.table
        result = await self.db.execute(
            select(func.count())
            .select_from(t)
            .where(t.c.status == FAILED)
            .where(t.c.retries >= retry_failed_items)
        )
        return result.scalar_one()

    @staticmethod
    def task_finished(task, stats: QueueStats) -> bool:
        if task.longliving:
            return False
        if stats.initial or stats.running:
            return False
        return stats.completed + (stats.terminally_failed or 0) >= stats.total

    async def reset_running_items(self) -> int:
        t = self.table
        result = await self.db.execute(
            update(t).where(t.c.status == RUNNING).values(status=INITIAL)
        )
        await self.db.commit()
        return result.rowcount

    async def enqueue_failed_items(self, retry_ceiling: int) -> int:
        t = self.table
        result = await self.db.execute(
            update(t)
            .where(t.c.status == FAILED)
            .where(t.c.retries < retry_ceiling)
            .values(status=INITIAL)
        )
        await self.db.commit()
        return result.rowcount

    async def enqueue_all_failed_items(self) -> int:
        t = self.table
        result = await self.db.execute(
            update(t)
            .where(t.c.status == FAILED)
            .values(status=INITIAL, retries=0, error=None)
        )
        await self.db.commit()
        return result.rowcount

    async def completed_items_newer_than(self, minutes: float) -> int:
        t = self.table
        cutoff = utcnow() - timedelta(minutes=minutes)
        result = await self.db.execute(
            select(func.count())
            .select_from(t)
            .where(t.c.status == COMPLETED)
            .where(t.c.crawled > cutoff)
        )
        return result.scalar_one()

    async def get_task_progress(self, num_items: int) -> dict:
        stats = await self.get_statistics_lean()
        done = stats.completed + stats.failed
        return {
            "num_items": num_items,
            "completed": stats.completed,
            "failed": stats.failed,
            "progress": done / num_items if num_items else 0.0,
        }

    async def get_recent_completed(self, limit: int = 10) -> list[dict]:
        t = self.table
        result = await self.db.execute(
            select(t)
            .where(t.c.status == COMPLETED)
            .order_by(t.c.crawled.desc())
            .limit(limit)
        )
        return [dict(row._mapping) for row in result.all()]

    async def get_items(self, status: str | None = None) -> list[dict]:
        t = self.table
        stmt = select(t).order_by(t.c.id)
        if status is not None:
            stmt = stmt.where(t.c.status == status)
        result = await self.db.execute(stmt)
        return [dict(row._mapping) for row in result.all()]

    async def get_item_summaries(self, status: str | None = None) -> list[dict]:
        t = self.table
        stmt = select(t.c.id, t.c.status, t.c.retries).order_by(t.c.id)
        if status is not None:
            stmt = stmt.where(t.c.status == status)
        result = await self.db.execute(stmt)
        return [dict(row._mapping) for row in result.all()]

