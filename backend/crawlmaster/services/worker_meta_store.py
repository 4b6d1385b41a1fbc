import logging
from datetime import datetime, timedelta

from sqlalchemy import (
    BigInteger,
    Column,
    Float,
    Integer,
    JSON,
    MetaData,
    String,
    Table,
    delete,
    func,
    insert,
    select,
    update,
)
from sqlalchemy.ext.asyncio import AsyncSession

from crawlmaster.models import CrawlTask
from crawlmaster.models.base import UTCDateTime, utcnow
from crawlmaster.models.enums import WorkerStatus

logger = logging.getLogger(__name__)

STARTED = WorkerStatus.started.value
COMPLETED = WorkerStatus.completed.value
LOST = WorkerStatus.lost.value

_tables: dict[str, Table] = {}


def worker_meta_name(task_id: int) -> str:
    return f"worker_meta_{task_id}"


def worker_meta_table(name: str) -> Table:
    table = _tables.get(name)
    if table is None:
        table = Table(
            name,
            MetaData(),
            Column("id", Integer, primary_key=True),
            Column("worker_id", Integer, nullable=False, index=True),
            Column("region", String(64)),
            Column("status", String(20), nullable=False, default=STARTED, index=True),
            Column("started", UTCDateTime, nullable=False),
            Column("ended", UTCDateTime),
            Column("average_items_per_second", Float),
            Column("num_items_crawled", Integer, nullable=False, default=0),
            Column("num_items_failed", Integer, nullable=False, default=0),
            Column("bytes_uploaded", BigInteger, nullable=False, default=0),
            Column("ip", String(64)),
            Column("worker_status", JSON),
            Column("items_browser_debug", JSON),
        )
        _tables[name] = table
    return table


class WorkerMetaStore:
    """Run records of the workers launched for one task."""

    def __init__(self, db: AsyncSession, name: str):
        self.db = db
        self.name = name
        self.table = worker_meta_table(name)

    async def create(self) -> None:
        conn = await self.db.connection()
        await conn.run_sync(self.table.create, checkfirst=True)
        await self.db.commit()

    async def drop(self) -> None:
        conn = await self.db.connection()
        await conn.run_sync(self.table.drop, checkfirst=True)
        await self.db.commit()
        _tables.pop(self.name, None)

    async def create_records(self, entries: list[tuple[int, str | None]]) -> None:
        """Insert one ``started`` record per ``(worker_id, region)`` pair."""
        if not entries:
            return
        now = utcnow()
        await self.db.execute(
            insert(self.table),
            [
                {
                    "worker_id": worker_id,
                    "region": region,
                    "status": STARTED,
                    "started": now,
                    "num_items_crawled": 0,
                    "num_items_failed": 0,
                    "bytes_uploaded": 0,
                }
                for worker_id, region in entries
            ],
        )
        await self.db.commit()

    async def create_record(self, worker_id: int, region: str | None = None) -> None:
        await self.create_records([(worker_id, region)])

    async def remove_by_ids(self, worker_ids: list[int]) -> int:
        if not worker_ids:
            return 0
        t = self.table
        result = await self.db.execute(delete(t).where(t.c.worker_id.in_(worker_ids)))
        await self.db.commit()
        return result.rowcount

    async def report_completion(
        self,
        worker_id: int,
        *,
        average_items_per_second: float,
        num_items_crawled: int = 0,
        num_items_failed: int = 0,
        bytes_uploaded: int = 0,
        ip: str | None = None,
        worker_status: dict | None = None,
        items_browser_debug: list | None = None,
        ended: datetime | None = None,
    ) -> bool:
        """Called by the worker itself once it is done.

        The status stays ``started``; the scheduler flips it on its next pass.
        """
        t = self.table
        result = await self.db.execute(
            update(t)
            .where(t.c.worker_id == worker_id)
            .where(t.c.status == STARTED)
            .where(t.c.ended.is_(None))
            .values(
                ended=ended or utcnow(),
                average_items_per_second=average_items_per_second,
                num_items_crawled=num_items_crawled,
                num_items_failed=num_items_failed,
                bytes_uploaded=bytes_uploaded,
                ip=ip,
                worker_status=worker_status,
                items_browser_debug=items_browser_debug or [],
            )
        )
        await self.db.commit()
        return result.rowcount > 0

    async def update_state(self, task: CrawlTask, max_samples: int = 100) -> int:
        """Fold self-reported completions into the task counters."""
        t = self.table
        result = await self.db.execute(
            select(t)
            .where(t.c.status == STARTED)
            .where(t.c.ended.is_not(None))
            .where(t.c.average_items_per_second.is_not(None))
            .order_by(t.c.ended)
        )
        finished = result.all()
        if not finished:
            return 0

        samples = list(task.avg_items_per_second_worker or [])
        debug = list(task.items_browser_debug or [])
        num_completed = 0
        for meta in finished:
            flipped = await self.db.execute(
                update(t)
                .where(t.c.id == meta.id)
                .where(t.c.status == STARTED)
                .values(status=COMPLETED)
            )
            if not flipped.rowcount:
                continue
            num_completed += 1
            if task.num_workers_running > 0:
                task.num_workers_running -= 1
            task.num_items_crawled += meta.num_items_crawled or 0
            samples.append(meta.average_items_per_second)
            if meta.items_browser_debug:
                debug.extend(meta.items_browser_debug)

        # JSON columns are only persisted on reassignment
        task.avg_items_per_second_worker = samples[-max_samples:]
        task.items_browser_debug = debug
        await self.db.commit()
        if num_completed:
            logger.info("[%s] %s workers completed", task.id, num_completed)
        return num_completed

    async def detect_lost_workers(self, task: CrawlTask, threshold_minutes: float) -> int:
        t = self.table
        cutoff = utcnow() - timedelta(minutes=threshold_minutes)
        result = await self.db.execute(
            update(t)
            .where(t.c.status == STARTED)
            .where(t.c.ended.is_(None))
            .where(t.c.started <= cutoff)
            .values(status=LOST)
            .returning(t.c.worker_id, t.c.started)
        )
        lost = result.all()
        for meta in lost:
            logger.warning(
                "[%s] Detected lost worker %s, non-responding since %s",
                task.id,
                meta.worker_id,
                meta.started.isoformat() if meta.started else None,
            )
            task.num_lost_workers += 1
            if task.num_workers_running > 0:
                task.num_workers_running -= 1
        await self.db.commit()
        return len(lost)

    async def last_completed_ended(self) -> datetime | None:
        t = self.table
        result = await self.db.execute(
            select(t.c.ended)
            .where(t.c.status == COMPLETED)
            .where(t.c.ended.is_not(None))
            .order_by(t.c.ended.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def purge(self, retention_minutes: float) -> int:
        t = self.table
        cutoff = utcnow() - timedelta(minutes=retention_minutes)
        result = await self.db.execute(
            delete(t)
            .where(t.c.status == COMPLETED)
            .where(t.c.ended.is_not(None))
            .where(t.c.ended <= cutoff)
        )
        await self.db.commit()
        if result.rowcount:
            logger.info("Purged %s worker meta records from %s", result.rowcount, self.name)
        return result.rowcount

    async def get_statistics(self) -> dict:
        t = self.table
        result = await self.db.execute(
            select(
                func.count(),
                func.sum(t.c.bytes_uploaded),
            )
        )
        total, bytes_uploaded = result.one()

        result = await self.db.execute(
            select(
                func.count(),
                func.avg(t.c.num_items_crawled),
                func.avg(t.c.num_items_failed),
                func.avg(t.c.average_items_per_second),
            ).where(t.c.status == COMPLETED)
        )
        completed, avg_crawled, avg_failed, avg_ips = result.one()

        result = await self.db.execute(
            select(t.c.started, t.c.ended).where(t.c.status == COMPLETED)
        )
        durations = [
            (ended - started).total_seconds()
            for started, ended in result.all()
            if started and ended
        ]

        result = await self.db.execute(
            select(func.count()).select_from(t).where(t.c.status == LOST)
        )
        lost = result.scalar_one()

        return {
            "num_workers": total,
            "num_completed": completed,
            "num_lost": lost,
            "percent_lost": 100.0 * lost / total if total else 0.0,
            "avg_items_crawled": float(avg_crawled or 0),
            "avg_items_failed": float(avg_failed or 0),
            "avg_items_per_second": float(avg_ips or 0),
            "avg_execution_seconds": sum(durations) / len(durations) if durations else 0.0,
            "bytes_uploaded": int(bytes_uploaded or 0),
        }

    async def get_ips(self, minutes: float) -> list[dict]:
        t = self.table
        cutoff = utcnow() - timedelta(minutes=minutes)
        result = await self.db.execute(
            select(t.c.worker_id, t.c.ip, t.c.ended, t.c.region)
            .where(t.c.status == COMPLETED)
            .where(t.c.ended > cutoff)
            .where(t.c.ip.is_not(None))
            .where(t.c.ip != "")
            .order_by(t.c.ended.desc())
        )
        return [dict(row._mapping) for row in result.all()]
