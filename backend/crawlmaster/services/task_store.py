import logging
import math
from dataclasses import dataclass, field

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from crawlmaster.models import CrawlTask
from crawlmaster.models.enums import CrawlStatus, PriorityPolicy, WorkerType
from crawlmaster.schemas.config import SchedulerConfig
from crawlmaster.services.queue_store import QueueStats, QueueStore, queue_name
from crawlmaster.services.worker_meta_store import WorkerMetaStore, worker_meta_name

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = (CrawlStatus.started.value, CrawlStatus.paused.value)

# no task may ever have more workers than this running or launched at once
HARD_LIMIT_MAX_WORKERS = 200
# floor for the measured per-worker rate, failing workers report near zero
MIN_AVG_IPS = 0.05
DEFAULT_ITEMS_PER_SECOND = {
    WorkerType.browser.value: 0.2,
    WorkerType.http.value: 0.5,
}


async def create_task(
    db: AsyncSession,
    *,
    items: list[str],
    worker_type: str = WorkerType.http.value,
    function_code: str = "",
    config: SchedulerConfig | None = None,
    **fields,
) -> CrawlTask:
    fields.setdefault("status", CrawlStatus.started.value)
    if config is not None:
        fields.setdefault("retry_failed_items", config.retry_failed_items)
    task = CrawlTask(worker_type=worker_type, function_code=function_code, **fields)
    db.add(task)
    await db.flush()
    task.queue = queue_name(task.id)
    task.worker_meta = worker_meta_name(task.id)
    await db.commit()

    await WorkerMetaStore(db, task.worker_meta).create()
    queue = QueueStore(db, task.queue)
    await queue.create()
    task.num_items = await queue.insert_items(items)
    await db.commit()

    logger.info(
        "Created crawl task=%s worker_type=%s items=%s", task.id, task.worker_type, task.num_items
    )
    return task


async def enqueue_items(db: AsyncSession, task: CrawlTask, items: list[str]) -> int:
    if not task.longliving:
        logger.warning("[%s] Refusing to enqueue into a task that is not longliving", task.id)
        return 0
    num_inserted = await QueueStore(db, task.queue).insert_items(items)
    task.num_items += num_inserted
    await db.commit()
    return num_inserted


async def get_active_tasks(db: AsyncSession) -> list[CrawlTask]:
    result = await db.execute(
        select(CrawlTask)
        .where(CrawlTask.status.in_(ACTIVE_STATUSES))
        .order_by(CrawlTask.id)
    )
    tasks = list(result.scalars().all())
    num_started = sum(1 for t in tasks if t.status == CrawlStatus.started)
    logger.info(
        "Got %s running tasks and %s paused tasks", num_started, len(tasks) - num_started
    )
    return tasks


def select_by_priority(tasks: list[CrawlTask], policy: str) -> list[CrawlTask]:
    if not tasks:
        return []
    if policy == PriorityPolicy.relative:
        return sorted(tasks, key=lambda t: t.priority)
    max_priority = max(t.priority for t in tasks)
    return [t for t in tasks if t.priority >= max_priority]


async def mark_completed(db: AsyncSession, task: CrawlTask, stats: QueueStats | None = None) -> None:
    task.status = CrawlStatus.completed.value
    await db.commit()
    logger.info(
        "[%s] CrawlTask is completed! %s items were crawled in %s worker invocations",
        task.id,
        stats.completed if stats else task.num_items_crawled,
        task.num_crawl_workers_started,
    )


async def quarantine(db: AsyncSession, task: CrawlTask, reasons: list[str]) -> None:
    task.status = CrawlStatus.failed.value
    await db.commit()
    logger.error("[%s] Task failed, disabling it: %s", task.id, "; ".join(reasons))


async def reset_task(db: AsyncSession, task: CrawlTask, *, enqueue_failed: bool = True) -> CrawlTask:
    """Operator reset of a quarantined task back to ``started``."""
    task.status = CrawlStatus.started.value
    task.num_workers_running = 0
    task.num_lost_workers = 0
    await db.commit()
    if enqueue_failed:
        queue = QueueStore(db, task.queue)
        await queue.reset_running_items()
        await queue.enqueue_all_failed_items()
    logger.warning("[%s] Task was reset to started", task.id)
    return task


async def tasks_needing_machines(db: AsyncSession, worker_type: str) -> list[CrawlTask]:
    """Container tasks of this worker type that still need the fleet."""
    result = await db.execute(
        select(CrawlTask)
        .where(CrawlTask.worker_type == worker_type)
        .where(CrawlTask.whitelisted_proxies.is_(True))
        .where(
            or_(
                CrawlTask.status == CrawlStatus.started.value,
                CrawlTask.num_workers_running > 0,
            )
        )
    )
    return list(result.scalars().all())


async def pause_container_tasks(db: AsyncSession) -> int:
    result = await db.execute(
        update(CrawlTask)
        .where(CrawlTask.whitelisted_proxies.is_(True))
        .where(CrawlTask.status == CrawlStatus.started.value)
        .values(status=CrawlStatus.paused.value)
        .execution_options(synchronize_session="fetch")
    )
    await db.commit()
    return result.rowcount


async def get_total_items(db: AsyncSession) -> int:
    result = await db.execute(select(func.coalesce(func.sum(CrawlTask.num_items), 0)))
    return int(result.scalar_one())


async def get_total_tasks(db: AsyncSession) -> int:
    result = await db.execute(select(func.count()).select_from(CrawlTask))
    return result.scalar_one()


def average_items_per_second(task: CrawlTask) -> float:
    samples = task.avg_items_per_second_worker or []
    if not samples:
        return DEFAULT_ITEMS_PER_SECOND.get(task.worker_type, DEFAULT_ITEMS_PER_SECOND["browser"])
    avg = sum(samples) / len(samples)
    if avg < MIN_AVG_IPS:
        logger.warning(
            "[%s] Average items per second is really small (%.4f), are the workers failing?",
            task.id,
            avg,
        )
        avg = MIN_AVG_IPS
    return avg


def compute_target_workers(task: CrawlTask, priority_scale: float = 1.0) -> int:
    """Workers needed to reach the task's requested crawl rate."""
    target = task.max_items_per_second / average_items_per_second(task)
    if priority_scale < 1.0:
        target *= priority_scale
    if target <= 1:
        return 1
    return math.floor(target)


def compute_workers_to_launch(
    task: CrawlTask,
    stats: QueueStats,
    target_workers: int,
) -> int:
    ceiling = min(target_workers, HARD_LIMIT_MAX_WORKERS)
    if task.max_workers is not None and task.max_workers >= 0:
        ceiling = min(ceiling, task.max_workers)
    to_launch = ceiling - task.num_workers_running
    to_launch = min(to_launch, stats.initial)
    return max(0, to_launch)


@dataclass
class TaskHealth:
    reasons: list[str] = field(default_factory=list)

    @property
    def healthy(self) -> bool:
        return not self.reasons


def check_task_health(task: CrawlTask, config: SchedulerConfig) -> TaskHealth:
    """Sanity check of the task counters. Clamps a negative running count."""
    health = TaskHealth()

    if task.num_workers_running < 0:
        health.reasons.append(f"num_workers_running={task.num_workers_running} is negative")
        task.num_workers_running = 0

    if task.num_workers_running > HARD_LIMIT_MAX_WORKERS:
        health.reasons.append(f"num_workers_running={task.num_workers_running} is too large")

    started = task.num_crawl_workers_started
    ratio = task.num_lost_workers / started if started else 0.0
    if ratio > config.max_lost_workers_ratio and task.num_lost_workers > task.max_lost_workers:
        health.reasons.append(f"{task.num_lost_workers}/{started} workers were lost")

    return health
