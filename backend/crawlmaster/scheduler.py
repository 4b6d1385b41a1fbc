import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from crawlmaster.config import settings
from crawlmaster.database import async_session
from crawlmaster.models import CrawlTask
from crawlmaster.models.base import utcnow
from crawlmaster.models.enums import CrawlStatus, PriorityPolicy, WorkerType
from crawlmaster.schemas.config import SchedulerConfig
from crawlmaster.services.cloud import LambdaInvoker
from crawlmaster.services.config_store import load_config, record_scheduler_started
from crawlmaster.services.machine_allocator import MachineAllocator
from crawlmaster.services.queue_store import QueueStats, QueueStore
from crawlmaster.services.runner import CrawlRunner
from crawlmaster.services.task_store import (
    check_task_health,
    compute_target_workers,
    compute_workers_to_launch,
    get_active_tasks,
    mark_completed,
    pause_container_tasks,
    quarantine,
    select_by_priority,
    tasks_needing_machines,
)
from crawlmaster.services.worker_meta_store import WorkerMetaStore

logger = logging.getLogger(__name__)


def should_heal_queue(
    *,
    num_workers_running: int,
    running_items: int,
    lost_workers: int,
    last_completed_ended: datetime | None,
    grace_minutes: float,
    now: datetime | None = None,
) -> bool:
    """Whether items stuck in ``running`` can no longer be finished by anyone."""
    if running_items <= 0 or num_workers_running != 0:
        return False
    if lost_workers > 0:
        return True
    if last_completed_ended is None:
        return False
    now = now or utcnow()
    return now - last_completed_ended >= timedelta(minutes=grace_minutes)


def apply_log_level(config: SchedulerConfig) -> None:
    logging.getLogger("crawlmaster").setLevel(config.scheduler_loglevel.upper())


@dataclass
class CycleSummary:
    tasks: int = 0
    completed: int = 0
    quarantined: int = 0
    failed: int = 0
    workers_launched: int = 0


class Scheduler:
    """The control loop: one cycle per heartbeat, tasks processed one after another."""

    def __init__(
        self,
        *,
        session_factory=async_session,
        config_name: str | None = None,
        invoker: LambdaInvoker | None = None,
        allocator_factory=MachineAllocator,
        http_transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.session_factory = session_factory
        self.config_name = config_name or settings.config_name
        self.invoker = invoker or LambdaInvoker()
        self.allocator_factory = allocator_factory
        self.http_transport = http_transport

    async def load_config(self) -> SchedulerConfig:
        async with self.session_factory() as db:
            config = await load_config(db, self.config_name)
        apply_log_level(config)
        return config

    async def run_forever(self, stop_event: asyncio.Event) -> None:
        async with self.session_factory() as db:
            await record_scheduler_started(db, self.config_name)
        config = await self.load_config()
        logger.info("Scheduler started with heartbeat %ss", config.daemon_heartbeat)

        cycles = 0
        while not stop_event.is_set():
            if cycles > 0 and cycles % config.config_reload_cycles == 0:
                try:
                    config = await self.load_config()
                    logger.info("Reloaded config after %s cycles", cycles)
                except Exception:
                    logger.exception("Cannot reload config, keeping the previous one")

            try:
                await self.run_cycle(config)
            except Exception:
                logger.exception("Scheduler cycle %s failed", cycles)
            cycles += 1

            try:
                await asyncio.wait_for(stop_event.wait(), timeout=config.daemon_heartbeat)
            except asyncio.TimeoutError:
                continue

        logger.info("Scheduler stopped after %s cycles", cycles)

    async def run_cycle(self, config: SchedulerConfig) -> CycleSummary:
        summary = CycleSummary()

        async with self.session_factory() as db:
            try:
                await self.should_kill_machines(db, config)
            except Exception:
                logger.exception("Failed to check whether machines can be torn down")
                await db.rollback()

            tasks = select_by_priority(await get_active_tasks(db), config.priority_policy)
            task_ids = [(task.id, task.priority) for task in tasks]

        if not task_ids:
            return summary
        max_priority = max(priority for _, priority in task_ids)
        budget = config.max_workers_per_cycle

        for task_id, priority in task_ids:
            summary.tasks += 1
            priority_scale = 1.0
            if config.priority_policy == PriorityPolicy.relative and max_priority > 0:
                priority_scale = priority / max_priority

            async with self.session_factory() as db:
                try:
                    task = await db.get(CrawlTask, task_id)
                    if task is None:
                        continue
                    launched = await self.process_task(
                        db, task, config, budget, priority_scale, summary
                    )
                except Exception:
                    logger.exception("[%s] Failed to process task", task_id)
                    summary.failed += 1
                    await db.rollback()
                    continue

            budget -= launched
            summary.workers_launched += launched
            if budget <= 0:
                logger.warning(
                    "Launched %s workers this cycle, postponing the remaining tasks",
                    summary.workers_launched,
                )
                break

        return summary

    async def process_task(
        self,
        db: AsyncSession,
        task: CrawlTask,
        config: SchedulerConfig,
        budget: int,
        priority_scale: float,
        summary: CycleSummary,
    ) -> int:
        queue = QueueStore(db, task.queue)
        stats = await queue.get_statistics(task.retry_failed_items)
        logger.info("[%s] Queue state: %s", task.id, stats)

        if queue.task_finished(task, stats):
            await mark_completed(db, task, stats)
            summary.completed += 1
            return 0

        stats = await self.process_worker_meta(db, task, config, queue, stats)

        health = check_task_health(task, config)
        if not health.healthy:
            await quarantine(db, task, health.reasons)
            summary.quarantined += 1
            return 0

        if task.status != CrawlStatus.started:
            return 0

        target = compute_target_workers(task, priority_scale)
        to_launch = compute_workers_to_launch(task, stats, target)
        logger.info(
            "[%s] %s/%s %s workers running, %s/%s items done in %s invocations",
            task.id,
            task.num_workers_running,
            target,
            task.worker_type,
            stats.completed + stats.failed,
            task.num_items,
            task.num_crawl_workers_started,
        )
        if stats.initial <= 0:
            logger.debug("[%s] Not starting workers, no initial items left", task.id)

        to_launch = min(to_launch, budget)
        if to_launch <= 0:
            return 0

        started = await self.make_progress(db, task, config, stats, to_launch)
        if started > 0:
            task.num_workers_running += started
            task.num_crawl_workers_started += started
        await db.commit()
        return started

    async def process_worker_meta(
        self,
        db: AsyncSession,
        task: CrawlTask,
        config: SchedulerConfig,
        queue: QueueStore,
        stats: QueueStats,
    ) -> QueueStats:
        worker_meta = WorkerMetaStore(db, task.worker_meta)

        num_completed = await worker_meta.update_state(task, config.max_throughput_samples)
        logger.debug("[%s] Updated state from %s worker meta", task.id, num_completed)

        threshold = (
            config.worker_lost_threshold_docker_minutes
            if task.uses_containers
            else config.worker_lost_threshold_minutes
        )
        num_lost = await worker_meta.detect_lost_workers(task, threshold)

        if await self.heal_queue(task, config, queue, worker_meta, stats, num_lost):
            stats = await queue.get_statistics(task.retry_failed_items)

        if stats.failed > 0 and stats.running == 0:
            num_enqueued = await queue.enqueue_failed_items(task.retry_failed_items)
            if num_enqueued:
                logger.info("[%s] Enqueued %s failed items", task.id, num_enqueued)
                stats = await queue.get_statistics(task.retry_failed_items)

        return stats

    async def heal_queue(
        self,
        task: CrawlTask,
        config: SchedulerConfig,
        queue: QueueStore,
        worker_meta: WorkerMetaStore,
        stats: QueueStats,
        lost_workers: int,
    ) -> int:
        if stats.running <= 0 or task.num_workers_running != 0:
            return 0
        last_ended = await worker_meta.last_completed_ended()
        if not should_heal_queue(
            num_workers_running=task.num_workers_running,
            running_items=stats.running,
            lost_workers=lost_workers,
            last_completed_ended=last_ended,
            grace_minutes=config.heal_queue_grace_minutes,
        ):
            return 0
        num_reset = await queue.reset_running_items()
        logger.warning(
            "[%s] Healing queue: reset %s running items to initial (lost workers=%s, last completion=%s)",
            task.id,
            num_reset,
            lost_workers,
            last_ended.isoformat() if last_ended else None,
        )
        return num_reset

    async def make_progress(
        self,
        db: AsyncSession,
        task: CrawlTask,
        config: SchedulerConfig,
        stats: QueueStats,
        num_workers: int,
    ) -> int:
        runner = CrawlRunner(
            db, task, config, stats, invoker=self.invoker, http_transport=self.http_transport
        )
        if not task.uses_containers:
            return await runner.run_serverless(num_workers)

        if config.force_remove_machines:
            logger.warning("[%s] Cannot allocate machines while force_remove_machines is set", task.id)
            return 0

        browser = task.worker_type == WorkerType.browser
        num_machines = (config.num_machines_browser if browser else config.num_machines_http) or 1
        allocator = self.allocator_factory(db)
        if not await allocator.allocate(task.worker_type, num_machines, config.cluster_size.value):
            logger.error("[%s] Could not allocate all %s machines", task.id, num_machines)
        endpoints = await allocator.get_api_endpoints(task.worker_type)
        return await runner.run_container(num_workers, endpoints)

    async def should_kill_machines(self, db: AsyncSession, config: SchedulerConfig) -> int:
        """Tear down machines nobody needs. Returns the number terminated."""
        allocator = self.allocator_factory(db)

        if config.force_remove_machines:
            num_paused = await pause_container_tasks(db)
            logger.warning("Forcefully removing all machines, paused %s container tasks", num_paused)
            return await allocator.cleanup_all()

        num_terminated = 0
        for worker_type in WorkerType:
            if await tasks_needing_machines(db, worker_type.value):
                continue
            if await allocator.get_machines(worker_type.value):
                logger.info("No task needs %s machines, destroying them", worker_type.value)
                num_terminated += await allocator.cleanup_all(worker_type.value)
        return num_terminated
