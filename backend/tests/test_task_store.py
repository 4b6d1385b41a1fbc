from types import SimpleNamespace

import pytest

from crawlmaster.models import CrawlTask
from crawlmaster.services.queue_store import QueueStats, QueueStore
from crawlmaster.services.task_store import (
    HARD_LIMIT_MAX_WORKERS,
    check_task_health,
    compute_target_workers,
    compute_workers_to_launch,
    create_task,
    enqueue_items,
    get_active_tasks,
    get_total_items,
    get_total_tasks,
    pause_container_tasks,
    quarantine,
    reset_task,
    select_by_priority,
    tasks_needing_machines,
)


def make_task(**overrides):
    fields = dict(
        id=1,
        priority=1,
        worker_type="http",
        max_items_per_second=1.0,
        avg_items_per_second_worker=[],
        max_workers=None,
        num_workers_running=0,
        num_crawl_workers_started=0,
        num_lost_workers=0,
        max_lost_workers=10,
    )
    fields.update(overrides)
    return SimpleNamespace(**fields)


@pytest.mark.asyncio
async def test_create_task_creates_queue_and_worker_meta(db):
    task = await create_task(db, items=["a", "b", ""], worker_type="browser", priority=3)

    assert task.queue == f"item_queue_{task.id}"
    assert task.worker_meta == f"worker_meta_{task.id}"
    assert task.num_items == 2
    assert task.status == "started"
    stats = await QueueStore(db, task.queue).get_statistics_lean()
    assert stats.initial == 2
    assert await get_total_items(db) == 2
    assert await get_total_tasks(db) == 1


@pytest.mark.asyncio
async def test_retry_ceiling_defaults_from_config(db, config):
    config = config.model_copy(update={"retry_failed_items": 5})

    task = await create_task(db, items=["a"], config=config)
    pinned = await create_task(db, items=["a"], config=config, retry_failed_items=1)

    assert task.retry_failed_items == 5
    assert pinned.retry_failed_items == 1


@pytest.mark.asyncio
async def test_enqueue_items_requires_longliving(db):
    task = await create_task(db, items=["a"])
    assert await enqueue_items(db, task, ["b"]) == 0

    task.longliving = True
    assert await enqueue_items(db, task, ["b", "c"]) == 2
    assert task.num_items == 3


@pytest.mark.asyncio
async def test_get_active_tasks(db):
    started = await create_task(db, items=["a"])
    paused = await create_task(db, items=["a"], status="paused")
    done = await create_task(db, items=["a"])
    done.status = "completed"
    await db.commit()

    tasks = await get_active_tasks(db)

    assert [t.id for t in tasks] == [started.id, paused.id]


def test_absolute_priority_keeps_only_the_highest():
    tasks = [make_task(id=1, priority=1), make_task(id=2, priority=5), make_task(id=3, priority=5)]

    selected = select_by_priority(tasks, "absolute")

    assert [t.id for t in selected] == [2, 3]


def test_relative_priority_keeps_everything_lowest_first():
    tasks = [make_task(id=1, priority=4), make_task(id=2, priority=1), make_task(id=3, priority=2)]

    selected = select_by_priority(tasks, "relative")

    assert [t.id for t in selected] == [2, 3, 1]


def test_target_workers_uses_default_throughput_without_samples():
    # 1 item/s at 0.5 items/s per http worker
    assert compute_target_workers(make_task()) == 2
    # 1 item/s at 0.2 items/s per browser worker
    assert compute_target_workers(make_task(worker_type="browser")) == 5


def test_target_workers_floors_tiny_throughput():
    task = make_task(avg_items_per_second_worker=[0.001, 0.002])

    # clamped to 0.05 items/s, 1 / 0.05
    assert compute_target_workers(task) == 20


def test_target_workers_is_at_least_one():
    task = make_task(max_items_per_second=0.1, avg_items_per_second_worker=[2.0])

    assert compute_target_workers(task) == 1


def test_target_workers_scaled_by_relative_priority():
    task = make_task(max_items_per_second=10.0, avg_items_per_second_worker=[1.0])

    assert compute_target_workers(task, priority_scale=0.5) == 5


def test_workers_to_launch_is_idempotent_once_target_is_reached():
    task = make_task(max_items_per_second=4.0, avg_items_per_second_worker=[1.0])
    stats = QueueStats(initial=100)
    target = compute_target_workers(task)

    to_launch = compute_workers_to_launch(task, stats, target)
    assert to_launch == 4

    task.num_workers_running += to_launch
    assert compute_workers_to_launch(task, stats, target) == 0


def test_workers_to_launch_respects_limits():
    task = make_task(max_workers=3)
    assert compute_workers_to_launch(task, QueueStats(initial=100), target_workers=10) == 3

    task = make_task()
    assert compute_workers_to_launch(task, QueueStats(initial=2), target_workers=10) == 2
    assert compute_workers_to_launch(task, QueueStats(initial=0), target_workers=10) == 0
    assert (
        compute_workers_to_launch(task, QueueStats(initial=10_000), target_workers=1_000)
        == HARD_LIMIT_MAX_WORKERS
    )


def test_healthy_task(config):
    health = check_task_health(make_task(num_crawl_workers_started=100, num_lost_workers=1), config)

    assert health.healthy


def test_too_many_lost_workers_quarantines(config):
    task = make_task(num_crawl_workers_started=100, num_lost_workers=5, max_lost_workers=2)

    health = check_task_health(task, config)

    assert not health.healthy
    assert "5/100 workers were lost" in health.reasons[0]


def test_lost_ratio_alone_is_not_enough(config):
    # 5% lost, but below the absolute ceiling
    task = make_task(num_crawl_workers_started=100, num_lost_workers=5, max_lost_workers=10)

    assert check_task_health(task, config).healthy


def test_negative_running_count_is_clamped(config):
    task = make_task(num_workers_running=-3)

    health = check_task_health(task, config)

    assert not health.healthy
    assert task.num_workers_running == 0


def test_too_many_running_workers(config):
    task = make_task(num_workers_running=HARD_LIMIT_MAX_WORKERS + 1)

    assert not check_task_health(task, config).healthy


@pytest.mark.asyncio
async def test_quarantine_and_reset(db):
    task = await create_task(db, items=["a", "b"], num_lost_workers=4)
    queue = QueueStore(db, task.queue)
    a, b = await queue.claim_items(2)
    await queue.update_items([{"id": a["id"], "status": "failed"}])

    await quarantine(db, task, ["4/4 workers were lost"])
    assert (await db.get(CrawlTask, task.id)).status == "failed"

    await reset_task(db, task)

    assert task.status == "started"
    assert task.num_lost_workers == 0
    stats = await queue.get_statistics_lean()
    assert stats.initial == 2


@pytest.mark.asyncio
async def test_container_tasks_need_machines_until_paused(db):
    task = await create_task(db, items=["a"], worker_type="browser", whitelisted_proxies=True)
    await create_task(db, items=["a"], worker_type="http")

    assert [t.id for t in await tasks_needing_machines(db, "browser")] == [task.id]
    assert await tasks_needing_machines(db, "http") == []

    assert await pause_container_tasks(db) == 1
    await db.refresh(task)
    assert task.status == "paused"
    assert await tasks_needing_machines(db, "browser") == []

    # workers still running keep the machines alive
    task.num_workers_running = 2
    await db.commit()
    assert [t.id for t in await tasks_needing_machines(db, "browser")] == [task.id]


@pytest.mark.parametrize("max_lost_workers, quarantined", [(2, True), (3, False), (5, False)])
def test_quarantine_needs_ratio_and_absolute_ceiling(config, max_lost_workers, quarantined):
    task = make_task(num_crawl_workers_started=100, num_lost_workers=3, max_lost_workers=max_lost_workers)

    assert check_task_health(task, config).healthy is not quarantined
