import asyncio
from types import SimpleNamespace

import pytest
import pytest_asyncio

from crawlmaster.services.queue_store import QueueStats, QueueStore


@pytest_asyncio.fixture
async def queue(db):
    store = QueueStore(db, "item_queue_test")
    await store.create()
    return store


@pytest.mark.asyncio
async def test_insert_items_skips_empty(queue):
    inserted = await queue.insert_items(["https://a.example", "", "  ", "https://b.example"])

    assert inserted == 2
    stats = await queue.get_statistics_lean()
    assert stats.initial == 2
    assert stats.terminally_failed is None


@pytest.mark.asyncio
async def test_claim_item_moves_to_running_and_counts_retries(queue):
    await queue.insert_items(["https://a.example"])

    item = await queue.claim_item()

    assert item["item"] == "https://a.example"
    assert item["retries"] == 1
    assert await queue.claim_item() is None
    stats = await queue.get_statistics_lean()
    assert stats.running == 1
    assert stats.initial == 0


@pytest.mark.asyncio
async def test_concurrent_claims_never_hand_out_an_item_twice(session_factory, queue):
    await queue.insert_items([f"https://example.com/{i}" for i in range(30)])

    async def claimer():
        async with session_factory() as session:
            store = QueueStore(session, queue.name)
            claimed = []
            while True:
                item = await store.claim_item()
                if item is None:
                    return claimed
                claimed.append(item["id"])

    results = await asyncio.gather(*(claimer() for _ in range(3)))

    ids = [item_id for claimed in results for item_id in claimed]
    assert len(ids) == 30
    assert len(set(ids)) == 30


@pytest.mark.asyncio
async def test_claim_items_stops_when_queue_is_empty(queue):
    await queue.insert_items(["a", "b"])

    claimed = await queue.claim_items(5)

    assert [c["item"] for c in claimed] == ["a", "b"]


@pytest.mark.asyncio
async def test_update_items_sets_crawled_for_completed(queue):
    await queue.insert_items(["a", "b"])
    a, b = await queue.claim_items(2)

    await queue.update_items(
        [
            {"id": a["id"], "status": "completed", "region": "us-east-1"},
            {"id": b["id"], "status": "failed", "error": "timeout"},
        ]
    )

    items = {row["item"]: row for row in await queue.get_items()}
    assert items["a"]["status"] == "completed"
    assert items["a"]["crawled"] is not None
    assert items["a"]["region"] == "us-east-1"
    assert items["b"]["status"] == "failed"
    assert items["b"]["error"] == "timeout"
    assert await queue.completed_items_newer_than(5) == 1


@pytest.mark.asyncio
async def test_failed_items_are_retried_until_the_ceiling(queue):
    await queue.insert_items(["flaky"])

    for attempt in range(1, 4):
        item = await queue.claim_item()
        assert item["retries"] == attempt
        await queue.update_items([{"id": item["id"], "status": "failed"}])
        await queue.enqueue_failed_items(retry_ceiling=3)

    stats = await queue.get_statistics(retry_failed_items=3)
    assert stats.failed == 1
    assert stats.initial == 0
    assert stats.terminally_failed == 1
    assert await queue.claim_item() is None


@pytest.mark.asyncio
async def test_enqueue_all_failed_items_resets_retries(queue):
    await queue.insert_items(["x"])
    item = await queue.claim_item()
    await queue.update_items([{"id": item["id"], "status": "failed", "error": "boom"}])

    assert await queue.enqueue_all_failed_items() == 1

    (row,) = await queue.get_items()
    assert row["status"] == "initial"
    assert row["retries"] == 0
    assert row["error"] is None


@pytest.mark.asyncio
async def test_reset_running_items(queue):
    await queue.insert_items(["a", "b", "c"])
    await queue.claim_items(2)

    assert await queue.reset_running_items() == 2

    stats = await queue.get_statistics_lean()
    assert stats.initial == 3


@pytest.mark.asyncio
async def test_task_progress(queue):
    await queue.insert_items(["a", "b", "c", "d"])
    a, b = await queue.claim_items(2)
    await queue.update_items(
        [{"id": a["id"], "status": "completed"}, {"id": b["id"], "status": "failed"}]
    )

    progress = await queue.get_task_progress(4)

    assert progress == {"num_items": 4, "completed": 1, "failed": 1, "progress": 0.5}
    summaries = await queue.get_item_summaries("failed")
    assert [s["id"] for s in summaries] == [b["id"]]
    recent = await queue.get_recent_completed()
    assert [r["item"] for r in recent] == ["a"]


def test_task_finished():
    task = SimpleNamespace(longliving=False)

    assert QueueStore.task_finished(task, QueueStats(completed=3, failed=1, terminally_failed=1))
    assert not QueueStore.task_finished(task, QueueStats(completed=3, failed=1, terminally_failed=0))
    assert not QueueStore.task_finished(task, QueueStats(initial=1, completed=3, terminally_failed=0))
    assert not QueueStore.task_finished(task, QueueStats(running=1, completed=3, terminally_failed=0))


def test_longliving_task_never_finishes():
    task = SimpleNamespace(longliving=True)

    assert not QueueStore.task_finished(task, QueueStats(completed=3, terminally_failed=0))


@pytest.mark.asyncio
async def test_drop_and_recreate(db, queue):
    await queue.insert_items(["a"])

    await queue.drop()
    store = QueueStore(db, queue.name)
    await store.create()

    assert (await store.get_statistics_lean()).total == 0
