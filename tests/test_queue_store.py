"""Tests for the local queue store."""

import json

import pytest
from conftest import FakeClock, run

from app.crawl_engine.core.exceptions import LeaseNotHeldError
from app.crawl_engine.core.types import (
    CrawlErrorType,
    CrawlType,
    ErrorAction,
    ErrorVerdict,
    QueueFilter,
    QueueItem,
    QueueStatus,
)
from app.crawl_engine.queue.local_store import LocalQueueStore
from app.crawl_engine.queue.store import QueueStore


def item(job_id="job-1", admin_id="admin-1", priority=0, epoch=0):
    return QueueItem(job_id=job_id, crawl_type=CrawlType.IMAGE, admin_id=admin_id, priority=priority, retry_epoch=epoch)


def delayed_verdict(delay=5.0):
    return ErrorVerdict(error_type=CrawlErrorType.TIMEOUT, action=ErrorAction.RETRY_DELAYED, delay_seconds=delay)


def test_enqueue_is_idempotent_per_epoch():
    async def scenario():
        store = LocalQueueStore()
        first = await store.enqueue(item())
        again = await store.enqueue(item())
        fresh = await store.enqueue(item(epoch=1))
        return first, again, fresh

    first, again, fresh = run(scenario())

    assert again.id == first.id
    assert fresh.id != first.id


def test_lease_is_mutually_exclusive():
    async def scenario():
        store = LocalQueueStore()
        for i in range(5):
            await store.enqueue(item(job_id=f"job-{i}"))
        first = await store.lease_batch("worker-a", 3, 60)
        second = await store.lease_batch("worker-b", 3, 60)
        return first, second

    first, second = run(scenario())

    assert len(first) == 3
    assert len(second) == 2
    assert not {i.id for i in first} & {i.id for i in second}
    assert all(i.status == QueueStatus.PROCESSING and i.lease_owner == "worker-a" for i in first)


def test_lease_order_prefers_priority():
    async def scenario():
        store = LocalQueueStore()
        await store.enqueue(item(job_id="low"))
        await store.enqueue(item(job_id="high", priority=5))
        return await store.lease_batch("worker", 1, 60)

    assert [i.job_id for i in run(scenario())] == ["high"]


def test_lease_respects_admin_and_global_ceilings():
    async def scenario():
        store = LocalQueueStore()
        for i in range(4):
            await store.enqueue(item(job_id=f"a-{i}", admin_id="alice"))
        await store.enqueue(item(job_id="b-0", admin_id="bob"))
        first = await store.lease_batch("worker", 10, 60, per_admin_limit=2, global_limit=10)
        second = await store.lease_batch("worker", 10, 60, per_admin_limit=2, global_limit=3)
        return first, second

    first, second = run(scenario())

    assert sorted(i.admin_id for i in first) == ["alice", "alice", "bob"]
    assert second == []


def test_reclaim_expired_lease_keeps_retry_count(clock):
    async def scenario():
        store = LocalQueueStore(clock=clock)
        queued = await store.enqueue(item())
        await store.lease_batch("worker-a", 1, 30)
        clock.advance(31)
        reclaimed = await store.reclaim_expired()
        leased = await store.lease_batch("worker-b", 1, 30)
        return queued, reclaimed, leased

    queued, reclaimed, leased = run(scenario())

    assert [i.id for i in reclaimed] == [queued.id]
    assert reclaimed[0].status == QueueStatus.PENDING
    assert reclaimed[0].retry_count == 0
    assert leased[0].lease_owner == "worker-b"


def test_renewed_lease_is_not_reclaimed(clock):
    async def scenario():
        store = LocalQueueStore(clock=clock)
        queued = await store.enqueue(item())
        await store.lease_batch("worker", 1, 30)
        clock.advance(20)
        renewed = await store.renew_lease(queued.id, "worker", 30)
        stolen = await store.renew_lease(queued.id, "intruder", 30)
        clock.advance(20)
        return renewed, stolen, await store.reclaim_expired()

    renewed, stolen, reclaimed = run(scenario())

    assert renewed is True
    assert stolen is False
    assert reclaimed == []


def test_delayed_retry_waits_for_backoff(clock):
    async def scenario():
        store = LocalQueueStore(clock=clock)
        queued = await store.enqueue(item())
        await store.lease_batch("worker", 1, 60)
        failed = await store.fail(queued.id, delayed_verdict(5.0), "timed out", "worker", next_timeout_seconds=45.0)
        too_early = await store.lease_batch("worker", 1, 60)
        clock.advance(5)
        on_time = await store.lease_batch("worker", 1, 60)
        return failed, too_early, on_time

    failed, too_early, on_time = run(scenario())

    assert failed.status == QueueStatus.DELAYED
    assert failed.retry_count == 1
    assert failed.timeout_seconds == 45.0
    assert failed.last_error_type == CrawlErrorType.TIMEOUT
    assert too_early == []
    assert len(on_time) == 1


def test_terminal_verdict_settles_item():
    async def scenario():
        store = LocalQueueStore()
        queued = await store.enqueue(item())
        await store.lease_batch("worker", 1, 60)
        verdict = ErrorVerdict(error_type=CrawlErrorType.NOT_FOUND, action=ErrorAction.SKIP_PERMANENT)
        return await store.fail(queued.id, verdict, "HTTP 404", "worker")

    settled = run(scenario())

    assert settled.status == QueueStatus.SKIPPED
    assert settled.retry_count == 0
    assert settled.completed_at is not None


def test_only_lease_holder_can_settle():
    async def scenario():
        store = LocalQueueStore()
        queued = await store.enqueue(item())
        await store.lease_batch("worker-a", 1, 60)
        with pytest.raises(LeaseNotHeldError):
            await store.complete(queued.id, "worker-b")
        released = await store.release(queued.id, "worker-a")
        with pytest.raises(LeaseNotHeldError):
            await store.complete(queued.id, "worker-a")
        return released

    released = run(scenario())
    assert released.status == QueueStatus.PENDING
    assert released.retry_count == 0


def test_skip_for_jobs_leaves_processing_items():
    async def scenario():
        store = LocalQueueStore()
        await store.enqueue(item(job_id="job-1"))
        await store.lease_batch("worker", 1, 60)
        await store.enqueue(item(job_id="job-2"))
        skipped = await store.skip_for_jobs(["job-1", "job-2"], "cancelled")
        return skipped, await store.counts()

    skipped, counts = run(scenario())

    assert skipped == 1
    assert counts["processing"] == 1
    assert counts["skipped"] == 1


def test_list_items_filters():
    async def scenario():
        store = LocalQueueStore()
        await store.enqueue(item(job_id="job-1", admin_id="alice"))
        await store.enqueue(item(job_id="job-2", admin_id="bob"))
        return await store.list_items(QueueFilter(admin_id="bob")), await store.list_items(QueueFilter(limit=1))

    bob, limited = run(scenario())

    assert [i.job_id for i in bob] == ["job-2"]
    assert len(limited) == 1


def test_counts_are_not_truncated_to_a_page():
    async def scenario():
        store = LocalQueueStore()
        for n in range(1100):
            await store.enqueue(item(job_id=f"job-{n}", admin_id="alice" if n % 2 else "bob"))
        await store.lease_batch("worker", 1050, 60)
        # The generic path used by the DynamoDB backend
        processing = await QueueStore.count_processing(store)
        return processing, await store.counts(), await store.list_items(QueueFilter(limit=1000))

    (total, by_admin), counts, page = run(scenario())

    assert total == 1050
    assert sum(by_admin.values()) == 1050
    assert counts["processing"] == 1050
    assert counts["pending"] == 50
    assert len(page) == 1000


def test_file_backed_store_survives_restart(tmp_path):
    queue_file = tmp_path / "queue.json"

    async def write():
        store = LocalQueueStore(queue_file, clock=FakeClock())
        return await store.enqueue(item())

    async def read():
        store = LocalQueueStore(queue_file)
        return await store.get(queued.id), await store.enqueue(item())

    queued = run(write())
    reloaded, duplicate = run(read())

    assert json.loads(queue_file.read_text())[0]["job_id"] == "job-1"
    assert reloaded.status == QueueStatus.PENDING
    assert duplicate.id == queued.id
