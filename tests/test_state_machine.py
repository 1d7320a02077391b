"""Tests for the crawl job state machine."""

import pytest
from conftest import run

from app.crawl_engine.core.exceptions import InvalidTransitionError
from app.crawl_engine.core.types import (
    ChildSpec,
    CrawlErrorType,
    CrawlSettings,
    CrawlStatus,
    CrawlType,
    DownloadMode,
    InterruptionKind,
    ProgressEventType,
    QueueStatus,
)
from app.crawl_engine.discovery.deduplication import InMemoryContentIndex

CHAPTER_URL = "https://comics.example/comic/hero/ch1"


def image_specs(count):
    return [ChildSpec(index=i, url=f"https://img.example/hero/ch1/{i:03d}.jpg") for i in range(count)]


class HookedIndex(InMemoryContentIndex):
    """Runs an async hook when a given URL is looked up"""

    def __init__(self):
        super().__init__()
        self.hooks = {}

    async def find_by_url(self, crawl_type, normalized_url):
        hook = self.hooks.pop(normalized_url, None)
        if hook is not None:
            await hook()
        return await super().find_by_url(crawl_type, normalized_url)


async def running_chapter(engine, **kwargs):
    job = await engine.state_machine.create_job(CrawlType.CHAPTER, CHAPTER_URL, created_by="admin-1", **kwargs)
    return await engine.state_machine.start(job.id)


def test_create_job_enqueues_first_item(build_engine):
    async def scenario():
        engine = build_engine()
        job = await engine.state_machine.create_job(CrawlType.COMIC, "https://comics.example/comic/hero")
        return job, await engine.queue_store.items_for_jobs([job.id]), engine.publisher.history(job.id)

    job, items, events = run(scenario())

    assert job.status == CrawlStatus.PENDING
    assert job.root_id == job.id
    assert [item.status for item in items] == [QueueStatus.PENDING]
    assert events[0].event_type == ProgressEventType.JOB_CREATED


def test_illegal_transitions_are_rejected(build_engine):
    async def scenario():
        engine = build_engine()
        sm = engine.state_machine
        job = await sm.create_job(CrawlType.IMAGE, "https://img.example/1.jpg")
        with pytest.raises(InvalidTransitionError):
            await sm.pause(job.id)
        await sm.start(job.id)
        await sm.complete_job(job.id, 10)
        for operation in (sm.pause, sm.resume, sm.cancel, sm.retry):
            with pytest.raises(InvalidTransitionError):
                await operation(job.id)
        return await engine.job_store.require(job.id)

    job = run(scenario())
    assert job.status == CrawlStatus.COMPLETED


def test_spawn_children_creates_queue_items(build_engine):
    async def scenario():
        engine = build_engine()
        chapter = await running_chapter(engine)
        report = await engine.state_machine.spawn_children(chapter.id, image_specs(3))
        children = await engine.job_store.children(chapter.id)
        items = await engine.queue_store.items_for_jobs([child.id for child in children])
        return chapter, report, children, items, await engine.job_store.require(chapter.id)

    chapter, report, children, items, refreshed = run(scenario())

    assert len(report.spawned) == 3
    assert [child.item_index for child in children] == [0, 1, 2]
    assert all(child.root_id == chapter.id and child.depth == 1 for child in children)
    assert all(child.crawl_type == CrawlType.IMAGE for child in children)
    assert len(items) == 3
    assert refreshed.total_items == 3
    assert refreshed.last_processed_index == 2


def test_partial_mode_spawns_selected_children(build_engine):
    async def scenario():
        engine = build_engine()
        settings = CrawlSettings(range_start=0, range_end=9, skip_items=[2, 5])
        chapter = await running_chapter(engine, download_mode=DownloadMode.PARTIAL, settings=settings)
        await engine.state_machine.spawn_children(chapter.id, image_specs(20))
        return await engine.job_store.children(chapter.id)

    children = run(scenario())
    assert [child.item_index for child in children] == [0, 1, 3, 4, 6, 7, 8, 9]
    assert all(child.settings.skip_items == [] for child in children)


def test_duplicate_children_are_linked_or_omitted(build_engine):
    async def scenario(mode):
        engine = build_engine()
        await engine.detector.register("existing-image", "https://img.example/hero/ch1/001.jpg", CrawlType.IMAGE)
        chapter = await running_chapter(engine, download_mode=mode)
        report = await engine.state_machine.spawn_children(chapter.id, image_specs(3))
        children = await engine.job_store.children(chapter.id)
        items = await engine.queue_store.items_for_jobs([child.id for child in children])
        return report, children, items, await engine.job_store.require(chapter.id)

    report, children, items, chapter = run(scenario(DownloadMode.FULL))
    linked = [child for child in children if child.is_linked]
    assert len(report.linked) == 1
    assert linked[0].item_index == 1
    assert linked[0].status == CrawlStatus.COMPLETED
    assert linked[0].linked_ref == "existing-image"
    assert linked[0].id not in {item.job_id for item in items}
    assert chapter.skipped_items == 1
    assert chapter.completed_items == 0

    report, children, items, chapter = run(scenario(DownloadMode.UPDATE))
    assert report.omitted == [1]
    assert [child.item_index for child in children] == [0, 2]
    assert chapter.last_processed_index == 2


def test_redownload_ignores_duplicates(build_engine):
    async def scenario():
        engine = build_engine()
        await engine.detector.register("existing-image", "https://img.example/hero/ch1/001.jpg", CrawlType.IMAGE)
        chapter = await running_chapter(engine, settings=CrawlSettings(redownload_items=[1]))
        return await engine.state_machine.spawn_children(chapter.id, image_specs(3))

    report = run(scenario())
    assert len(report.spawned) == 3
    assert report.linked == []


def test_cancel_during_spawn_stops_at_next_index(build_engine):
    index = HookedIndex()

    async def scenario():
        engine = build_engine(content_index=index)
        chapter = await running_chapter(engine)

        async def cancel():
            await engine.state_machine.cancel(chapter.id)

        index.hooks["img.example/hero/ch1/003.jpg"] = cancel
        report = await engine.state_machine.spawn_children(chapter.id, image_specs(10))
        children = await engine.job_store.children(chapter.id)
        items = await engine.queue_store.items_for_jobs([child.id for child in children])
        return report, children, items, await engine.job_store.require(chapter.id)

    report, children, items, chapter = run(scenario())

    assert report.interruption.kind == InterruptionKind.CANCEL
    assert [child.item_index for child in children] == [0, 1, 2, 3]
    assert all(child.status == CrawlStatus.CANCELLED for child in children)
    assert all(item.status == QueueStatus.SKIPPED for item in items)
    assert chapter.status == CrawlStatus.CANCELLED
    assert chapter.last_processed_index == 3


def test_pause_checkpoint_and_resume(build_engine):
    index = HookedIndex()

    async def scenario():
        engine = build_engine(content_index=index)
        sm = engine.state_machine
        chapter = await running_chapter(engine)

        async def pause():
            await sm.pause(chapter.id)

        index.hooks["img.example/hero/ch1/004.jpg"] = pause
        first = await sm.spawn_children(chapter.id, image_specs(10))
        paused = await engine.job_store.require(chapter.id)

        await sm.resume(chapter.id)
        second = await sm.spawn_children(chapter.id, image_specs(10))
        children = await engine.job_store.children(chapter.id)
        return first, paused, second, children

    first, paused, second, children = run(scenario())

    assert first.interruption.kind == InterruptionKind.PAUSE
    assert first.interruption.at_index == 5
    assert len(first.spawned) == 5
    assert paused.status == CrawlStatus.PAUSED
    assert paused.last_processed_index == 4
    assert len(second.spawned) == 5
    assert [child.item_index for child in children] == list(range(10))


def test_resume_enqueues_at_most_one_fresh_item(build_engine):
    async def scenario():
        engine = build_engine()
        sm = engine.state_machine
        job = await sm.create_job(CrawlType.COMIC, "https://comics.example/comic/hero")
        await sm.start(job.id)
        first_item = (await engine.queue_store.items_for_jobs([job.id]))[0]
        await engine.queue_store.skip(first_item.id, "paused")

        await sm.pause(job.id)
        await sm.resume(job.id)
        await sm.pause(job.id)
        await sm.resume(job.id)
        return await engine.queue_store.items_for_jobs([job.id]), await engine.job_store.require(job.id)

    items, job = run(scenario())

    assert job.status == CrawlStatus.RUNNING
    active = [item for item in items if item.status == QueueStatus.PENDING]
    assert len(active) == 1
    assert active[0].retry_epoch == 1


def test_interruption_sees_ancestors(build_engine):
    async def scenario():
        engine = build_engine()
        sm = engine.state_machine
        chapter = await running_chapter(engine)
        await sm.spawn_children(chapter.id, image_specs(2))
        child = (await engine.job_store.children(chapter.id))[0]

        before = await sm.check_interruption(child.id, 0)
        await sm.pause(chapter.id)
        paused = await sm.check_interruption(child.id, 7)
        await sm.cancel(chapter.id)
        cancelled = await sm.check_interruption(child.id, 7)
        return before, paused, cancelled

    before, paused, cancelled = run(scenario())

    assert before.kind == InterruptionKind.CONTINUE
    assert paused.kind == InterruptionKind.PAUSE
    assert paused.at_index == 7
    assert cancelled.kind == InterruptionKind.CANCEL


async def settle_children(engine, chapter_id, outcomes):
    sm = engine.state_machine
    for child, outcome in zip(await engine.job_store.children(chapter_id), outcomes):
        await sm.start(child.id)
        if outcome == "ok":
            await sm.complete_job(child.id, 100, f"mem://{child.id}")
        else:
            await sm.fail_job(child.id, "HTTP 404", CrawlErrorType.NOT_FOUND)


def test_partial_success_aggregates_to_completed(build_engine):
    async def scenario():
        engine = build_engine()
        comic = await engine.state_machine.create_job(CrawlType.COMIC, "https://comics.example/comic/hero")
        await engine.state_machine.start(comic.id)
        await engine.state_machine.spawn_children(comic.id, [ChildSpec(index=0, url=CHAPTER_URL)])
        await engine.state_machine.finish_discovery(comic.id)

        chapter = (await engine.job_store.children(comic.id))[0]
        await engine.state_machine.start(chapter.id)
        await engine.state_machine.spawn_children(chapter.id, image_specs(3))
        await engine.state_machine.finish_discovery(chapter.id)
        mid = await engine.job_store.require(chapter.id)

        await settle_children(engine, chapter.id, ["ok", "ok", "fail"])
        return mid, await engine.job_store.require(chapter.id), await engine.job_store.require(comic.id)

    mid, chapter, comic = run(scenario())

    assert mid.status == CrawlStatus.RUNNING
    assert chapter.status == CrawlStatus.COMPLETED
    assert chapter.total_items == 3
    assert chapter.completed_items == 2
    assert chapter.failed_items == 1
    assert chapter.bytes_downloaded == 200
    assert comic.status == CrawlStatus.COMPLETED
    assert comic.completed_items == 1
    assert comic.bytes_downloaded == 200


def test_all_failed_children_fail_parent(build_engine):
    async def scenario():
        engine = build_engine()
        chapter = await running_chapter(engine)
        await engine.state_machine.spawn_children(chapter.id, image_specs(2))
        await engine.state_machine.finish_discovery(chapter.id)
        await settle_children(engine, chapter.id, ["fail", "fail"])
        return await engine.job_store.require(chapter.id)

    chapter = run(scenario())
    assert chapter.status == CrawlStatus.FAILED
    assert chapter.failed_items == 2


def test_parent_without_children_completes(build_engine):
    async def scenario():
        engine = build_engine()
        chapter = await running_chapter(engine)
        await engine.state_machine.spawn_children(chapter.id, [])
        return await engine.state_machine.finish_discovery(chapter.id, "mem://chapter")

    chapter = run(scenario())
    assert chapter.status == CrawlStatus.COMPLETED
    assert chapter.storage_locator == "mem://chapter"


def test_completed_leaf_is_registered_for_dedup(build_engine):
    async def scenario():
        engine = build_engine()
        job = await engine.state_machine.create_job(CrawlType.IMAGE, "https://img.example/a.jpg")
        await engine.state_machine.start(job.id)
        await engine.state_machine.complete_job(job.id, 5)
        verdict = await engine.detector.detect("https://img.example/a.jpg", CrawlType.IMAGE)
        return job, verdict, engine.publisher.history(job.id)

    job, verdict, events = run(scenario())

    assert verdict.existing_ref == job.id
    assert ProgressEventType.IMAGE_DOWNLOADED in [event.event_type for event in events]
    assert events[-1].event_type == ProgressEventType.JOB_COMPLETED


def test_retry_failed_children_by_index(build_engine):
    async def scenario():
        engine = build_engine()
        sm = engine.state_machine
        chapter = await running_chapter(engine)
        await sm.spawn_children(chapter.id, image_specs(3))
        await sm.finish_discovery(chapter.id)
        await settle_children(engine, chapter.id, ["fail", "fail", "fail"])
        failed_chapter = await engine.job_store.require(chapter.id)

        retried = await sm.retry_failed(chapter.id, indices=[2])
        children = await engine.job_store.children(chapter.id)
        with pytest.raises(InvalidTransitionError):
            await sm.retry_failed(children[2].id)
        return failed_chapter, retried, children, await engine.job_store.require(chapter.id)

    failed_chapter, retried, children, chapter = run(scenario())

    assert failed_chapter.status == CrawlStatus.FAILED
    assert retried == [chapter.id, children[2].id]
    assert chapter.status == CrawlStatus.RUNNING
    assert chapter.failed_items == 2
    assert chapter.last_processed_index == 2
    assert children[2].status == CrawlStatus.RUNNING
    assert children[2].retry_count == 1
    assert [child.status for child in children[:2]] == [CrawlStatus.FAILED, CrawlStatus.FAILED]


def test_update_settings_only_while_pending_or_paused(build_engine):
    async def scenario():
        engine = build_engine()
        sm = engine.state_machine
        job = await sm.create_job(CrawlType.COMIC, "https://comics.example/comic/hero")
        updated = await sm.update_settings(job.id, CrawlSettings(parallel_limit=8))
        await sm.start(job.id)
        with pytest.raises(InvalidTransitionError):
            await sm.update_settings(job.id, CrawlSettings(parallel_limit=2))
        return updated

    assert run(scenario()).settings.parallel_limit == 8


def test_cancel_cascades_to_descendants(build_engine):
    async def scenario():
        engine = build_engine()
        sm = engine.state_machine
        comic = await sm.create_job(CrawlType.COMIC, "https://comics.example/comic/hero")
        await sm.start(comic.id)
        await sm.spawn_children(comic.id, [ChildSpec(index=0, url=CHAPTER_URL)])
        chapter = (await engine.job_store.children(comic.id))[0]
        await sm.start(chapter.id)
        await sm.spawn_children(chapter.id, image_specs(2))

        await sm.cancel(comic.id)
        tree = await engine.job_store.descendants(comic.id)
        items = await engine.queue_store.items_for_jobs([job.id for job in tree] + [comic.id])
        return tree, items

    tree, items = run(scenario())

    assert len(tree) == 3
    assert all(job.status == CrawlStatus.CANCELLED for job in tree)
    assert not [item for item in items if item.status == QueueStatus.PENDING]
