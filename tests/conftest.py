"""Shared fixtures for crawl engine tests."""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

import pytest

from app.crawl_engine.config.settings import EngineSettings
from app.crawl_engine.core.types import ChildSpec, CrawlJob, CrawlType, ProcessOutcome
from app.crawl_engine.engine import create_engine
from app.crawl_engine.processors.base import CrawlProcessor, ProcessContext
from app.crawl_engine.queue.local_store import LocalQueueStore
from app.crawl_engine.storage.artifacts import LocalArtifactStorage


class FakeClock:
    """Controllable clock for the local queue store"""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2024, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeSiteProcessor(CrawlProcessor):
    """Discovers the child URLs listed for a job's target in a fake site map."""

    def __init__(self, crawl_type: CrawlType, site: Dict[str, List[str]], errors: Optional[Dict[str, list]] = None):
        self.crawl_type = crawl_type
        self.site = site
        self.errors = errors if errors is not None else {}
        self.calls: List[str] = []

    async def process(self, job: CrawlJob, context: ProcessContext) -> ProcessOutcome:
        self.calls.append(job.target_url)
        pending = self.errors.get(job.target_url)
        if pending:
            raise pending.pop(0)
        urls = self.site.get(job.target_url, [])
        return ProcessOutcome.success(children=[ChildSpec(index=i, url=url) for i, url in enumerate(urls)])


class FakeImageProcessor(CrawlProcessor):
    """Pretends to download images; raises queued errors per URL first."""

    crawl_type = CrawlType.IMAGE

    def __init__(self, errors: Optional[Dict[str, list]] = None, size: int = 100):
        self.errors = errors if errors is not None else {}
        self.size = size
        self.calls: List[str] = []

    async def process(self, job: CrawlJob, context: ProcessContext) -> ProcessOutcome:
        self.calls.append(job.target_url)
        pending = self.errors.get(job.target_url)
        if pending:
            raise pending.pop(0)
        return ProcessOutcome.success(bytes_downloaded=self.size, storage_locator=f"mem://{job.id}")


def run(coro):
    return asyncio.run(coro)


def make_settings(**overrides) -> EngineSettings:
    values = {
        "environment": "test",
        "store_backend": "local",
        "state_dir": None,
        "redis_url": None,
        "json_logs": False,
        "poll_interval_seconds": 0.01,
        "lease_timeout_seconds": 60,
        "lease_renew_interval_seconds": 10,
    }
    values.update(overrides)
    return EngineSettings(**values)


def chapter_site(chapters: int = 1, images: int = 3) -> Dict[str, List[str]]:
    """comic -> chapters -> images"""
    site = {"https://comics.example/comic/hero": [f"https://comics.example/comic/hero/ch{c}" for c in range(chapters)]}
    for c in range(chapters):
        site[f"https://comics.example/comic/hero/ch{c}"] = [
            f"https://img.example/hero/ch{c}-{i:03d}.jpg" for i in range(images)
        ]
    return site


def comic_site(slug: str, chapters: int = 1, images: int = 2) -> Dict[str, List[str]]:
    """comic -> chapter-N -> NNN.jpg, with slugs that repeat from comic to comic"""
    comic = f"https://comics.example/comic/{slug}"
    site = {comic: [f"{comic}/chapter-{c}" for c in range(1, chapters + 1)]}
    for c in range(1, chapters + 1):
        site[f"{comic}/chapter-{c}"] = [f"https://img.example/{slug}/{c}/{i:03d}.jpg" for i in range(1, images + 1)]
    return site


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def build_engine(tmp_path, clock):
    """Build an in-memory engine wired with fake processors."""

    def build(site=None, site_errors=None, image_errors=None, content_index=None, **overrides):
        settings = make_settings(artifact_dir=tmp_path / "artifacts", **overrides)
        site = site if site is not None else {}
        processors = [
            FakeSiteProcessor(CrawlType.CATEGORY, site, site_errors),
            FakeSiteProcessor(CrawlType.COMIC, site, site_errors),
            FakeSiteProcessor(CrawlType.CHAPTER, site, site_errors),
            FakeImageProcessor(image_errors),
        ]
        return create_engine(
            settings,
            processors=processors,
            queue_store=LocalQueueStore(clock=clock),
            content_index=content_index,
            storage=LocalArtifactStorage(tmp_path / "artifacts"),
        )

    return build
