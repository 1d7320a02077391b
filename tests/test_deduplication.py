"""Tests for duplicate detection and download-mode child selection."""

from conftest import run

from app.crawl_engine.core.types import CrawlSettings, CrawlType, DownloadMode, DuplicateType, DuplicateVerdict
from app.crawl_engine.discovery.deduplication import DuplicateDetector, InMemoryContentIndex, RedisContentIndex
from app.crawl_engine.discovery.download_mode import select_child_indices, suggest_mode
from app.crawl_engine.utils.url import extract_domain, extract_slug, normalize_url


def test_normalize_url_drops_tracking_and_cosmetics():
    assert normalize_url("https://www.Comics.example:443/comic/hero/?utm_source=x&b=2&a=1#top") == (
        "comics.example/comic/hero?a=1&b=2"
    )
    assert normalize_url("comics.example/comic/hero") == "comics.example/comic/hero"


def test_extract_domain_and_slug():
    assert extract_domain("https://www.mirror.example/x") == "mirror.example"
    assert extract_slug("https://comics.example/comic/One-Piece.html") == "one-piece"
    assert extract_slug("https://comics.example/") is None


def test_tracking_param_still_exact_url():
    async def scenario():
        detector = DuplicateDetector(InMemoryContentIndex())
        await detector.register("job-1", "https://comics.example/comic/hero", CrawlType.COMIC)
        return await detector.detect("https://comics.example/comic/hero?utm_source=newsletter", CrawlType.COMIC)

    verdict = run(scenario())

    assert verdict.duplicate_type == DuplicateType.EXACT_URL
    assert verdict.existing_ref == "job-1"
    assert verdict.confidence == 1.0


def test_slug_on_mirror_domain_is_similar_url():
    async def scenario():
        detector = DuplicateDetector(mirror_groups=[["comics.example", "mirror.example"]])
        await detector.register("job-1", "https://comics.example/comic/hero", CrawlType.COMIC)
        return (
            await detector.detect("https://mirror.example/series/hero", CrawlType.COMIC),
            await detector.detect("https://unrelated.example/series/hero", CrawlType.COMIC),
        )

    mirrored, unrelated = run(scenario())

    assert mirrored.duplicate_type == DuplicateType.SIMILAR_URL
    assert mirrored.existing_ref == "job-1"
    assert unrelated.duplicate_type == DuplicateType.NO_DUPLICATE


def test_content_hash_requires_configuration():
    fetched = []

    async def fetch_digest(url):
        fetched.append(url)
        return "abc123"

    async def scenario(check_content_hash):
        index = InMemoryContentIndex()
        await index.register("job-1", CrawlType.IMAGE, "other.example/x", None, "other.example", digest="abc123")
        detector = DuplicateDetector(index, check_content_hash=check_content_hash, digest_fetcher=fetch_digest)
        enabled = await detector.detect("https://cdn.example/img/001.jpg", CrawlType.IMAGE)
        narrowed = await detector.detect("https://cdn.example/img/001.jpg", CrawlType.IMAGE, check_content_hash=False)
        return enabled, narrowed

    enabled, narrowed = run(scenario(check_content_hash=False))
    assert enabled.duplicate_type == DuplicateType.NO_DUPLICATE
    assert fetched == []

    enabled, narrowed = run(scenario(check_content_hash=True))
    assert enabled.duplicate_type == DuplicateType.CONTENT_HASH
    assert narrowed.duplicate_type == DuplicateType.NO_DUPLICATE
    assert len(fetched) == 1


def test_detect_batch_summary():
    async def scenario():
        detector = DuplicateDetector()
        await detector.register("job-1", "https://comics.example/comic/hero", CrawlType.COMIC)
        verdicts = await detector.detect_batch(
            [
                ("https://comics.example/comic/hero", None),
                ("https://comics.example/comic/villain", None),
                ("https://comics.example/other/hero", None),
            ],
            CrawlType.COMIC,
        )
        return detector, verdicts

    detector, verdicts = run(scenario())
    summary = DuplicateDetector.summarize(verdicts)

    assert summary.total == 3
    assert summary.exact_url == 1
    assert summary.similar_url == 1
    assert summary.no_duplicate == 1
    assert detector.get_stats()["exact_url"] == 1


def test_forget_removes_content():
    async def scenario():
        detector = DuplicateDetector()
        await detector.register("job-1", "https://comics.example/comic/hero", CrawlType.COMIC)
        await detector.forget("job-1")
        return await detector.detect("https://comics.example/comic/hero", CrawlType.COMIC)

    assert not run(scenario()).is_duplicate


def test_chapter_and_image_slugs_do_not_match_across_parents():
    async def scenario():
        detector = DuplicateDetector()
        await detector.register("alpha-ch1", "https://comics.example/comic/alpha/chapter-1", CrawlType.CHAPTER)
        await detector.register("alpha-ch1-p1", "https://img.example/alpha/1/001.jpg", CrawlType.IMAGE)
        return (
            await detector.detect("https://comics.example/comic/beta/chapter-1", CrawlType.CHAPTER),
            await detector.detect("https://img.example/alpha/2/001.jpg", CrawlType.IMAGE),
            await detector.detect("https://comics.example/comic/alpha/chapter-1", CrawlType.CHAPTER),
        )

    other_comic, other_chapter, same_chapter = run(scenario())

    assert other_comic.duplicate_type == DuplicateType.NO_DUPLICATE
    assert other_chapter.duplicate_type == DuplicateType.NO_DUPLICATE
    assert same_chapter.duplicate_type == DuplicateType.EXACT_URL


def test_known_content_is_only_compared_within_its_type():
    async def scenario():
        detector = DuplicateDetector()
        await detector.register("hero-image", "https://comics.example/comic/hero", CrawlType.IMAGE)
        return await detector.detect("https://comics.example/comic/hero", CrawlType.COMIC)

    assert run(scenario()).duplicate_type == DuplicateType.NO_DUPLICATE


def test_partial_range_with_skips():
    settings = CrawlSettings(range_start=0, range_end=9, skip_items=[2, 5])
    selected = select_child_indices(DownloadMode.PARTIAL, 20, settings)

    assert selected == [0, 1, 3, 4, 6, 7, 8, 9]


def test_partial_range_is_clipped_and_adds_redownloads():
    settings = CrawlSettings(range_start=3, range_end=50, redownload_items=[0, 99])
    assert select_child_indices(DownloadMode.PARTIAL, 6, settings) == [0, 3, 4, 5]


def test_update_keeps_new_and_redownload_indices():
    settings = CrawlSettings(redownload_items=[1])
    assert select_child_indices(DownloadMode.UPDATE, 5, settings, existing={0, 1, 2}) == [1, 3, 4]


def test_full_and_none_modes():
    settings = CrawlSettings(skip_items=[0])
    assert select_child_indices(DownloadMode.FULL, 3, settings) == [1, 2]
    assert select_child_indices(DownloadMode.NONE, 3, settings) == []


def test_suggest_mode():
    existing = DuplicateVerdict(duplicate_type=DuplicateType.EXACT_URL, existing_ref="job-1")
    assert suggest_mode(existing, existing_children=4) == DownloadMode.UPDATE
    assert suggest_mode(existing, existing_children=0) == DownloadMode.FULL
    assert suggest_mode(DuplicateVerdict(), existing_children=4) == DownloadMode.FULL


class FakeHashRedis:
    def __init__(self):
        self.hashes = {}

    async def hget(self, key, field):
        return self.hashes.get(key, {}).get(field)

    async def hmget(self, key, fields):
        return [self.hashes.get(key, {}).get(field) for field in fields]

    async def hgetall(self, key):
        return dict(self.hashes.get(key, {}))

    async def hdel(self, key, *fields):
        for field in fields:
            self.hashes.get(key, {}).pop(field, None)
        return len(fields)

    def hset(self, key, field, value):
        self.hashes.setdefault(key, {})[field] = value.encode("utf-8")

    def pipeline(self, transaction=True):
        return FakePipeline(self)


class FakePipeline:
    def __init__(self, redis):
        self.redis = redis
        self.commands = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False

    def hset(self, key, field, value):
        self.commands.append((key, field, value))

    async def execute(self):
        for command in self.commands:
            self.redis.hset(*command)


def test_redis_content_index_register_find_forget():
    index = RedisContentIndex(FakeHashRedis())

    async def scenario():
        await index.register(
            "job-1", CrawlType.COMIC, "https://comics.example/comic/hero", "hero", "comics.example", digest="abc"
        )
        found = (
            await index.find_by_url(CrawlType.COMIC, "https://comics.example/comic/hero"),
            await index.find_by_slug(CrawlType.COMIC, "hero", ["mirror.example", "comics.example"]),
            await index.find_by_digest(CrawlType.COMIC, "abc"),
            await index.find_by_url(CrawlType.CHAPTER, "https://comics.example/comic/hero"),
        )
        await index.forget("job-1")
        return found, await index.find_by_url(CrawlType.COMIC, "https://comics.example/comic/hero")

    found, after = run(scenario())

    assert found == ("job-1", "job-1", "job-1", None)
    assert after is None
