"""
Duplicate detection for discovered crawl targets.

Checks run cheapest first and short-circuit on the first match:
normalized-URL lookup, comic slug lookup across mirror domains, and only when
explicitly enabled a content digest fetch compared against stored hashes.
"""

import logging
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import redis.asyncio as aioredis

from ..core.types import CrawlType, DuplicateSummary, DuplicateType, DuplicateVerdict
from ..utils.url import extract_domain, extract_slug, normalize_url

logger = logging.getLogger(__name__)

DigestFetcher = Callable[[str], Awaitable[Optional[str]]]


class DeduplicationStats:
    """Statistics for duplicate detection"""

    def __init__(self):
        self.checks: int = 0
        self.exact_url: int = 0
        self.similar_url: int = 0
        self.content_hash: int = 0
        self.no_duplicate: int = 0
        self.digest_fetches: int = 0

    def record(self, duplicate_type: DuplicateType) -> None:
        self.checks += 1
        setattr(self, duplicate_type.value, getattr(self, duplicate_type.value) + 1)

    def as_dict(self) -> Dict[str, int]:
        return dict(vars(self))


class ContentIndex(ABC):
    """
    Known content that discovered targets are compared against.

    Entries are kept per CrawlType, so a chapter is only ever compared with
    chapters and an image with images.
    """

    @abstractmethod
    async def find_by_url(self, crawl_type: CrawlType, normalized_url: str) -> Optional[str]: ...

    @abstractmethod
    async def find_by_slug(self, crawl_type: CrawlType, slug: str, domains: Sequence[str]) -> Optional[str]: ...

    @abstractmethod
    async def find_by_digest(self, crawl_type: CrawlType, digest: str) -> Optional[str]: ...

    @abstractmethod
    async def register(
        self,
        ref: str,
        crawl_type: CrawlType,
        normalized_url: str,
        slug: Optional[str],
        domain: str,
        digest: Optional[str] = None,
    ) -> None: ...

    @abstractmethod
    async def forget(self, ref: str) -> None: ...


class InMemoryContentIndex(ContentIndex):
    """Process-local content index"""

    def __init__(self):
        self._by_url: Dict[Tuple[str, str], str] = {}
        self._by_slug: Dict[Tuple[str, str, str], str] = {}
        self._by_digest: Dict[Tuple[str, str], str] = {}

    async def find_by_url(self, crawl_type: CrawlType, normalized_url: str) -> Optional[str]:
        return self._by_url.get((crawl_type.value, normalized_url))

    async def find_by_slug(self, crawl_type: CrawlType, slug: str, domains: Sequence[str]) -> Optional[str]:
        for domain in domains:
            ref = self._by_slug.get((crawl_type.value, domain, slug))
            if ref is not None:
                return ref
        return None

    async def find_by_digest(self, crawl_type: CrawlType, digest: str) -> Optional[str]:
        return self._by_digest.get((crawl_type.value, digest))

    async def register(
        self,
        ref: str,
        crawl_type: CrawlType,
        normalized_url: str,
        slug: Optional[str],
        domain: str,
        digest: Optional[str] = None,
    ) -> None:
        self._by_url[(crawl_type.value, normalized_url)] = ref
        if slug:
            self._by_slug[(crawl_type.value, domain, slug)] = ref
        if digest:
            self._by_digest[(crawl_type.value, digest)] = ref

    async def forget(self, ref: str) -> None:
        for mapping in (self._by_url, self._by_slug, self._by_digest):
            for key in [key for key, value in mapping.items() if value == ref]:
                del mapping[key]


class RedisContentIndex(ContentIndex):
    """Content index shared between processes through one Redis hash per type and lookup"""

    def __init__(self, redis_client: aioredis.Redis, key_prefix: str = "crawl:content"):
        self.redis_client = redis_client
        self.key_prefix = key_prefix

    def _key(self, crawl_type: CrawlType, lookup: str) -> str:
        return f"{self.key_prefix}:{crawl_type.value}:{lookup}"

    @staticmethod
    def _decode(value) -> Optional[str]:
        if value is None:
            return None
        return value.decode("utf-8") if isinstance(value, bytes) else str(value)

    async def find_by_url(self, crawl_type: CrawlType, normalized_url: str) -> Optional[str]:
        return self._decode(await self.redis_client.hget(self._key(crawl_type, "url"), normalized_url))

    async def find_by_slug(self, crawl_type: CrawlType, slug: str, domains: Sequence[str]) -> Optional[str]:
        if not domains:
            return None
        values = await self.redis_client.hmget(
            self._key(crawl_type, "slug"), [f"{domain}/{slug}" for domain in domains]
        )
        for value in values:
            if value is not None:
                return self._decode(value)
        return None

    async def find_by_digest(self, crawl_type: CrawlType, digest: str) -> Optional[str]:
        return self._decode(await self.redis_client.hget(self._key(crawl_type, "digest"), digest))

    async def register(
        self,
        ref: str,
        crawl_type: CrawlType,
        normalized_url: str,
        slug: Optional[str],
        domain: str,
        digest: Optional[str] = None,
    ) -> None:
        async with self.redis_client.pipeline(transaction=True) as pipe:
            pipe.hset(self._key(crawl_type, "url"), normalized_url, ref)
            if slug:
                pipe.hset(self._key(crawl_type, "slug"), f"{domain}/{slug}", ref)
            if digest:
                pipe.hset(self._key(crawl_type, "digest"), digest, ref)
            await pipe.execute()

    async def forget(self, ref: str) -> None:
        for crawl_type in CrawlType:
            for lookup in ("url", "slug", "digest"):
                key = self._key(crawl_type, lookup)
                entries = await self.redis_client.hgetall(key)
                stale = [field for field, value in entries.items() if self._decode(value) == ref]
                if stale:
                    await self.redis_client.hdel(key, *stale)


class DuplicateDetector:
    """
    Decides whether a discovered target already exists.

    Candidates are only compared with known content of the same CrawlType.
    Slug matching applies to comics alone: chapter and image slugs such as
    chapter-1 or 001.jpg repeat across unrelated parents.

    A network fetch only ever happens in the content-digest step, which
    requires check_content_hash to be enabled in configuration and a digest
    fetcher to be wired in; a per-call flag may further narrow it.
    """

    SLUG_MATCHED_TYPES = frozenset({CrawlType.COMIC})

    def __init__(
        self,
        index: Optional[ContentIndex] = None,
        mirror_groups: Optional[Iterable[Iterable[str]]] = None,
        tracking_params: Optional[Iterable[str]] = None,
        check_content_hash: bool = False,
        digest_fetcher: Optional[DigestFetcher] = None,
    ):
        self.index = index or InMemoryContentIndex()
        self.tracking_params = list(tracking_params) if tracking_params is not None else None
        self.check_content_hash = check_content_hash
        self.digest_fetcher = digest_fetcher
        self.stats = DeduplicationStats()

        self._mirrors: Dict[str, List[str]] = {}
        for group in mirror_groups or []:
            domains = [domain.lower() for domain in group]
            for domain in domains:
                self._mirrors[domain] = domains

    def mirror_domains(self, domain: str) -> List[str]:
        """The domain itself followed by its known mirrors"""
        domain = domain.lower()
        group = self._mirrors.get(domain, [])
        return [domain] + [mirror for mirror in group if mirror != domain]

    async def detect(
        self,
        candidate_url: str,
        crawl_type: CrawlType,
        candidate_slug: Optional[str] = None,
        domain: Optional[str] = None,
        check_content_hash: Optional[bool] = None,
    ) -> DuplicateVerdict:
        """
        Run the duplicate checks for one candidate.

        Args:
            candidate_url: Discovered URL
            crawl_type: Type of the job the candidate would become
            candidate_slug: Slug if the processor extracted one (derived from the URL otherwise)
            domain: Domain if already known (derived from the URL otherwise)
            check_content_hash: Per-call opt-out of the digest check

        Returns:
            DuplicateVerdict
        """
        normalized = normalize_url(candidate_url, self.tracking_params)

        ref = await self.index.find_by_url(crawl_type, normalized)
        if ref is not None:
            return self._verdict(DuplicateType.EXACT_URL, ref, normalized, 1.0)

        if crawl_type in self.SLUG_MATCHED_TYPES:
            slug = (candidate_slug or extract_slug(candidate_url) or "").lower()
            if slug:
                domains = self.mirror_domains(domain or extract_domain(candidate_url))
                ref = await self.index.find_by_slug(crawl_type, slug, domains)
                if ref is not None:
                    return self._verdict(DuplicateType.SIMILAR_URL, ref, normalized, 0.8)

        hash_enabled = self.check_content_hash and (check_content_hash is None or check_content_hash)
        if hash_enabled and self.digest_fetcher is not None:
            self.stats.digest_fetches += 1
            digest = await self.digest_fetcher(candidate_url)
            if digest:
                ref = await self.index.find_by_digest(crawl_type, digest)
                if ref is not None:
                    return self._verdict(DuplicateType.CONTENT_HASH, ref, normalized, 0.95)

        return self._verdict(DuplicateType.NO_DUPLICATE, None, normalized, 0.0)

    def _verdict(
        self, duplicate_type: DuplicateType, ref: Optional[str], normalized: str, confidence: float
    ) -> DuplicateVerdict:
        self.stats.record(duplicate_type)
        if ref is not None:
            logger.debug(
                f"Duplicate found ({duplicate_type.value}) for {normalized}",
                extra={"duplicate_type": duplicate_type.value, "existing_ref": ref},
            )
        return DuplicateVerdict(
            duplicate_type=duplicate_type, existing_ref=ref, normalized_url=normalized, confidence=confidence
        )

    async def detect_batch(
        self,
        candidates: Sequence[Tuple[str, Optional[str]]],
        crawl_type: CrawlType,
        check_content_hash: Optional[bool] = None,
    ) -> List[DuplicateVerdict]:
        """Detect duplicates for (url, slug) pairs of one type in order"""
        return [
            await self.detect(url, crawl_type, slug, check_content_hash=check_content_hash)
            for url, slug in candidates
        ]

    @staticmethod
    def summarize(verdicts: Sequence[DuplicateVerdict]) -> DuplicateSummary:
        summary = DuplicateSummary(total=len(verdicts))
        for verdict in verdicts:
            field = verdict.duplicate_type.value
            setattr(summary, field, getattr(summary, field) + 1)
        return summary

    async def register(
        self,
        ref: str,
        url: str,
        crawl_type: CrawlType,
        slug: Optional[str] = None,
        digest: Optional[str] = None,
    ) -> None:
        """Record known content so later discoveries of it are detected"""
        await self.index.register(
            ref,
            crawl_type,
            normalize_url(url, self.tracking_params),
            (slug or extract_slug(url) or "").lower() or None,
            extract_domain(url),
            digest,
        )

    async def forget(self, ref: str) -> None:
        await self.index.forget(ref)

    def get_stats(self) -> Dict[str, int]:
        return self.stats.as_dict()
