"""
Component wiring for the crawl engine.

create_engine() builds every collaborator from EngineSettings so the API
server, the worker CLI and tests share one construction path.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from .config.settings import EngineSettings
from .control.service import CrawlControlService
from .discovery.deduplication import ContentIndex, DuplicateDetector, InMemoryContentIndex, RedisContentIndex
from .http_client.client import CrawlHTTPClient
from .processors.base import CrawlProcessor, ProcessorRegistry
from .processors.image import ImageDownloadProcessor
from .progress.publisher import ProgressPublisher, RedisProgressSink
from .queue import create_queue_store
from .queue.store import QueueStore
from .state import RetentionSweeper, create_job_store
from .state.job_store import JobStore
from .state.state_machine import JobStateMachine
from .storage.artifacts import ArtifactStorage, create_artifact_storage
from .worker.dispatcher import CrawlDispatcher
from .worker.error_handler import CrawlErrorClassifier
from .worker.notifier import AdminNotifier, LoggingNotifier

logger = logging.getLogger(__name__)


@dataclass
class CrawlEngine:
    settings: EngineSettings
    job_store: JobStore
    queue_store: QueueStore
    publisher: ProgressPublisher
    detector: DuplicateDetector
    state_machine: JobStateMachine
    control: CrawlControlService
    registry: ProcessorRegistry
    http_client: Optional[CrawlHTTPClient] = None
    storage: Optional[ArtifactStorage] = None
    notifier: AdminNotifier = field(default_factory=LoggingNotifier)
    redis_sink: Optional[RedisProgressSink] = None
    _dispatcher: Optional[CrawlDispatcher] = None

    @property
    def dispatcher(self) -> CrawlDispatcher:
        if self._dispatcher is None:
            self._dispatcher = CrawlDispatcher(
                self.settings,
                self.state_machine,
                self.queue_store,
                self.registry,
                classifier=CrawlErrorClassifier.from_settings(self.settings),
                notifier=self.notifier,
                http_client=self.http_client,
                storage=self.storage,
            )
        return self._dispatcher

    def sweeper(self) -> RetentionSweeper:
        return RetentionSweeper(
            self.job_store,
            self.queue_store,
            retention_days=self.settings.retention_days,
            storage=self.storage,
            cleanup_storage=self.settings.cleanup_storage,
            detector=self.detector,
        )

    async def start(self) -> None:
        await self.job_store.initialize()
        await self.queue_store.initialize()
        await self.publisher.start()
        logger.info(f"Crawl engine started ({self.settings.store_backend} backend)")

    async def stop(self) -> None:
        await self.publisher.stop()
        if self.redis_sink is not None:
            await self.redis_sink.close()
        if self._dispatcher is None and self.http_client is not None:
            await self.http_client.close()
        await self.queue_store.close()
        await self.job_store.close()
        logger.info("Crawl engine stopped")


def create_engine(
    settings: EngineSettings,
    processors: Optional[List[CrawlProcessor]] = None,
    job_store: Optional[JobStore] = None,
    queue_store: Optional[QueueStore] = None,
    content_index: Optional[ContentIndex] = None,
    storage: Optional[ArtifactStorage] = None,
    http_client: Optional[CrawlHTTPClient] = None,
    notifier: Optional[AdminNotifier] = None,
) -> CrawlEngine:
    """
    Build a CrawlEngine.

    Args:
        settings: Engine settings
        processors: Type processors (defaults to the image download processor)
        job_store, queue_store, content_index, storage, http_client, notifier:
            Overrides for the configured backends

    Returns:
        Wired but not yet started CrawlEngine
    """
    http_client = http_client or CrawlHTTPClient(settings)
    storage = storage or create_artifact_storage(settings)

    redis_sink = None
    if content_index is None:
        if settings.redis_url:
            redis_sink = RedisProgressSink.from_url(settings.redis_url, settings.progress_channel_prefix)
            content_index = RedisContentIndex(redis_sink.redis_client)
        else:
            content_index = InMemoryContentIndex()

    detector = DuplicateDetector(
        content_index,
        mirror_groups=settings.mirror_groups,
        tracking_params=settings.tracking_params,
        check_content_hash=settings.check_content_hash,
        digest_fetcher=http_client.fetch_digest if settings.check_content_hash else None,
    )
    publisher = ProgressPublisher(
        settings.progress_queue_size, settings.progress_history_size, settings.progress_history_jobs
    )
    if redis_sink is not None:
        publisher.subscribe(redis_sink)

    job_store = job_store or create_job_store(settings)
    queue_store = queue_store or create_queue_store(settings)
    state_machine = JobStateMachine(job_store, queue_store, publisher, detector, settings)

    return CrawlEngine(
        settings=settings,
        job_store=job_store,
        queue_store=queue_store,
        publisher=publisher,
        detector=detector,
        state_machine=state_machine,
        control=CrawlControlService(state_machine, history_limit=settings.progress_history_size),
        registry=ProcessorRegistry(processors if processors is not None else [ImageDownloadProcessor()]),
        http_client=http_client,
        storage=storage,
        notifier=notifier or LoggingNotifier(),
        redis_sink=redis_sink,
    )
