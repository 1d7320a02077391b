"""
Control surface of the crawl engine.

Transport-agnostic operations used by the HTTP API and the CLI: create,
pause, resume, cancel, retry, status and queue snapshots, plus soft delete,
restore and settings updates.
"""

import logging
from collections import Counter
from typing import Dict, List, Optional, Sequence

from ..core.types import (
    ACTIVE_STATUSES,
    CrawlJob,
    CrawlSettings,
    CrawlType,
    DownloadMode,
    JobStatusView,
    QueueFilter,
    QueueItem,
    utcnow,
)
from ..discovery.download_mode import suggest_mode
from ..state.state_machine import JobStateMachine

logger = logging.getLogger(__name__)


class CrawlControlService:
    """Entry point for external requests against the job tree"""

    def __init__(self, state_machine: JobStateMachine, history_limit: int = 20):
        self.state_machine = state_machine
        self.job_store = state_machine.job_store
        self.queue_store = state_machine.queue_store
        self.publisher = state_machine.publisher
        self.history_limit = history_limit

    async def create_job(
        self,
        crawl_type: CrawlType,
        target_url: str,
        download_mode: Optional[DownloadMode] = None,
        settings: Optional[CrawlSettings] = None,
        created_by: Optional[str] = None,
        target_slug: Optional[str] = None,
        target_name: Optional[str] = None,
        priority: int = 0,
    ) -> CrawlJob:
        """
        Create a root job.

        Without an explicit download_mode the target is checked against known
        content: an existing target with children is crawled in UPDATE mode.
        """
        if download_mode is None:
            verdict = await self.state_machine.detector.detect(
                target_url, crawl_type, target_slug, check_content_hash=False
            )
            existing_children = 0
            if verdict.existing_ref:
                existing_children = len(await self.job_store.children(verdict.existing_ref))
            download_mode = suggest_mode(verdict, existing_children)

        return await self.state_machine.create_job(
            crawl_type,
            target_url,
            download_mode=download_mode,
            settings=settings,
            created_by=created_by,
            target_slug=target_slug,
            target_name=target_name,
            priority=priority,
        )

    async def pause(self, job_id: str) -> CrawlJob:
        return await self.state_machine.pause(job_id)

    async def resume(self, job_id: str) -> CrawlJob:
        return await self.state_machine.resume(job_id)

    async def cancel(self, job_id: str) -> CrawlJob:
        return await self.state_machine.cancel(job_id)

    async def retry_failed(self, job_id: str, indices: Optional[Sequence[int]] = None) -> List[str]:
        return await self.state_machine.retry_failed(job_id, indices)

    async def update_settings(self, job_id: str, settings: CrawlSettings) -> CrawlJob:
        return await self.state_machine.update_settings(job_id, settings)

    async def get_status(self, job_id: str) -> JobStatusView:
        """Job plus child status counts, its live queue items and recent events"""
        job = await self.job_store.require(job_id)
        children = await self.job_store.children(job_id)
        return JobStatusView(
            job=job,
            children_by_status=dict(Counter(child.status.value for child in children)),
            active_items=await self.queue_store.active_items_for_job(job_id),
            recent_events=self.publisher.history(job_id, self.history_limit),
        )

    async def list_queue(self, query: Optional[QueueFilter] = None) -> List[QueueItem]:
        return await self.queue_store.list_items(query)

    async def queue_counts(self) -> Dict[str, int]:
        return await self.queue_store.counts()

    async def delete_job(self, job_id: str) -> CrawlJob:
        """
        Soft-delete a job and its descendants.

        An active job is cancelled first. The rows stay until the retention
        sweep removes them.
        """
        job = await self.job_store.require(job_id)
        if job.is_deleted:
            return job
        if job.status in ACTIVE_STATUSES:
            await self.state_machine.cancel(job_id)

        deleted_at = utcnow()
        for descendant in await self.job_store.descendants(job_id):
            if not descendant.is_deleted:
                await self.job_store.update(descendant.id, deleted_at=deleted_at)
        job = await self.job_store.update(job_id, deleted_at=deleted_at)
        logger.info(f"Soft-deleted job {job_id}", extra={"job_id": job_id})
        return job

    async def restore_job(self, job_id: str) -> CrawlJob:
        """Undo a soft delete; cancelled work stays cancelled"""
        job = await self.job_store.require(job_id)
        if not job.is_deleted:
            return job
        for descendant in await self.job_store.descendants(job_id):
            if descendant.deleted_at == job.deleted_at:
                await self.job_store.update(descendant.id, deleted_at=None)
        job = await self.job_store.update(job_id, deleted_at=None)
        logger.info(f"Restored job {job_id}", extra={"job_id": job_id})
        return job
