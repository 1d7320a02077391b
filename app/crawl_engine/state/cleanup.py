"""
Retention sweep for soft-deleted job trees.
"""

import logging
from datetime import datetime, timedelta
from typing import Dict, Optional

from ..core.types import utcnow
from ..discovery.deduplication import DuplicateDetector
from ..queue.store import QueueStore
from ..storage.artifacts import ArtifactStorage, StorageError
from .job_store import JobStore

logger = logging.getLogger(__name__)


class RetentionSweeper:
    """
    Hard-deletes job trees soft-deleted longer than the retention window.

    Queue items go with their jobs. Stored artifacts are deleted too when
    cleanup_storage is set; a failed artifact delete is logged and the row
    is still removed.
    """

    def __init__(
        self,
        job_store: JobStore,
        queue_store: QueueStore,
        retention_days: int = 30,
        storage: Optional[ArtifactStorage] = None,
        cleanup_storage: bool = True,
        detector: Optional[DuplicateDetector] = None,
    ):
        self.job_store = job_store
        self.queue_store = queue_store
        self.retention_days = retention_days
        self.storage = storage
        self.cleanup_storage = cleanup_storage
        self.detector = detector

    async def sweep(self, now: Optional[datetime] = None) -> Dict[str, int]:
        cutoff = (now or utcnow()) - timedelta(days=self.retention_days)
        expired = await self.job_store.list_jobs(deleted_before=cutoff)
        expired_ids = {job.id for job in expired}
        # Sweep from the top of each deleted subtree
        tops = [job for job in expired if job.parent_id not in expired_ids]

        result = {"trees": 0, "jobs": 0, "queue_items": 0, "artifacts": 0}
        for top in tops:
            tree = [top] + await self.job_store.descendants(top.id)
            job_ids = [job.id for job in tree]

            if self.cleanup_storage and self.storage is not None:
                for job in tree:
                    if not job.storage_locator:
                        continue
                    try:
                        if await self.storage.delete(job.storage_locator):
                            result["artifacts"] += 1
                    except StorageError as e:
                        logger.warning(f"Failed to delete artifact {job.storage_locator}: {e}", extra={"job_id": job.id})

            result["queue_items"] += await self.queue_store.delete_for_jobs(job_ids)
            for job in reversed(tree):
                if self.detector is not None:
                    await self.detector.forget(job.id)
                if await self.job_store.delete(job.id):
                    result["jobs"] += 1
            result["trees"] += 1

        if result["trees"]:
            logger.info(
                f"Retention sweep removed {result['jobs']} jobs in {result['trees']} trees",
                extra=result,
            )
        return result
