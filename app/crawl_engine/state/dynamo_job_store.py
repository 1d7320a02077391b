"""
DynamoDB-backed job store.
"""

import logging
from datetime import datetime
from typing import Any, List, Optional

from ..core.exceptions import ConditionalCheckFailedError, JobNotFoundError, StoreError
from ..core.types import CrawlJob, CrawlStatus
from .client import DynamoDBClient
from .job_store import ExpectedStatus, JobStore, apply_changes
from .models import CrawlJobModel, to_epoch

logger = logging.getLogger(__name__)


class DynamoJobStore(JobStore):
    """
    Job store on a DynamoDB table.

    Every write is guarded by the row version, so a read-modify-write that
    lost a race is re-read and re-applied; expected_status is re-checked
    against the fresh row each time.
    """

    def __init__(self, client: DynamoDBClient, max_conflict_retries: int = 5):
        self.client = client
        self.max_conflict_retries = max_conflict_retries

    async def initialize(self) -> None:
        await self.client.create_table_if_not_exists(CrawlJobModel)

    async def create(self, job: CrawlJob) -> CrawlJob:
        try:
            await self.client.put_item(CrawlJobModel.from_job(job))
        except ConditionalCheckFailedError as e:
            raise StoreError(f"Crawl job already exists: {job.id}", e)
        return job

    async def get(self, job_id: str, include_deleted: bool = True) -> Optional[CrawlJob]:
        row = await self.client.get_item(CrawlJobModel, job_id)
        if row is None:
            return None
        job = row.to_job()
        if job.is_deleted and not include_deleted:
            return None
        return job

    async def update(self, job_id: str, expected_status: ExpectedStatus = None, **changes: Any) -> CrawlJob:
        for attempt in range(self.max_conflict_retries):
            row = await self.client.get_item(CrawlJobModel, job_id)
            if row is None:
                raise JobNotFoundError(job_id)

            updated = apply_changes(row.to_job(), changes, expected_status)
            actions = [
                CrawlJobModel.status.set(updated.status.value),
                CrawlJobModel.payload.set(updated.model_dump(mode="json")),
                CrawlJobModel.deleted_at.set(to_epoch(updated.deleted_at))
                if updated.deleted_at
                else CrawlJobModel.deleted_at.remove(),
            ]
            try:
                await self.client.update_item(row, actions)
                return updated
            except ConditionalCheckFailedError:
                logger.debug(f"Version conflict updating job {job_id} (attempt {attempt + 1})")

        raise ConditionalCheckFailedError(f"Job {job_id} kept changing under concurrent updates")

    async def children(self, job_id: str) -> List[CrawlJob]:
        rows = await self.client.query_index(CrawlJobModel.parent_index, job_id)
        jobs = [row.to_job() for row in rows]
        return sorted(jobs, key=lambda job: (job.item_index if job.item_index is not None else -1, job.created_at))

    async def list_jobs(
        self,
        root_id: Optional[str] = None,
        status: Optional[CrawlStatus] = None,
        deleted_before: Optional[datetime] = None,
    ) -> List[CrawlJob]:
        condition = None
        if status is not None:
            condition = CrawlJobModel.status == status.value
        if deleted_before is not None:
            deleted = CrawlJobModel.deleted_at < deleted_before.timestamp()
            condition = deleted if condition is None else condition & deleted

        if root_id is not None:
            keys = await self.client.query_index(CrawlJobModel.root_index, root_id)
            jobs = [job for job in [await self.get(key.job_id) for key in keys] if job is not None]
            if status is not None:
                jobs = [job for job in jobs if job.status == status]
            if deleted_before is not None:
                jobs = [job for job in jobs if job.deleted_at is not None and job.deleted_at < deleted_before]
        else:
            jobs = [row.to_job() for row in await self.client.scan_items(CrawlJobModel, filter_condition=condition)]
        return sorted(jobs, key=lambda job: job.created_at)

    async def delete(self, job_id: str) -> bool:
        row = await self.client.get_item(CrawlJobModel, job_id)
        if row is None:
            return False
        await self.client.delete_item(row)
        return True
