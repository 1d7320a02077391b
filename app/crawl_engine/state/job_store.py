"""
Job store for crawl jobs.

Persists the job tree keyed by id with parent/root references. Updates are
compare-and-set on the current status when the caller names the statuses it
expects, which is how the state machine guards its transitions.
"""

import json
import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Any, Collection, Dict, List, Optional, Union

from ..core.exceptions import ConditionalCheckFailedError, JobNotFoundError, StoreError
from ..core.types import IMMUTABLE_JOB_FIELDS, CrawlJob, CrawlStatus, utcnow

logger = logging.getLogger(__name__)

ExpectedStatus = Optional[Union[CrawlStatus, Collection[CrawlStatus]]]


def _expected_set(expected_status: ExpectedStatus) -> Optional[frozenset]:
    if expected_status is None:
        return None
    if isinstance(expected_status, CrawlStatus):
        return frozenset({expected_status})
    return frozenset(expected_status)


def apply_changes(job: CrawlJob, changes: Dict[str, Any], expected_status: ExpectedStatus = None) -> CrawlJob:
    """
    Return the job with changes applied.

    Raises:
        ValueError: If a tree-position field would change
        ConditionalCheckFailedError: If the job is not in an expected status
    """
    frozen = IMMUTABLE_JOB_FIELDS.intersection(changes)
    if frozen:
        raise ValueError(f"Immutable job fields cannot be updated: {sorted(frozen)}")

    expected = _expected_set(expected_status)
    if expected is not None and job.status not in expected:
        raise ConditionalCheckFailedError(
            f"Job {job.id} is {job.status.value}, expected one of {sorted(s.value for s in expected)}"
        )

    return job.model_copy(update={**changes, "updated_at": utcnow()})


class JobStore(ABC):
    """Abstract crawl job store"""

    @abstractmethod
    async def create(self, job: CrawlJob) -> CrawlJob: ...

    @abstractmethod
    async def get(self, job_id: str, include_deleted: bool = True) -> Optional[CrawlJob]: ...

    @abstractmethod
    async def update(self, job_id: str, expected_status: ExpectedStatus = None, **changes: Any) -> CrawlJob:
        """
        Apply changes to a job atomically.

        Raises:
            JobNotFoundError: If the job doesn't exist
            ConditionalCheckFailedError: If expected_status is given and doesn't match
        """

    @abstractmethod
    async def children(self, job_id: str) -> List[CrawlJob]:
        """Direct children ordered by item index"""

    @abstractmethod
    async def list_jobs(
        self,
        root_id: Optional[str] = None,
        status: Optional[CrawlStatus] = None,
        deleted_before: Optional[datetime] = None,
    ) -> List[CrawlJob]: ...

    @abstractmethod
    async def delete(self, job_id: str) -> bool:
        """Hard-delete a single job row"""

    async def initialize(self) -> None:
        return None

    async def require(self, job_id: str, include_deleted: bool = True) -> CrawlJob:
        job = await self.get(job_id, include_deleted=include_deleted)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    async def descendants(self, job_id: str) -> List[CrawlJob]:
        """All jobs below job_id, breadth first"""
        result: List[CrawlJob] = []
        frontier = [job_id]
        while frontier:
            next_frontier = []
            for current in frontier:
                for child in await self.children(current):
                    result.append(child)
                    next_frontier.append(child.id)
            frontier = next_frontier
        return result

    async def ancestors(self, job: CrawlJob) -> List[CrawlJob]:
        """Parent chain from the direct parent up to the root"""
        chain: List[CrawlJob] = []
        parent_id = job.parent_id
        while parent_id is not None:
            parent = await self.get(parent_id)
            if parent is None:
                break
            chain.append(parent)
            parent_id = parent.parent_id
        return chain

    async def close(self) -> None:
        return None


class LocalJobStore(JobStore):
    """
    Local job store.

    Keeps jobs in a dict guarded by a thread lock, mirrored to a JSON file
    when a path is configured.
    """

    def __init__(self, jobs_file: Optional[Path] = None):
        self.jobs_file = jobs_file
        self._lock = threading.Lock()
        self._jobs: Dict[str, CrawlJob] = {}

        if self.jobs_file is not None:
            self.jobs_file.parent.mkdir(parents=True, exist_ok=True)
            if self.jobs_file.exists():
                with open(self.jobs_file, "r", encoding="utf-8") as f:
                    for raw in json.load(f):
                        job = CrawlJob(**raw)
                        self._jobs[job.id] = job

        logger.info(f"Local job store initialized ({self.jobs_file or 'in-memory'})")

    def _persist(self) -> None:
        if self.jobs_file is None:
            return
        tmp_file = self.jobs_file.with_suffix(".tmp")
        with open(tmp_file, "w", encoding="utf-8") as f:
            json.dump([job.model_dump(mode="json") for job in self._jobs.values()], f, indent=2, default=str)
        tmp_file.replace(self.jobs_file)

    async def create(self, job: CrawlJob) -> CrawlJob:
        with self._lock:
            if job.id in self._jobs:
                raise StoreError(f"Crawl job already exists: {job.id}")
            self._jobs[job.id] = job
            self._persist()
        return job

    async def get(self, job_id: str, include_deleted: bool = True) -> Optional[CrawlJob]:
        with self._lock:
            job = self._jobs.get(job_id)
        if job is not None and job.is_deleted and not include_deleted:
            return None
        return job

    async def update(self, job_id: str, expected_status: ExpectedStatus = None, **changes: Any) -> CrawlJob:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            updated = apply_changes(job, changes, expected_status)
            self._jobs[job_id] = updated
            self._persist()
        return updated

    async def children(self, job_id: str) -> List[CrawlJob]:
        with self._lock:
            found = [job for job in self._jobs.values() if job.parent_id == job_id]
        return sorted(found, key=lambda job: (job.item_index if job.item_index is not None else -1, job.created_at))

    async def list_jobs(
        self,
        root_id: Optional[str] = None,
        status: Optional[CrawlStatus] = None,
        deleted_before: Optional[datetime] = None,
    ) -> List[CrawlJob]:
        with self._lock:
            jobs = list(self._jobs.values())
        if root_id is not None:
            jobs = [job for job in jobs if job.root_id == root_id]
        if status is not None:
            jobs = [job for job in jobs if job.status == status]
        if deleted_before is not None:
            jobs = [job for job in jobs if job.deleted_at is not None and job.deleted_at < deleted_before]
        return sorted(jobs, key=lambda job: job.created_at)

    async def delete(self, job_id: str) -> bool:
        with self._lock:
            removed = self._jobs.pop(job_id, None)
            if removed is not None:
                self._persist()
        return removed is not None
