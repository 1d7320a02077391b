"""
Queue store contract for crawl queue items.

A durable FIFO-with-priority of QueueItems supporting lease/poll,
completion, delay-and-requeue, and skip. Backends implement the storage
and the atomic guard; the status transitions themselves are shared here so
every backend applies identical semantics.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from ..core.exceptions import LeaseNotHeldError
from ..core.types import ErrorAction, ErrorVerdict, QueueFilter, QueueItem, QueueStatus

ACTIVE_QUEUE_STATUSES = (QueueStatus.PENDING, QueueStatus.DELAYED, QueueStatus.PROCESSING)


def lease_order(item: QueueItem) -> Tuple[int, datetime]:
    """Higher priority first, then oldest first"""
    return (-item.priority, item.created_at)


def select_for_lease(
    candidates: Iterable[QueueItem],
    max_items: int,
    processing_total: int,
    processing_by_admin: Dict[str, int],
    per_admin_limit: Optional[int] = None,
    global_limit: Optional[int] = None,
) -> List[QueueItem]:
    """
    Pick up to max_items candidates in lease order without exceeding either ceiling.

    Candidates whose admin is already at its limit are passed over so that
    one requester cannot starve the others.
    """
    budget = max_items
    if global_limit is not None:
        budget = min(budget, global_limit - processing_total)
    if budget <= 0:
        return []

    admin_counts = dict(processing_by_admin)
    selected: List[QueueItem] = []
    for item in sorted(candidates, key=lease_order):
        if len(selected) >= budget:
            break
        admin = item.admin_id or ""
        if per_admin_limit is not None and admin_counts.get(admin, 0) >= per_admin_limit:
            continue
        admin_counts[admin] = admin_counts.get(admin, 0) + 1
        selected.append(item)
    return selected


def leased(item: QueueItem, worker_id: str, lease_timeout_seconds: float, now: datetime) -> QueueItem:
    return item.model_copy(
        update={
            "status": QueueStatus.PROCESSING,
            "lease_owner": worker_id,
            "lease_expires_at": now + timedelta(seconds=lease_timeout_seconds),
            "available_after": None,
            "updated_at": now,
        }
    )


def completed(item: QueueItem, now: datetime) -> QueueItem:
    return item.model_copy(
        update={
            "status": QueueStatus.COMPLETED,
            "lease_owner": None,
            "lease_expires_at": None,
            "completed_at": now,
            "updated_at": now,
        }
    )


def failed(
    item: QueueItem,
    verdict: ErrorVerdict,
    error_message: str,
    now: datetime,
    next_timeout_seconds: Optional[float] = None,
) -> QueueItem:
    """
    Apply an error verdict.

    RETRY_IMMEDIATE requeues as PENDING, RETRY_DELAYED as DELAYED until the
    backoff expires; both increment retry_count. SKIP_* actions settle the
    item in FAILED or SKIPPED and keep the reason for admin visibility.
    """
    update = {
        "lease_owner": None,
        "lease_expires_at": None,
        "last_error": error_message,
        "last_error_type": verdict.error_type,
        "last_action": verdict.action,
        "updated_at": now,
    }
    if verdict.action.is_retry:
        update["retry_count"] = item.retry_count + 1
        if next_timeout_seconds is not None:
            update["timeout_seconds"] = next_timeout_seconds
        if verdict.action == ErrorAction.RETRY_DELAYED and verdict.delay_seconds > 0:
            update["status"] = QueueStatus.DELAYED
            update["available_after"] = now + timedelta(seconds=verdict.delay_seconds)
        else:
            update["status"] = QueueStatus.PENDING
            update["available_after"] = None
    else:
        update["status"] = verdict.action.terminal_queue_status
        update["completed_at"] = now
    return item.model_copy(update=update)


def released(item: QueueItem, now: datetime) -> QueueItem:
    """Back to PENDING without touching retry_count"""
    return item.model_copy(
        update={
            "status": QueueStatus.PENDING,
            "lease_owner": None,
            "lease_expires_at": None,
            "available_after": None,
            "updated_at": now,
        }
    )


def skipped(item: QueueItem, reason: str, now: datetime) -> QueueItem:
    return item.model_copy(
        update={
            "status": QueueStatus.SKIPPED,
            "lease_owner": None,
            "lease_expires_at": None,
            "last_error": reason,
            "completed_at": now,
            "updated_at": now,
        }
    )


def check_lease(item: QueueItem, worker_id: Optional[str]) -> None:
    """Raise LeaseNotHeldError unless the item is PROCESSING under worker_id"""
    if item.status != QueueStatus.PROCESSING:
        raise LeaseNotHeldError(f"Queue item {item.id} is not leased (status={item.status.value})")
    if worker_id is not None and item.lease_owner != worker_id:
        raise LeaseNotHeldError(f"Worker {worker_id} doesn't hold the lease for {item.id} (owner={item.lease_owner})")


class QueueStore(ABC):
    """
    Abstract queue store.

    Implementations must guarantee that no two concurrent lease_batch calls
    receive the same item.
    """

    @abstractmethod
    async def enqueue(self, item: QueueItem, delay_until: Optional[datetime] = None) -> QueueItem:
        """
        Insert an item as PENDING, or DELAYED when delay_until is given.

        Idempotent per job + type + retry epoch: enqueueing the same unit of
        work twice returns the existing item.
        """

    @abstractmethod
    async def lease_batch(
        self,
        worker_id: str,
        max_items: int,
        lease_timeout_seconds: float,
        per_admin_limit: Optional[int] = None,
        global_limit: Optional[int] = None,
    ) -> List[QueueItem]:
        """Atomically flip up to max_items leasable items to PROCESSING under worker_id"""

    @abstractmethod
    async def complete(self, item_id: str, worker_id: Optional[str] = None) -> QueueItem: ...

    @abstractmethod
    async def fail(
        self,
        item_id: str,
        verdict: ErrorVerdict,
        error_message: str,
        worker_id: Optional[str] = None,
        next_timeout_seconds: Optional[float] = None,
    ) -> QueueItem: ...

    @abstractmethod
    async def release(self, item_id: str, worker_id: Optional[str] = None) -> QueueItem: ...

    @abstractmethod
    async def skip(self, item_id: str, reason: str) -> QueueItem:
        """Settle a non-terminal item as SKIPPED"""

    @abstractmethod
    async def renew_lease(self, item_id: str, worker_id: str, lease_timeout_seconds: float) -> bool: ...

    @abstractmethod
    async def reclaim_expired(self, now: Optional[datetime] = None) -> List[QueueItem]:
        """Return PROCESSING items whose lease expired to PENDING without counting a retry"""

    @abstractmethod
    async def get(self, item_id: str) -> Optional[QueueItem]: ...

    @abstractmethod
    async def scan_items(self, query: QueueFilter) -> List[QueueItem]:
        """Every item matching the filter, unordered and ignoring query.limit"""

    async def list_items(self, query: Optional[QueueFilter] = None) -> List[QueueItem]:
        query = query or QueueFilter()
        return sorted(await self.scan_items(query), key=lease_order)[: query.limit]

    @abstractmethod
    async def items_for_jobs(self, job_ids: Sequence[str]) -> List[QueueItem]: ...

    @abstractmethod
    async def delete_for_jobs(self, job_ids: Sequence[str]) -> int: ...

    async def initialize(self) -> None:
        return None

    async def count_processing(self) -> Tuple[int, Dict[str, int]]:
        """Live PROCESSING items, in total and per admin"""
        items = await self.scan_items(QueueFilter(status=QueueStatus.PROCESSING))
        by_admin: Dict[str, int] = {}
        for item in items:
            admin = item.admin_id or ""
            by_admin[admin] = by_admin.get(admin, 0) + 1
        return len(items), by_admin

    async def active_items_for_job(self, job_id: str) -> List[QueueItem]:
        return [item for item in await self.items_for_jobs([job_id]) if item.status in ACTIVE_QUEUE_STATUSES]

    async def skip_for_jobs(self, job_ids: Sequence[str], reason: str, include_processing: bool = False) -> int:
        """
        Skip waiting items of the given jobs.

        PROCESSING items are left to their worker unless include_processing is
        set; the worker observes the job status at its next interruption check.
        """
        count = 0
        for item in await self.items_for_jobs(job_ids):
            if item.status in (QueueStatus.PENDING, QueueStatus.DELAYED) or (
                include_processing and item.status == QueueStatus.PROCESSING
            ):
                await self.skip(item.id, reason)
                count += 1
        return count

    async def counts(self) -> Dict[str, int]:
        result = {status.value: 0 for status in QueueStatus}
        for item in await self.scan_items(QueueFilter()):
            result[item.status.value] += 1
        return result

    async def close(self) -> None:
        return None
