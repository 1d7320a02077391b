"""
Local queue store for the crawl engine.

File-backed queue implementation for local development and single-process
deployments. Every mutation runs under one lock, which is what makes
lease_batch mutually exclusive; state is mirrored to a JSON file when a
path is configured and kept in memory otherwise.
"""

import json
import logging
import threading
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence

from ..core.exceptions import QueueItemNotFoundError
from ..core.types import ErrorVerdict, QueueFilter, QueueItem, QueueStatus, utcnow
from .store import (
    QueueStore,
    check_lease,
    completed,
    failed,
    leased,
    released,
    select_for_lease,
    skipped,
)

logger = logging.getLogger(__name__)


class LocalQueueStore(QueueStore):
    """
    Local queue store.

    Provides the same interface as DynamoQueueStore but keeps items in a
    dict guarded by a thread lock, optionally persisted to a JSON file.
    """

    def __init__(self, queue_file: Optional[Path] = None, clock: Callable[[], datetime] = utcnow):
        self.queue_file = queue_file
        self.clock = clock
        self._lock = threading.Lock()
        self._items: Dict[str, QueueItem] = {}
        self._dedup: Dict[str, str] = {}

        if self.queue_file is not None:
            self.queue_file.parent.mkdir(parents=True, exist_ok=True)
            self._load()

        logger.info(f"Local queue store initialized ({self.queue_file or 'in-memory'})")

    def _load(self) -> None:
        if self.queue_file is None or not self.queue_file.exists():
            return
        with open(self.queue_file, "r", encoding="utf-8") as f:
            data = json.load(f)
        for raw in data:
            item = QueueItem(**raw)
            self._items[item.id] = item
            self._dedup[item.dedup_key] = item.id

    def _persist(self) -> None:
        if self.queue_file is None:
            return
        tmp_file = self.queue_file.with_suffix(".tmp")
        with open(tmp_file, "w", encoding="utf-8") as f:
            json.dump([item.model_dump(mode="json") for item in self._items.values()], f, indent=2, default=str)
        tmp_file.replace(self.queue_file)

    def _require(self, item_id: str) -> QueueItem:
        item = self._items.get(item_id)
        if item is None:
            raise QueueItemNotFoundError(item_id)
        return item

    def _store(self, item: QueueItem) -> QueueItem:
        self._items[item.id] = item
        self._persist()
        return item

    async def enqueue(self, item: QueueItem, delay_until: Optional[datetime] = None) -> QueueItem:
        with self._lock:
            existing_id = self._dedup.get(item.dedup_key)
            if existing_id is not None:
                logger.debug(f"Item for {item.dedup_key} already enqueued as {existing_id}")
                return self._items[existing_id]

            if delay_until is not None:
                item = item.model_copy(update={"status": QueueStatus.DELAYED, "available_after": delay_until})
            else:
                item = item.model_copy(update={"status": QueueStatus.PENDING, "available_after": None})

            self._dedup[item.dedup_key] = item.id
            self._store(item)

        logger.debug(
            f"Enqueued {item.crawl_type.value} item for job {item.job_id}",
            extra={"item_id": item.id, "job_id": item.job_id, "priority": item.priority},
        )
        return item

    async def lease_batch(
        self,
        worker_id: str,
        max_items: int,
        lease_timeout_seconds: float,
        per_admin_limit: Optional[int] = None,
        global_limit: Optional[int] = None,
    ) -> List[QueueItem]:
        with self._lock:
            now = self.clock()
            processing = [item for item in self._items.values() if item.status == QueueStatus.PROCESSING]
            by_admin: Dict[str, int] = {}
            for item in processing:
                by_admin[item.admin_id or ""] = by_admin.get(item.admin_id or "", 0) + 1

            candidates = [item for item in self._items.values() if item.is_leasable(now)]
            selected = select_for_lease(
                candidates, max_items, len(processing), by_admin, per_admin_limit, global_limit
            )

            result = []
            for item in selected:
                result.append(leased(item, worker_id, lease_timeout_seconds, now))
                self._items[item.id] = result[-1]
            if result:
                self._persist()

        return result

    async def complete(self, item_id: str, worker_id: Optional[str] = None) -> QueueItem:
        with self._lock:
            item = self._require(item_id)
            check_lease(item, worker_id)
            return self._store(completed(item, self.clock()))

    async def fail(
        self,
        item_id: str,
        verdict: ErrorVerdict,
        error_message: str,
        worker_id: Optional[str] = None,
        next_timeout_seconds: Optional[float] = None,
    ) -> QueueItem:
        with self._lock:
            item = self._require(item_id)
            check_lease(item, worker_id)
            return self._store(failed(item, verdict, error_message, self.clock(), next_timeout_seconds))

    async def release(self, item_id: str, worker_id: Optional[str] = None) -> QueueItem:
        with self._lock:
            item = self._require(item_id)
            check_lease(item, worker_id)
            return self._store(released(item, self.clock()))

    async def skip(self, item_id: str, reason: str) -> QueueItem:
        with self._lock:
            item = self._require(item_id)
            if item.status.is_terminal:
                return item
            return self._store(skipped(item, reason, self.clock()))

    async def renew_lease(self, item_id: str, worker_id: str, lease_timeout_seconds: float) -> bool:
        with self._lock:
            item = self._items.get(item_id)
            if item is None or item.status != QueueStatus.PROCESSING or item.lease_owner != worker_id:
                return False
            self._store(leased(item, worker_id, lease_timeout_seconds, self.clock()))
            return True

    async def reclaim_expired(self, now: Optional[datetime] = None) -> List[QueueItem]:
        with self._lock:
            now = now or self.clock()
            reclaimed = [released(item, now) for item in self._items.values() if item.lease_expired(now)]
            for item in reclaimed:
                self._items[item.id] = item
            if reclaimed:
                self._persist()

        for item in reclaimed:
            logger.warning(f"Reclaimed expired lease on item {item.id}", extra={"item_id": item.id, "job_id": item.job_id})
        return reclaimed

    async def get(self, item_id: str) -> Optional[QueueItem]:
        with self._lock:
            return self._items.get(item_id)

    async def scan_items(self, query: QueueFilter) -> List[QueueItem]:
        with self._lock:
            return [item for item in self._items.values() if query.matches(item)]

    async def items_for_jobs(self, job_ids: Sequence[str]) -> List[QueueItem]:
        wanted = set(job_ids)
        with self._lock:
            return sorted((item for item in self._items.values() if item.job_id in wanted), key=lambda i: i.created_at)

    async def delete_for_jobs(self, job_ids: Sequence[str]) -> int:
        wanted = set(job_ids)
        with self._lock:
            doomed = [item for item in self._items.values() if item.job_id in wanted]
            for item in doomed:
                del self._items[item.id]
                self._dedup.pop(item.dedup_key, None)
            if doomed:
                self._persist()
        return len(doomed)

    async def count_processing(self):
        with self._lock:
            by_admin: Dict[str, int] = {}
            total = 0
            for item in self._items.values():
                if item.status == QueueStatus.PROCESSING:
                    total += 1
                    by_admin[item.admin_id or ""] = by_admin.get(item.admin_id or "", 0) + 1
        return total, by_admin

    async def counts(self) -> Dict[str, int]:
        result = {status.value: 0 for status in QueueStatus}
        with self._lock:
            for item in self._items.values():
                result[item.status.value] += 1
        return result
