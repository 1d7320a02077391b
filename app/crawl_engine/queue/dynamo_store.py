"""
DynamoDB-backed queue store.

Uses conditional writes as the compare-and-set guard for leasing, so any
number of dispatcher instances can lease from the same table without two
of them receiving the same item.
"""

import logging
from datetime import datetime
from typing import List, Optional, Sequence
from uuid import NAMESPACE_URL, uuid5

from ..core.exceptions import ConditionalCheckFailedError, LeaseNotHeldError, QueueItemNotFoundError
from ..core.types import ErrorVerdict, QueueFilter, QueueItem, QueueStatus, utcnow
from ..state.client import DynamoDBClient
from ..state.models import QueueItemModel
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


class DynamoQueueStore(QueueStore):
    """
    Queue store on a DynamoDB table.

    Item ids are derived from the dedup key (job + type + retry epoch), which
    makes enqueue idempotent through a NotExists condition on the hash key.
    """

    def __init__(self, client: DynamoDBClient):
        self.client = client
        self.stats = {"leases_won": 0, "leases_lost": 0, "reclaimed": 0}

    async def initialize(self) -> None:
        await self.client.create_table_if_not_exists(QueueItemModel)

    async def _require(self, item_id: str) -> QueueItemModel:
        row = await self.client.get_item(QueueItemModel, item_id)
        if row is None:
            raise QueueItemNotFoundError(item_id)
        return row

    async def _transition(self, row: QueueItemModel, new_item: QueueItem, condition) -> QueueItem:
        await self.client.update_item(row, row.update_actions(new_item), condition=condition)
        return new_item

    async def enqueue(self, item: QueueItem, delay_until: Optional[datetime] = None) -> QueueItem:
        item = item.model_copy(
            update={
                "id": str(uuid5(NAMESPACE_URL, item.dedup_key)),
                "status": QueueStatus.DELAYED if delay_until is not None else QueueStatus.PENDING,
                "available_after": delay_until,
            }
        )
        row = QueueItemModel.from_item(item)
        try:
            await self.client.put_item(row, condition=QueueItemModel.item_id.does_not_exist())
        except ConditionalCheckFailedError:
            existing = await self._require(item.id)
            logger.debug(f"Item for {item.dedup_key} already enqueued as {item.id}")
            return existing.to_item()
        return item

    async def _leasable_rows(self, now: datetime) -> List[QueueItemModel]:
        rows: List[QueueItemModel] = []
        for status in (QueueStatus.PENDING, QueueStatus.DELAYED):
            rows.extend(
                await self.client.query_index(
                    QueueItemModel.status_index,
                    status.value,
                    range_key_condition=QueueItemModel.available_at <= now.timestamp(),
                )
            )
        return rows

    async def lease_batch(
        self,
        worker_id: str,
        max_items: int,
        lease_timeout_seconds: float,
        per_admin_limit: Optional[int] = None,
        global_limit: Optional[int] = None,
    ) -> List[QueueItem]:
        now = utcnow()
        total, by_admin = await self.count_processing()
        rows = {row.item_id: row for row in await self._leasable_rows(now)}
        candidates = select_for_lease(
            [row.to_item() for row in rows.values()],
            max_items,
            total,
            by_admin,
            per_admin_limit,
            global_limit,
        )

        result: List[QueueItem] = []
        for item in candidates:
            row = rows[item.id]
            try:
                result.append(
                    await self._transition(
                        row,
                        leased(item, worker_id, lease_timeout_seconds, now),
                        QueueItemModel.status == item.status.value,
                    )
                )
                self.stats["leases_won"] += 1
            except ConditionalCheckFailedError:
                # Another dispatcher leased it first
                self.stats["leases_lost"] += 1
        return result

    def _lease_condition(self, worker_id: Optional[str]):
        condition = QueueItemModel.status == QueueStatus.PROCESSING.value
        if worker_id is not None:
            condition = condition & (QueueItemModel.lease_owner == worker_id)
        return condition

    async def _leased_transition(self, item_id: str, worker_id: Optional[str], apply) -> QueueItem:
        row = await self._require(item_id)
        item = row.to_item()
        check_lease(item, worker_id)
        try:
            return await self._transition(row, apply(item), self._lease_condition(worker_id))
        except ConditionalCheckFailedError as e:
            raise LeaseNotHeldError(f"Lease on {item_id} was lost before the update") from e

    async def complete(self, item_id: str, worker_id: Optional[str] = None) -> QueueItem:
        return await self._leased_transition(item_id, worker_id, lambda item: completed(item, utcnow()))

    async def fail(
        self,
        item_id: str,
        verdict: ErrorVerdict,
        error_message: str,
        worker_id: Optional[str] = None,
        next_timeout_seconds: Optional[float] = None,
    ) -> QueueItem:
        return await self._leased_transition(
            item_id, worker_id, lambda item: failed(item, verdict, error_message, utcnow(), next_timeout_seconds)
        )

    async def release(self, item_id: str, worker_id: Optional[str] = None) -> QueueItem:
        return await self._leased_transition(item_id, worker_id, lambda item: released(item, utcnow()))

    async def skip(self, item_id: str, reason: str) -> QueueItem:
        row = await self._require(item_id)
        item = row.to_item()
        if item.status.is_terminal:
            return item
        return await self._transition(row, skipped(item, reason, utcnow()), QueueItemModel.status == item.status.value)

    async def renew_lease(self, item_id: str, worker_id: str, lease_timeout_seconds: float) -> bool:
        row = await self.client.get_item(QueueItemModel, item_id)
        if row is None:
            return False
        item = row.to_item()
        if item.status != QueueStatus.PROCESSING or item.lease_owner != worker_id:
            return False
        try:
            await self._transition(
                row, leased(item, worker_id, lease_timeout_seconds, utcnow()), self._lease_condition(worker_id)
            )
        except ConditionalCheckFailedError:
            return False
        return True

    async def reclaim_expired(self, now: Optional[datetime] = None) -> List[QueueItem]:
        now = now or utcnow()
        reclaimed: List[QueueItem] = []
        for row in await self.client.query_index(QueueItemModel.status_index, QueueStatus.PROCESSING.value):
            item = row.to_item()
            if not item.lease_expired(now):
                continue
            try:
                reclaimed.append(
                    await self._transition(
                        row,
                        released(item, now),
                        (QueueItemModel.status == QueueStatus.PROCESSING.value)
                        & (QueueItemModel.lease_expires_at <= now.timestamp()),
                    )
                )
            except ConditionalCheckFailedError:
                continue
            logger.warning(f"Reclaimed expired lease on item {item.id}", extra={"item_id": item.id, "job_id": item.job_id})
        self.stats["reclaimed"] += len(reclaimed)
        return reclaimed

    async def get(self, item_id: str) -> Optional[QueueItem]:
        row = await self.client.get_item(QueueItemModel, item_id)
        return row.to_item() if row is not None else None

    async def scan_items(self, query: QueueFilter) -> List[QueueItem]:
        if query.status is not None:
            rows = await self.client.query_index(QueueItemModel.status_index, query.status.value)
        elif query.job_id is not None:
            rows = await self.client.query_index(QueueItemModel.job_index, query.job_id)
        else:
            rows = await self.client.scan_items(QueueItemModel)
        return [item for item in (row.to_item() for row in rows) if query.matches(item)]

    async def items_for_jobs(self, job_ids: Sequence[str]) -> List[QueueItem]:
        items: List[QueueItem] = []
        for job_id in job_ids:
            items.extend(row.to_item() for row in await self.client.query_index(QueueItemModel.job_index, job_id))
        return sorted(items, key=lambda item: item.created_at)

    async def delete_for_jobs(self, job_ids: Sequence[str]) -> int:
        count = 0
        for job_id in job_ids:
            for row in await self.client.query_index(QueueItemModel.job_index, job_id):
                await self.client.delete_item(row)
                count += 1
        return count
