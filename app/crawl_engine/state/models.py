"""
DynamoDB models for crawl job and queue item persistence.

Each row keeps the attributes needed for keys, indexes and conditional
writes as top-level attributes and the full pydantic record as a JSON
payload, so the engine models remain the single source of truth.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pynamodb.attributes import JSONAttribute, NumberAttribute, UnicodeAttribute, VersionAttribute
from pynamodb.indexes import AllProjection, GlobalSecondaryIndex, KeysOnlyProjection
from pynamodb.models import Model

from ..config.settings import EngineSettings
from ..core.types import CrawlJob, QueueItem


def to_epoch(value: Optional[datetime]) -> Optional[float]:
    return value.timestamp() if value is not None else None


class ParentIndex(GlobalSecondaryIndex["CrawlJobModel"]):
    """
    GSI for listing the direct children of a job.

    Sparse: root jobs have no parent_id and are absent from the index.
    """

    class Meta:
        index_name = "ParentIndex"
        projection = AllProjection()

    parent_id = UnicodeAttribute(hash_key=True)


class RootIndex(GlobalSecondaryIndex["CrawlJobModel"]):
    """GSI for loading a whole job tree"""

    class Meta:
        index_name = "RootIndex"
        projection = KeysOnlyProjection()

    root_id = UnicodeAttribute(hash_key=True)


class CrawlJobModel(Model):
    """
    DynamoDB model for crawl jobs.

    `status` is duplicated out of the payload so transitions can be guarded
    with conditional updates. `version` makes every save and update an
    optimistic compare-and-set.
    """

    class Meta:  # type: ignore[reportIncompatibleVariableOverride]
        table_name = "crawl-jobs"
        region = "ap-northeast-1"
        host = None
        billing_mode = "PAY_PER_REQUEST"

    job_id = UnicodeAttribute(hash_key=True)
    parent_id = UnicodeAttribute(null=True)
    root_id = UnicodeAttribute()
    status = UnicodeAttribute()
    deleted_at = NumberAttribute(null=True)
    payload = JSONAttribute()
    version = VersionAttribute()

    parent_index = ParentIndex()
    root_index = RootIndex()

    @classmethod
    def from_job(cls, job: CrawlJob) -> "CrawlJobModel":
        return cls(
            job_id=job.id,
            parent_id=job.parent_id,
            root_id=job.root_id,
            status=job.status.value,
            deleted_at=to_epoch(job.deleted_at),
            payload=job.model_dump(mode="json"),
        )

    def to_job(self) -> CrawlJob:
        return CrawlJob(**self.payload)


class StatusAvailableIndex(GlobalSecondaryIndex["QueueItemModel"]):
    """
    GSI for lease queries: items by status ordered by available_at.
    """

    class Meta:
        index_name = "StatusAvailableIndex"
        projection = AllProjection()

    status = UnicodeAttribute(hash_key=True)
    available_at = NumberAttribute(range_key=True)


class QueueJobIndex(GlobalSecondaryIndex["QueueItemModel"]):
    """GSI for the queue items of a job"""

    class Meta:
        index_name = "QueueJobIndex"
        projection = AllProjection()

    job_id = UnicodeAttribute(hash_key=True)


class QueueItemModel(Model):
    """
    DynamoDB model for queue items.

    `available_at` is the epoch second from which the item may be leased
    (its creation time for PENDING items, the backoff expiry for DELAYED
    ones). `lease_owner` and `lease_expires_at` back the lease guard.
    """

    class Meta:  # type: ignore[reportIncompatibleVariableOverride]
        table_name = "crawl-queue-items"
        region = "ap-northeast-1"
        host = None
        billing_mode = "PAY_PER_REQUEST"

    item_id = UnicodeAttribute(hash_key=True)
    job_id = UnicodeAttribute()
    status = UnicodeAttribute()
    available_at = NumberAttribute()
    admin_id = UnicodeAttribute(null=True)
    lease_owner = UnicodeAttribute(null=True)
    lease_expires_at = NumberAttribute(null=True)
    payload = JSONAttribute()

    status_index = StatusAvailableIndex()
    job_index = QueueJobIndex()

    @classmethod
    def from_item(cls, item: QueueItem) -> "QueueItemModel":
        return cls(
            item_id=item.id,
            job_id=item.job_id,
            status=item.status.value,
            available_at=to_epoch(item.available_after or item.created_at),
            admin_id=item.admin_id,
            lease_owner=item.lease_owner,
            lease_expires_at=to_epoch(item.lease_expires_at),
            payload=item.model_dump(mode="json"),
        )

    def to_item(self) -> QueueItem:
        return QueueItem(**self.payload)

    def update_actions(self, item: QueueItem) -> list:
        """Actions that overwrite this row with the given item state"""
        return [
            QueueItemModel.status.set(item.status.value),
            QueueItemModel.available_at.set(to_epoch(item.available_after or item.created_at)),
            QueueItemModel.lease_owner.set(item.lease_owner) if item.lease_owner else QueueItemModel.lease_owner.remove(),
            QueueItemModel.lease_expires_at.set(to_epoch(item.lease_expires_at))
            if item.lease_expires_at
            else QueueItemModel.lease_expires_at.remove(),
            QueueItemModel.payload.set(item.model_dump(mode="json")),
        ]


def initialize_models(settings: EngineSettings) -> None:
    """
    Point the models at the configured tables, region and endpoint.

    Must run before the first table access.
    """
    for model, table_name in ((CrawlJobModel, settings.jobs_table), (QueueItemModel, settings.queue_table)):
        model.Meta.table_name = table_name
        model.Meta.region = settings.aws_region
        model.Meta.host = settings.localstack_endpoint
        # PynamoDB caches the connection per model; drop it so the new Meta applies
        model._connection = None
