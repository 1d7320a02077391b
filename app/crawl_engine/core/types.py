"""
Core types for the hierarchical crawl-job engine.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CrawlType(str, Enum):
    """Granularity of a crawl job"""

    CATEGORY = "category"
    COMIC = "comic"
    CHAPTER = "chapter"
    IMAGE = "image"

    @property
    def child_type(self) -> Optional["CrawlType"]:
        """Type of the jobs this type discovers (None for leaves)"""
        return _CHILD_TYPES.get(self)


_CHILD_TYPES = {
    CrawlType.CATEGORY: CrawlType.COMIC,
    CrawlType.COMIC: CrawlType.CHAPTER,
    CrawlType.CHAPTER: CrawlType.IMAGE,
}


class DownloadMode(str, Enum):
    """Which discovered children a job is required to create"""

    FULL = "full"
    UPDATE = "update"
    PARTIAL = "partial"
    NONE = "none"


class CrawlStatus(str, Enum):
    """Crawl job lifecycle status"""

    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_settled(self) -> bool:
        """True once the job no longer has work in flight"""
        return self in (CrawlStatus.COMPLETED, CrawlStatus.FAILED, CrawlStatus.CANCELLED)

    @property
    def is_final(self) -> bool:
        """COMPLETED and CANCELLED never re-enter RUNNING"""
        return self in (CrawlStatus.COMPLETED, CrawlStatus.CANCELLED)


ACTIVE_STATUSES = frozenset({CrawlStatus.PENDING, CrawlStatus.RUNNING, CrawlStatus.PAUSED})


class QueueStatus(str, Enum):
    """Queue item status"""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    DELAYED = "delayed"

    @property
    def is_terminal(self) -> bool:
        return self in (QueueStatus.COMPLETED, QueueStatus.FAILED, QueueStatus.SKIPPED)


class CrawlErrorType(str, Enum):
    """Types of crawl errors"""

    NETWORK_ERROR = "network_error"
    TIMEOUT = "timeout"
    RATE_LIMITED = "rate_limited"
    CAPTCHA_REQUIRED = "captcha_required"
    AUTH_REQUIRED = "auth_required"
    NOT_FOUND = "not_found"
    PARSE_ERROR = "parse_error"
    BLOCKED = "blocked"


class ErrorAction(str, Enum):
    """Action prescribed for a classified error"""

    RETRY_IMMEDIATE = "retry_immediate"
    RETRY_DELAYED = "retry_delayed"
    SKIP_MARK_MANUAL = "skip_mark_manual"
    SKIP_NOTIFY_ADMIN = "skip_notify_admin"
    SKIP_PERMANENT = "skip_permanent"
    SKIP_LOG = "skip_log"

    @property
    def is_retry(self) -> bool:
        return self in (ErrorAction.RETRY_IMMEDIATE, ErrorAction.RETRY_DELAYED)

    @property
    def terminal_queue_status(self) -> QueueStatus:
        """Queue status an item settles in when this action ends its attempts"""
        if self in (ErrorAction.SKIP_MARK_MANUAL, ErrorAction.SKIP_NOTIFY_ADMIN):
            return QueueStatus.FAILED
        return QueueStatus.SKIPPED


class DuplicateType(str, Enum):
    """Duplicate detection outcome"""

    EXACT_URL = "exact_url"
    SIMILAR_URL = "similar_url"
    CONTENT_HASH = "content_hash"
    NO_DUPLICATE = "no_duplicate"


class ProgressEventType(str, Enum):
    """Progress events fanned out to subscribers"""

    JOB_CREATED = "job_created"
    JOB_STARTED = "job_started"
    JOB_PAUSED = "job_paused"
    JOB_RESUMED = "job_resumed"
    JOB_COMPLETED = "job_completed"
    JOB_FAILED = "job_failed"
    JOB_CANCELLED = "job_cancelled"
    CHILD_CREATED = "child_created"
    PROGRESS_UPDATE = "progress_update"
    MESSAGE_ADDED = "message_added"
    IMAGE_DOWNLOADED = "image_downloaded"
    IMAGE_FAILED = "image_failed"


class InterruptionKind(str, Enum):
    CONTINUE = "continue"
    PAUSE = "pause"
    CANCEL = "cancel"


class OutcomeKind(str, Enum):
    SUCCESS = "success"
    DUPLICATE = "duplicate"
    ERROR = "error"


class CrawlSettings(BaseModel):
    """Per-job settings snapshot"""

    parallel_limit: int = Field(3, ge=1, le=64)
    image_quality: int = Field(85, ge=1, le=100)
    timeout_seconds: int = Field(30, ge=1, le=3600)
    skip_items: List[int] = Field(default_factory=list)
    redownload_items: List[int] = Field(default_factory=list)
    range_start: int = Field(-1, ge=-1)
    range_end: int = Field(-1, ge=-1)
    custom_headers: Dict[str, str] = Field(default_factory=dict)
    check_content_hash: bool = False

    @property
    def has_range(self) -> bool:
        return self.range_start >= 0 and self.range_end >= self.range_start

    def for_child(self) -> "CrawlSettings":
        """Settings inherited by spawned children (index selections stay with the parent)"""
        return CrawlSettings(
            parallel_limit=self.parallel_limit,
            image_quality=self.image_quality,
            timeout_seconds=self.timeout_seconds,
            custom_headers=dict(self.custom_headers),
            check_content_hash=self.check_content_hash,
        )


class CrawlJob(BaseModel):
    """One unit of crawl work at a given granularity"""

    id: str = Field(default_factory=lambda: str(uuid4()))
    crawl_type: CrawlType
    target_url: str
    target_slug: Optional[str] = None
    target_name: Optional[str] = None
    download_mode: DownloadMode = DownloadMode.FULL
    status: CrawlStatus = CrawlStatus.PENDING

    # Tree position (immutable after creation)
    parent_id: Optional[str] = None
    root_id: Optional[str] = None
    depth: int = Field(0, ge=0)
    item_index: Optional[int] = None

    retry_count: int = 0
    last_processed_index: int = -1
    settings: CrawlSettings = Field(default_factory=CrawlSettings)
    created_by: Optional[str] = None
    priority: int = 0

    # Discovery and outcome
    discovery_complete: bool = False
    linked_ref: Optional[str] = None
    storage_locator: Optional[str] = None

    # Aggregated counters over direct children
    total_items: int = 0
    completed_items: int = 0
    failed_items: int = 0
    skipped_items: int = 0
    bytes_downloaded: int = 0

    error_message: Optional[str] = None
    error_type: Optional[CrawlErrorType] = None

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None

    @model_validator(mode="after")
    def _default_root(self) -> "CrawlJob":
        if self.root_id is None:
            self.root_id = self.id
        return self

    @property
    def is_root(self) -> bool:
        return self.parent_id is None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    @property
    def is_linked(self) -> bool:
        return self.linked_ref is not None


IMMUTABLE_JOB_FIELDS = frozenset({"id", "crawl_type", "parent_id", "root_id", "depth", "item_index", "created_at"})


class QueueItem(BaseModel):
    """Leasable execution attempt of a crawl job"""

    id: str = Field(default_factory=lambda: str(uuid4()))
    job_id: str
    crawl_type: CrawlType
    admin_id: Optional[str] = None
    parent_id: Optional[str] = None
    priority: int = 0
    status: QueueStatus = QueueStatus.PENDING

    lease_owner: Optional[str] = None
    lease_expires_at: Optional[datetime] = None
    available_after: Optional[datetime] = None

    retry_count: int = 0
    max_retries: int = 3
    retry_epoch: int = 0
    timeout_seconds: Optional[float] = None

    last_error: Optional[str] = None
    last_error_type: Optional[CrawlErrorType] = None
    last_action: Optional[ErrorAction] = None

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    @property
    def dedup_key(self) -> str:
        return f"{self.job_id}:{self.crawl_type.value}:{self.retry_epoch}"

    def is_leasable(self, now: datetime) -> bool:
        if self.status == QueueStatus.PENDING:
            return True
        if self.status == QueueStatus.DELAYED:
            return self.available_after is None or self.available_after <= now
        return False

    def lease_expired(self, now: datetime) -> bool:
        return (
            self.status == QueueStatus.PROCESSING
            and self.lease_expires_at is not None
            and self.lease_expires_at <= now
        )


class QueueFilter(BaseModel):
    """Filter for queue snapshots"""

    status: Optional[QueueStatus] = None
    job_id: Optional[str] = None
    admin_id: Optional[str] = None
    crawl_type: Optional[CrawlType] = None
    limit: int = Field(100, ge=1, le=1000)

    def matches(self, item: QueueItem) -> bool:
        if self.status is not None and item.status != self.status:
            return False
        if self.job_id is not None and item.job_id != self.job_id:
            return False
        if self.admin_id is not None and item.admin_id != self.admin_id:
            return False
        if self.crawl_type is not None and item.crawl_type != self.crawl_type:
            return False
        return True


class ErrorVerdict(BaseModel):
    """Classification of a failure plus the prescribed action"""

    error_type: CrawlErrorType
    action: ErrorAction
    delay_seconds: float = 0.0
    timeout_multiplier: float = 1.0
    retry_count: int = 0
    escalated: bool = False
    reason: str = ""

    @property
    def is_terminal(self) -> bool:
        return not self.action.is_retry


class DuplicateVerdict(BaseModel):
    """Result of the duplicate detector"""

    duplicate_type: DuplicateType = DuplicateType.NO_DUPLICATE
    existing_ref: Optional[str] = None
    normalized_url: Optional[str] = None
    confidence: float = 0.0

    @property
    def is_duplicate(self) -> bool:
        return self.duplicate_type != DuplicateType.NO_DUPLICATE


class DuplicateSummary(BaseModel):
    """Counts per duplicate type over a batch"""

    total: int = 0
    exact_url: int = 0
    similar_url: int = 0
    content_hash: int = 0
    no_duplicate: int = 0


class ChildSpec(BaseModel):
    """A child discovered by a processor"""

    index: int = Field(..., ge=0)
    url: str
    slug: Optional[str] = None
    name: Optional[str] = None
    priority: int = 0


class ProcessOutcome(BaseModel):
    """What a type processor reports for one job"""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    kind: OutcomeKind
    children: List[ChildSpec] = Field(default_factory=list)
    bytes_downloaded: int = 0
    storage_locator: Optional[str] = None
    verdict: Optional[DuplicateVerdict] = None
    error: Optional[BaseException] = None

    @classmethod
    def success(
        cls, children: Optional[List[ChildSpec]] = None, bytes_downloaded: int = 0, storage_locator: Optional[str] = None
    ) -> "ProcessOutcome":
        return cls(
            kind=OutcomeKind.SUCCESS,
            children=children or [],
            bytes_downloaded=bytes_downloaded,
            storage_locator=storage_locator,
        )

    @classmethod
    def duplicate(cls, verdict: DuplicateVerdict) -> "ProcessOutcome":
        return cls(kind=OutcomeKind.DUPLICATE, verdict=verdict)

    @classmethod
    def failure(cls, error: BaseException) -> "ProcessOutcome":
        return cls(kind=OutcomeKind.ERROR, error=error)


class Interruption(BaseModel):
    """Tagged result of the cooperative interruption check"""

    kind: InterruptionKind = InterruptionKind.CONTINUE
    job_id: Optional[str] = None
    at_index: Optional[int] = None

    @classmethod
    def proceed(cls) -> "Interruption":
        return cls()

    @classmethod
    def paused(cls, job_id: str, at_index: int) -> "Interruption":
        return cls(kind=InterruptionKind.PAUSE, job_id=job_id, at_index=at_index)

    @classmethod
    def cancelled(cls, job_id: str) -> "Interruption":
        return cls(kind=InterruptionKind.CANCEL, job_id=job_id)

    @property
    def should_stop(self) -> bool:
        return self.kind != InterruptionKind.CONTINUE


class SpawnReport(BaseModel):
    """Result of iterating a job's discovered children"""

    spawned: List[str] = Field(default_factory=list)
    linked: List[str] = Field(default_factory=list)
    omitted: List[int] = Field(default_factory=list)
    interruption: Interruption = Field(default_factory=Interruption.proceed)


class ProgressEvent(BaseModel):
    """Event delivered to progress subscribers"""

    event_id: str = Field(default_factory=lambda: str(uuid4()))
    job_id: str
    root_id: Optional[str] = None
    event_type: ProgressEventType
    message: str = ""
    timestamp: datetime = Field(default_factory=utcnow)
    data: Dict[str, Any] = Field(default_factory=dict)


class JobStatusView(BaseModel):
    """Job plus aggregated stats returned by status queries"""

    job: CrawlJob
    children_by_status: Dict[str, int] = Field(default_factory=dict)
    active_items: List[QueueItem] = Field(default_factory=list)
    recent_events: List[ProgressEvent] = Field(default_factory=list)
