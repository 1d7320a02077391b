"""
Crawl job state machine.

Owns the CrawlJob lifecycle: status transitions, parent/child spawning with
duplicate detection, cooperative pause/cancel checks, and aggregation of
child outcomes into parent counters and status.

Aggregation recomputes a parent's counters from its direct children on
every child transition and walks up the ancestor chain. Recomputation is
idempotent, so concurrent child transitions converge on the same counters
without a separately maintained delta.
"""

import logging
from typing import Dict, Iterable, List, Optional, Sequence

from ..config.settings import EngineSettings
from ..core.exceptions import ConditionalCheckFailedError, InvalidTransitionError
from ..core.types import (
    ACTIVE_STATUSES,
    ChildSpec,
    CrawlErrorType,
    CrawlJob,
    CrawlSettings,
    CrawlStatus,
    CrawlType,
    DownloadMode,
    DuplicateVerdict,
    Interruption,
    InterruptionKind,
    ProgressEvent,
    ProgressEventType,
    QueueItem,
    SpawnReport,
    utcnow,
)
from ..discovery.deduplication import DuplicateDetector
from ..discovery.download_mode import select_child_indices
from ..progress.publisher import ProgressPublisher
from ..queue.store import QueueStore
from .job_store import JobStore

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: Dict[CrawlStatus, frozenset] = {
    CrawlStatus.PENDING: frozenset({CrawlStatus.RUNNING, CrawlStatus.CANCELLED}),
    CrawlStatus.RUNNING: frozenset(
        {CrawlStatus.COMPLETED, CrawlStatus.FAILED, CrawlStatus.PAUSED, CrawlStatus.CANCELLED}
    ),
    CrawlStatus.PAUSED: frozenset({CrawlStatus.RUNNING, CrawlStatus.CANCELLED}),
    # Only reachable through retry()
    CrawlStatus.FAILED: frozenset({CrawlStatus.RUNNING}),
    CrawlStatus.COMPLETED: frozenset(),
    CrawlStatus.CANCELLED: frozenset(),
}

_STATUS_EVENTS = {
    CrawlStatus.COMPLETED: ProgressEventType.JOB_COMPLETED,
    CrawlStatus.FAILED: ProgressEventType.JOB_FAILED,
    CrawlStatus.CANCELLED: ProgressEventType.JOB_CANCELLED,
}


class JobStateMachine:
    """
    Lifecycle owner for crawl jobs.

    All status writes go through _transition(), which validates the move
    against ALLOWED_TRANSITIONS and applies it as a compare-and-set on the
    status that was read.
    """

    def __init__(
        self,
        job_store: JobStore,
        queue_store: QueueStore,
        publisher: ProgressPublisher,
        detector: DuplicateDetector,
        settings: EngineSettings,
    ):
        self.job_store = job_store
        self.queue_store = queue_store
        self.publisher = publisher
        self.detector = detector
        self.settings = settings

    # Events

    def _emit(self, job: CrawlJob, event_type: ProgressEventType, message: str, **data) -> None:
        self.publisher.publish(
            ProgressEvent(job_id=job.id, root_id=job.root_id, event_type=event_type, message=message, data=data)
        )

    def _counters(self, job: CrawlJob) -> Dict[str, int]:
        return {
            "total_items": job.total_items,
            "completed_items": job.completed_items,
            "failed_items": job.failed_items,
            "skipped_items": job.skipped_items,
            "bytes_downloaded": job.bytes_downloaded,
        }

    # Transitions

    async def _transition(self, job_id: str, target: CrawlStatus, **changes) -> CrawlJob:
        """
        Move a job to target status.

        Raises:
            JobNotFoundError: If the job doesn't exist
            InvalidTransitionError: If target isn't reachable from the current status
        """
        for _ in range(3):
            job = await self.job_store.require(job_id)
            allowed = ALLOWED_TRANSITIONS[job.status]
            if target not in allowed:
                raise InvalidTransitionError(job_id, job.status, target, allowed)
            try:
                return await self.job_store.update(job_id, expected_status=job.status, status=target, **changes)
            except ConditionalCheckFailedError:
                logger.debug(f"Status of job {job_id} changed concurrently, re-reading")
        job = await self.job_store.require(job_id)
        raise InvalidTransitionError(job_id, job.status, target, ALLOWED_TRANSITIONS[job.status])

    async def _next_epoch(self, job_id: str) -> int:
        items = await self.queue_store.items_for_jobs([job_id])
        return max((item.retry_epoch for item in items), default=-1) + 1

    async def _enqueue(self, job: CrawlJob, epoch: int = 0) -> QueueItem:
        return await self.queue_store.enqueue(
            QueueItem(
                job_id=job.id,
                crawl_type=job.crawl_type,
                admin_id=job.created_by,
                parent_id=job.parent_id,
                priority=job.priority,
                max_retries=self.settings.max_retries,
                retry_epoch=epoch,
                timeout_seconds=float(job.settings.timeout_seconds),
            )
        )

    async def create_job(
        self,
        crawl_type: CrawlType,
        target_url: str,
        download_mode: DownloadMode = DownloadMode.FULL,
        settings: Optional[CrawlSettings] = None,
        created_by: Optional[str] = None,
        target_slug: Optional[str] = None,
        target_name: Optional[str] = None,
        priority: int = 0,
    ) -> CrawlJob:
        """Create a PENDING root job and its first queue item"""
        job = await self.job_store.create(
            CrawlJob(
                crawl_type=crawl_type,
                target_url=target_url,
                target_slug=target_slug,
                target_name=target_name,
                download_mode=download_mode,
                settings=settings or CrawlSettings(),
                created_by=created_by,
                priority=priority,
            )
        )
        await self._enqueue(job)
        logger.info(
            f"Created {crawl_type.value} job {job.id} for {target_url}",
            extra={"job_id": job.id, "download_mode": download_mode.value, "admin_id": created_by},
        )
        self._emit(job, ProgressEventType.JOB_CREATED, f"Crawl job created for {target_url}")
        return job

    async def start(self, job_id: str) -> CrawlJob:
        """
        Mark a job RUNNING when its item is leased.

        Re-leasing a RUNNING job (after reclaim, resume or retry) is a no-op.
        """
        job = await self.job_store.require(job_id)
        if job.status == CrawlStatus.RUNNING:
            return job
        job = await self._transition(job_id, CrawlStatus.RUNNING, started_at=job.started_at or utcnow())
        self._emit(job, ProgressEventType.JOB_STARTED, f"Started crawling {job.target_url}")
        return job

    async def pause(self, job_id: str) -> CrawlJob:
        job = await self._transition(job_id, CrawlStatus.PAUSED)
        logger.info(f"Paused job {job_id} at index {job.last_processed_index}", extra={"job_id": job_id})
        self._emit(job, ProgressEventType.JOB_PAUSED, "Job paused", last_processed_index=job.last_processed_index)
        return job

    async def resume(self, job_id: str) -> CrawlJob:
        """
        PAUSED -> RUNNING.

        Work that was parked while paused gets a fresh queue item: the job
        itself unless its discovery already finished, and every unsettled
        descendant in the same situation without an active item.
        """
        job = await self._transition(job_id, CrawlStatus.RUNNING)
        logger.info(f"Resumed job {job_id} from index {job.last_processed_index + 1}", extra={"job_id": job_id})
        self._emit(job, ProgressEventType.JOB_RESUMED, "Job resumed", resume_index=job.last_processed_index + 1)

        for pending in [job] + await self.job_store.descendants(job_id):
            if pending.status not in ACTIVE_STATUSES or pending.discovery_complete:
                continue
            if await self.queue_store.active_items_for_job(pending.id):
                continue
            await self._enqueue(pending, await self._next_epoch(pending.id))

        if job.discovery_complete:
            await self._aggregate(job.id)
        return await self.job_store.require(job_id)

    async def _cascade_cancel(self, job_id: str) -> List[str]:
        cancelled: List[str] = []
        for descendant in await self.job_store.descendants(job_id):
            if descendant.status not in ACTIVE_STATUSES:
                continue
            try:
                await self._transition(descendant.id, CrawlStatus.CANCELLED, completed_at=utcnow())
                cancelled.append(descendant.id)
            except InvalidTransitionError:
                # Settled concurrently
                continue
        await self.queue_store.skip_for_jobs([job_id] + cancelled, "cancelled")
        return cancelled

    async def cancel(self, job_id: str) -> CrawlJob:
        """
        Cancel a job and every unsettled descendant.

        Waiting queue items are skipped; workers holding PROCESSING items
        observe the cancel at their next interruption check.
        """
        job = await self._transition(job_id, CrawlStatus.CANCELLED, completed_at=utcnow())
        cancelled = await self._cascade_cancel(job_id)
        logger.info(
            f"Cancelled job {job_id} and {len(cancelled)} descendants",
            extra={"job_id": job_id, "descendants_cancelled": len(cancelled)},
        )
        self._emit(job, ProgressEventType.JOB_CANCELLED, "Job cancelled", descendants_cancelled=len(cancelled))
        if job.parent_id:
            await self._aggregate(job.parent_id)
        return job

    async def retry(self, job_id: str) -> CrawlJob:
        """
        FAILED -> RUNNING with a fresh queue item.

        Progress counters and the checkpoint are kept. A job whose discovery
        already finished gets no new item; only its failed children rerun.
        """
        job = await self.job_store.require(job_id)
        job = await self._transition(
            job_id,
            CrawlStatus.RUNNING,
            retry_count=job.retry_count + 1,
            error_message=None,
            error_type=None,
            completed_at=None,
        )
        if not job.discovery_complete:
            await self._enqueue(job, await self._next_epoch(job_id))
        logger.info(f"Retrying job {job_id} (retry {job.retry_count})", extra={"job_id": job_id})
        self._emit(job, ProgressEventType.JOB_STARTED, f"Retry {job.retry_count} started", retry_count=job.retry_count)
        return job

    async def retry_failed(self, job_id: str, indices: Optional[Sequence[int]] = None) -> List[str]:
        """
        Retry a failed job and its failed children.

        Args:
            job_id: Job whose failed work should rerun
            indices: Child indices to retry (every failed child when omitted)

        Returns:
            Ids of the jobs moved back to RUNNING
        """
        job = await self.job_store.require(job_id)
        retried: List[str] = []
        if job.status == CrawlStatus.FAILED:
            await self.retry(job_id)
            retried.append(job_id)

        wanted = set(indices) if indices is not None else None
        for child in await self.job_store.children(job_id):
            if child.status != CrawlStatus.FAILED:
                continue
            if wanted is not None and child.item_index not in wanted:
                continue
            retried.extend(await self.retry_failed(child.id))

        if not retried:
            raise InvalidTransitionError(job_id, job.status, CrawlStatus.RUNNING, ALLOWED_TRANSITIONS[job.status])
        await self._aggregate(job_id)
        return retried

    async def update_settings(self, job_id: str, settings: CrawlSettings) -> CrawlJob:
        """Replace the settings snapshot while the job is PENDING or PAUSED"""
        job = await self.job_store.require(job_id)
        try:
            return await self.job_store.update(
                job_id, expected_status=(CrawlStatus.PENDING, CrawlStatus.PAUSED), settings=settings
            )
        except ConditionalCheckFailedError:
            raise InvalidTransitionError(job_id, job.status, job.status, (CrawlStatus.PENDING, CrawlStatus.PAUSED))

    # Interruption

    async def check_interruption(self, job_id: str, at_index: int = 0) -> Interruption:
        """
        Re-read the persisted status of a job and its ancestors.

        Returns Cancel if any of them was cancelled, Pause(at_index) if any
        was paused, Continue otherwise.
        """
        job = await self.job_store.require(job_id)
        chain = [job] + await self.job_store.ancestors(job)
        if any(current.status == CrawlStatus.CANCELLED for current in chain):
            return Interruption.cancelled(job_id)
        if any(current.status == CrawlStatus.PAUSED for current in chain):
            return Interruption.paused(job_id, at_index)
        return Interruption.proceed()

    # Discovery

    async def spawn_children(self, job_id: str, children: Iterable[ChildSpec]) -> SpawnReport:
        """
        Create the required children of a job in ascending index order.

        Indices at or below the checkpoint, and indices that already have a
        child job, are skipped. Before each index the persisted status is
        re-checked; a pause or cancel stops the iteration and is reported
        in the returned SpawnReport. The checkpoint advances only after a
        child was spawned, linked or deliberately omitted.
        """
        job = await self.job_store.require(job_id)
        child_type = job.crawl_type.child_type
        if child_type is None:
            raise ValueError(f"{job.crawl_type.value} jobs have no children")

        by_index = {spec.index: spec for spec in children}
        existing = {child.item_index for child in await self.job_store.children(job_id)}
        total = max(by_index) + 1 if by_index else 0
        selected = select_child_indices(job.download_mode, total, job.settings, existing)
        redownload = set(job.settings.redownload_items)

        report = SpawnReport()
        for index in selected:
            if index <= job.last_processed_index or index in existing or index not in by_index:
                continue

            interruption = await self.check_interruption(job_id, index)
            if interruption.should_stop:
                report.interruption = interruption
                break

            spec = by_index[index]
            verdict = await self.detector.detect(
                spec.url, child_type, spec.slug, check_content_hash=job.settings.check_content_hash
            )
            if verdict.is_duplicate and index not in redownload:
                if job.download_mode == DownloadMode.UPDATE:
                    report.omitted.append(index)
                else:
                    report.linked.append((await self._link_child(job, spec, child_type, verdict)).id)
            else:
                report.spawned.append((await self._create_child(job, spec, child_type)).id)

            job = await self.job_store.update(job_id, last_processed_index=max(job.last_processed_index, index))

        if report.interruption.kind == InterruptionKind.CANCEL:
            # A child created while the cancel landed must not outlive it
            await self._cascade_cancel(job_id)

        logger.info(
            f"Job {job_id} spawned {len(report.spawned)}, linked {len(report.linked)}, omitted {len(report.omitted)}",
            extra={"job_id": job_id, "interruption": report.interruption.kind.value},
        )
        await self._aggregate(job_id)
        return report

    def _child_job(self, parent: CrawlJob, spec: ChildSpec, child_type: CrawlType, **fields) -> CrawlJob:
        return CrawlJob(
            crawl_type=child_type,
            target_url=spec.url,
            target_slug=spec.slug,
            target_name=spec.name,
            parent_id=parent.id,
            root_id=parent.root_id,
            depth=parent.depth + 1,
            item_index=spec.index,
            settings=parent.settings.for_child(),
            created_by=parent.created_by,
            priority=parent.priority + spec.priority,
            **fields,
        )

    async def _create_child(self, parent: CrawlJob, spec: ChildSpec, child_type: CrawlType) -> CrawlJob:
        child = await self.job_store.create(self._child_job(parent, spec, child_type))
        await self._enqueue(child)
        self._emit(
            parent,
            ProgressEventType.CHILD_CREATED,
            f"Discovered {child_type.value} #{spec.index}",
            child_id=child.id,
            item_index=spec.index,
        )
        return child

    async def _link_child(
        self, parent: CrawlJob, spec: ChildSpec, child_type: CrawlType, verdict: DuplicateVerdict
    ) -> CrawlJob:
        now = utcnow()
        child = await self.job_store.create(
            self._child_job(
                parent,
                spec,
                child_type,
                status=CrawlStatus.COMPLETED,
                linked_ref=verdict.existing_ref,
                discovery_complete=True,
                completed_at=now,
            )
        )
        self._emit(
            parent,
            ProgressEventType.CHILD_CREATED,
            f"Linked {child_type.value} #{spec.index} to existing {verdict.existing_ref}",
            child_id=child.id,
            item_index=spec.index,
            duplicate_type=verdict.duplicate_type.value,
            linked_ref=verdict.existing_ref,
        )
        return child

    async def finish_discovery(self, job_id: str, storage_locator: Optional[str] = None) -> CrawlJob:
        """Mark a job's own work done; it settles once its children have"""
        changes = {"discovery_complete": True}
        if storage_locator:
            changes["storage_locator"] = storage_locator
        await self.job_store.update(job_id, **changes)
        await self._aggregate(job_id)
        return await self.job_store.require(job_id)

    # Outcomes

    async def complete_job(
        self, job_id: str, bytes_downloaded: int = 0, storage_locator: Optional[str] = None
    ) -> CrawlJob:
        """Settle a leaf job as COMPLETED"""
        job = await self._transition(
            job_id,
            CrawlStatus.COMPLETED,
            discovery_complete=True,
            bytes_downloaded=bytes_downloaded,
            storage_locator=storage_locator,
            completed_at=utcnow(),
        )
        await self._on_settled(job)
        return job

    async def link_duplicate(self, job_id: str, verdict: DuplicateVerdict) -> CrawlJob:
        """Settle a job whose target already exists, without new work"""
        job = await self._transition(
            job_id,
            CrawlStatus.COMPLETED,
            discovery_complete=True,
            linked_ref=verdict.existing_ref,
            completed_at=utcnow(),
        )
        await self._on_settled(job)
        return job

    async def fail_job(
        self, job_id: str, error_message: str, error_type: Optional[CrawlErrorType] = None
    ) -> CrawlJob:
        job = await self._transition(
            job_id, CrawlStatus.FAILED, error_message=error_message, error_type=error_type, completed_at=utcnow()
        )
        await self._on_settled(job)
        return job

    async def _on_settled(self, job: CrawlJob) -> None:
        if job.status == CrawlStatus.COMPLETED and not job.is_linked:
            await self.detector.register(job.id, job.target_url, job.crawl_type, job.target_slug)

        if job.crawl_type == CrawlType.IMAGE:
            if job.status == CrawlStatus.COMPLETED:
                self._emit(job, ProgressEventType.IMAGE_DOWNLOADED, "Image downloaded", bytes=job.bytes_downloaded)
            elif job.status == CrawlStatus.FAILED:
                self._emit(job, ProgressEventType.IMAGE_FAILED, job.error_message or "Image failed")

        self._emit(job, _STATUS_EVENTS[job.status], f"Job {job.status.value}", **self._counters(job))
        log_method = logger.warning if job.status == CrawlStatus.FAILED else logger.info
        log_method(
            f"Job {job.id} {job.status.value}",
            extra={"job_id": job.id, "crawl_type": job.crawl_type.value, **self._counters(job)},
        )
        if job.parent_id:
            await self._aggregate(job.parent_id)

    # Aggregation

    @staticmethod
    def _settled_status(children: List[CrawlJob]) -> Optional[CrawlStatus]:
        """
        Status a parent settles in once discovery is complete, or None while
        any child is unsettled.

        Partial success is COMPLETED with failed_items > 0.
        """
        if any(not child.status.is_settled for child in children):
            return None
        statuses = {child.status for child in children}
        if not children or CrawlStatus.COMPLETED in statuses:
            return CrawlStatus.COMPLETED
        if CrawlStatus.FAILED in statuses:
            return CrawlStatus.FAILED
        return CrawlStatus.CANCELLED

    async def _aggregate(self, job_id: str) -> None:
        """Recompute counters from direct children, settle if done, and continue upward"""
        current_id: Optional[str] = job_id
        while current_id is not None:
            parent = await self.job_store.get(current_id)
            if parent is None:
                return

            children = await self.job_store.children(current_id)
            counters = {
                "total_items": len(children),
                "completed_items": sum(
                    1 for child in children if child.status == CrawlStatus.COMPLETED and not child.is_linked
                ),
                "failed_items": sum(1 for child in children if child.status == CrawlStatus.FAILED),
                "skipped_items": sum(1 for child in children if child.is_linked),
                "bytes_downloaded": sum(child.bytes_downloaded for child in children),
            }
            target = self._settled_status(children)

            if parent.status == CrawlStatus.RUNNING and parent.discovery_complete and target is not None:
                try:
                    settled = await self.job_store.update(
                        current_id, expected_status=CrawlStatus.RUNNING, status=target, completed_at=utcnow(), **counters
                    )
                except ConditionalCheckFailedError:
                    # Another transition won; keep its status and refresh counters only
                    await self.job_store.update(current_id, **counters)
                else:
                    await self._on_settled(settled)
                    return
            else:
                parent = await self.job_store.update(current_id, **counters)
                self._emit(
                    parent,
                    ProgressEventType.PROGRESS_UPDATE,
                    f"{counters['completed_items'] + counters['skipped_items']}/{counters['total_items']} done",
                    **counters,
                )
            current_id = parent.parent_id
