"""
Crawl dispatcher.

Leases batches from the queue store under the per-admin and per-server
ceilings, runs the processor for each item's CrawlType, and routes the
outcome back into the job state machine and the queue store.
"""

import asyncio
import logging
import time
from collections import Counter
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, List, Optional, Set
from uuid import uuid4

from ..config.settings import EngineSettings
from ..core.exceptions import CrawlException, InvalidTransitionError, LeaseNotHeldError, ParseError
from ..core.types import (
    CrawlJob,
    ErrorAction,
    Interruption,
    InterruptionKind,
    OutcomeKind,
    QueueItem,
    QueueStatus,
)
from ..http_client.client import CrawlHTTPClient
from ..processors.base import ProcessContext, ProcessorRegistry
from ..queue.store import QueueStore
from ..state.state_machine import JobStateMachine
from ..storage.artifacts import ArtifactStorage
from .error_handler import CrawlErrorClassifier
from .notifier import AdminNotifier, LoggingNotifier

logger = logging.getLogger(__name__)


class DispatcherStats(dict[str, Any]):
    """Extended dict for dispatcher statistics"""

    def __init__(self):
        super().__init__(
            {
                "started_at": datetime.now(timezone.utc),
                "polls": 0,
                "items_leased": 0,
                "items_reclaimed": 0,
                "leases_lost": 0,
                "processing_time_total": 0.0,
                "outcomes": {},
                "errors_by_type": {},
                "escalations": 0,
            }
        )

    def record_outcome(self, outcome: str, processing_time: float):
        self["outcomes"][outcome] = self["outcomes"].get(outcome, 0) + 1
        self["processing_time_total"] += processing_time

    def record_error(self, error_type: str):
        self["errors_by_type"][error_type] = self["errors_by_type"].get(error_type, 0) + 1

    def get_summary(self) -> Dict[str, Any]:
        uptime = datetime.now(timezone.utc) - self["started_at"]
        processed = sum(self["outcomes"].values())
        return {
            "uptime_seconds": uptime.total_seconds(),
            "polls": self["polls"],
            "items_leased": self["items_leased"],
            "items_reclaimed": self["items_reclaimed"],
            "items_processed": processed,
            "leases_lost": self["leases_lost"],
            "average_processing_time": self["processing_time_total"] / max(1, processed),
            "outcomes": dict(self["outcomes"]),
            "errors_by_type": dict(self["errors_by_type"]),
            "escalations": self["escalations"],
        }


class CrawlDispatcher:
    """
    Scheduler/dispatcher for crawl queue items.

    Each leased item is processed independently under a worker semaphore;
    children of one parent additionally share a semaphore sized to the
    parent's parallel_limit.
    """

    def __init__(
        self,
        settings: EngineSettings,
        state_machine: JobStateMachine,
        queue_store: QueueStore,
        registry: ProcessorRegistry,
        classifier: Optional[CrawlErrorClassifier] = None,
        notifier: Optional[AdminNotifier] = None,
        http_client: Optional[CrawlHTTPClient] = None,
        storage: Optional[ArtifactStorage] = None,
        worker_id: Optional[str] = None,
    ):
        self.settings = settings
        self.state_machine = state_machine
        self.job_store = state_machine.job_store
        self.queue_store = queue_store
        self.registry = registry
        self.classifier = classifier or CrawlErrorClassifier.from_settings(settings)
        self.notifier = notifier or LoggingNotifier()
        self.http_client = http_client
        self.storage = storage
        self.worker_id = worker_id or settings.worker_id or f"dispatcher-{uuid4().hex[:8]}"

        self.worker_semaphore = asyncio.Semaphore(settings.max_workers)
        self._parent_slots: Dict[str, List[Any]] = {}
        self._lease_lock = asyncio.Lock()
        self._in_flight: Dict[str, QueueItem] = {}
        self._tasks: Set[asyncio.Task] = set()

        self._shutdown_requested = False
        self._main_task: Optional[asyncio.Task] = None
        self._heartbeat_task: Optional[asyncio.Task] = None

        self.stats = DispatcherStats()

        logger.info(
            f"Initialized dispatcher {self.worker_id} (ceiling_mode={settings.ceiling_mode})",
            extra={"worker_id": self.worker_id},
        )

    # Leasing

    async def poll_once(self) -> List[QueueItem]:
        """Reclaim expired leases, then lease as many items as capacity and ceilings allow"""
        self.stats["polls"] += 1
        reclaimed = await self.queue_store.reclaim_expired()
        self.stats["items_reclaimed"] += len(reclaimed)

        capacity = self.settings.max_workers - len(self._in_flight)
        max_items = min(self.settings.batch_size, capacity)
        if max_items <= 0:
            return []

        async with self._lease_lock:
            if self.settings.ceiling_mode == "persisted":
                items = await self.queue_store.lease_batch(
                    self.worker_id,
                    max_items,
                    self.settings.lease_timeout_seconds,
                    per_admin_limit=self.settings.per_admin_limit,
                    global_limit=self.settings.per_server_limit,
                )
            else:
                items = await self._lease_in_process(max_items)

            for item in items:
                self._in_flight[item.id] = item

        self.stats["items_leased"] += len(items)
        if items:
            logger.debug(f"Leased {len(items)} items", extra={"worker_id": self.worker_id})
        return items

    async def _lease_in_process(self, max_items: int) -> List[QueueItem]:
        """Enforce the ceilings with this process's own in-flight counts"""
        budget = min(max_items, self.settings.per_server_limit - len(self._in_flight))
        if budget <= 0:
            return []

        admin_counts = Counter(item.admin_id or "" for item in self._in_flight.values())
        accepted: List[QueueItem] = []
        for item in await self.queue_store.lease_batch(self.worker_id, budget, self.settings.lease_timeout_seconds):
            admin = item.admin_id or ""
            if admin_counts[admin] >= self.settings.per_admin_limit:
                await self.queue_store.release(item.id, self.worker_id)
                continue
            admin_counts[admin] += 1
            accepted.append(item)
        return accepted

    @asynccontextmanager
    async def _parent_slot(self, job: CrawlJob) -> AsyncIterator[None]:
        if job.parent_id is None:
            yield
            return

        slot = self._parent_slots.get(job.parent_id)
        if slot is None:
            slot = self._parent_slots[job.parent_id] = [asyncio.Semaphore(job.settings.parallel_limit), 0]
        slot[1] += 1
        try:
            async with slot[0]:
                yield
        finally:
            slot[1] -= 1
            if slot[1] == 0:
                self._parent_slots.pop(job.parent_id, None)

    # Processing

    async def process_item(self, item: QueueItem) -> str:
        """
        Process one leased item and settle it.

        Returns:
            Outcome label (completed, linked, discovered, retried, failed,
            skipped, parked, released or cancelled)
        """
        job = await self.job_store.get(item.job_id)
        if job is None or job.is_deleted:
            await self.queue_store.skip(item.id, "job deleted")
            return "skipped"
        if job.status.is_settled:
            await self.queue_store.skip(item.id, f"job {job.status.value}")
            return "skipped"

        interruption = await self.state_machine.check_interruption(job.id, job.last_processed_index + 1)
        if interruption.kind == InterruptionKind.CANCEL:
            await self.queue_store.skip(item.id, "cancelled")
            return "cancelled"
        if interruption.kind == InterruptionKind.PAUSE:
            # Parked; resume() enqueues a fresh item
            await self.queue_store.skip(item.id, "paused")
            return "parked"

        job = await self.state_machine.start(job.id)
        try:
            return await self._invoke(item, job)
        except CrawlException as e:
            return await self._handle_interruption(item, e.to_interruption())
        except InvalidTransitionError as e:
            # The job was settled underneath us (cancelled, typically)
            logger.info(f"Job {job.id} moved to {e.current.value} while processing", extra={"job_id": job.id})
            await self.queue_store.skip(item.id, f"job {e.current.value}")
            return "skipped"
        except LeaseNotHeldError as e:
            self.stats["leases_lost"] += 1
            logger.warning(f"Lost lease on item {item.id}: {e}", extra={"item_id": item.id, "job_id": job.id})
            return "lease_lost"
        except asyncio.CancelledError:
            raise
        except Exception as e:
            return await self._handle_error(item, job, e)

    async def _invoke(self, item: QueueItem, job: CrawlJob) -> str:
        processor = self.registry.get(job.crawl_type)
        if processor is None:
            raise ParseError(f"No processor registered for {job.crawl_type.value}")

        context = ProcessContext(
            job, self.state_machine, self.http_client, self.storage, timeout_seconds=item.timeout_seconds
        )
        async with self._parent_slot(job):
            outcome = await asyncio.wait_for(processor.process(job, context), timeout=context.timeout_seconds)

        if outcome.kind == OutcomeKind.ERROR:
            return await self._handle_error(item, job, outcome.error or ParseError("Processor reported an error"))

        if outcome.kind == OutcomeKind.DUPLICATE and outcome.verdict is not None:
            await self.state_machine.link_duplicate(job.id, outcome.verdict)
            await self.queue_store.complete(item.id, self.worker_id)
            return "linked"

        if job.crawl_type.child_type is None:
            await self.state_machine.complete_job(job.id, outcome.bytes_downloaded, outcome.storage_locator)
            await self.queue_store.complete(item.id, self.worker_id)
            return "completed"

        report = await self.state_machine.spawn_children(job.id, outcome.children)
        if report.interruption.should_stop:
            return await self._handle_interruption(item, report.interruption)

        await self.state_machine.finish_discovery(job.id, outcome.storage_locator)
        await self.queue_store.complete(item.id, self.worker_id)
        return "discovered"

    async def _handle_interruption(self, item: QueueItem, interruption: Interruption) -> str:
        """Pause releases the item without penalty; cancel skips it"""
        logger.info(
            f"Item {item.id} interrupted ({interruption.kind.value}) at index {interruption.at_index}",
            extra={"item_id": item.id, "job_id": item.job_id},
        )
        if interruption.kind == InterruptionKind.PAUSE:
            await self.queue_store.release(item.id, self.worker_id)
            return "released"
        await self.queue_store.skip(item.id, "cancelled")
        return "cancelled"

    async def _handle_error(self, item: QueueItem, job: CrawlJob, error: BaseException) -> str:
        verdict = self.classifier.classify(error, item.retry_count)
        self.stats.record_error(verdict.error_type.value)

        next_timeout = None
        if verdict.timeout_multiplier > 1.0:
            current = item.timeout_seconds or float(job.settings.timeout_seconds)
            next_timeout = min(current * verdict.timeout_multiplier, self.settings.max_timeout_seconds)

        updated = await self.queue_store.fail(item.id, verdict, str(error), self.worker_id, next_timeout)
        context = {
            "job_id": job.id,
            "item_id": item.id,
            "error_type": verdict.error_type.value,
            "action": verdict.action.value,
            "retry_count": updated.retry_count,
        }

        if not verdict.is_terminal:
            logger.warning(
                f"Retrying item {item.id} after {verdict.error_type.value} in {verdict.delay_seconds:.1f}s",
                extra=context,
            )
            return "retried"

        if verdict.action == ErrorAction.SKIP_LOG:
            logger.error(f"Structural failure for {job.target_url}: {error}", extra=context, exc_info=error)
        else:
            logger.warning(f"Item {item.id} settled as {updated.status.value}: {verdict.reason}", extra=context)

        try:
            await self.state_machine.fail_job(job.id, verdict.reason or str(error), verdict.error_type)
        except InvalidTransitionError as e:
            logger.info(f"Job {job.id} already {e.current.value}, not marking failed", extra=context)

        if verdict.action == ErrorAction.SKIP_NOTIFY_ADMIN:
            self.stats["escalations"] += 1
            await self.notifier.notify(
                job.created_by,
                f"{job.crawl_type.value} job {job.id} needs attention: {verdict.reason}",
                escalated=verdict.escalated,
                **context,
            )
        return "failed" if updated.status == QueueStatus.FAILED else "skipped"

    async def _run_item(self, item: QueueItem) -> None:
        start_time = time.time()
        try:
            async with self.worker_semaphore:
                outcome = await self.process_item(item)
            self.stats.record_outcome(outcome, time.time() - start_time)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Error processing item {item.id}: {e}", extra={"item_id": item.id}, exc_info=True)
            self.stats.record_error("dispatch_error")
        finally:
            self._in_flight.pop(item.id, None)

    def _spawn(self, item: QueueItem) -> None:
        task = asyncio.create_task(self._run_item(item), name=f"crawl-item-{item.id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # Loops

    async def run_until_idle(self, max_rounds: int = 1000) -> int:
        """
        Lease and process until nothing is leasable.

        Items delayed into the future are left alone. Returns the number of
        items processed.
        """
        processed = 0
        for _ in range(max_rounds):
            items = await self.poll_once()
            if not items:
                break
            await asyncio.gather(*(self._run_item(item) for item in items))
            processed += len(items)
        return processed

    async def heartbeat_once(self) -> int:
        """Renew the leases of in-flight items; returns how many were renewed"""
        renewed = 0
        for item_id in list(self._in_flight):
            if await self.queue_store.renew_lease(item_id, self.worker_id, self.settings.lease_timeout_seconds):
                renewed += 1
            else:
                logger.warning(f"Could not renew lease on item {item_id}", extra={"item_id": item_id})
        return renewed

    async def _heartbeat_loop(self) -> None:
        while not self._shutdown_requested:
            await asyncio.sleep(self.settings.lease_renew_interval_seconds)
            try:
                await self.heartbeat_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Lease heartbeat failed: {e}")

    async def run(self) -> None:
        """Main dispatch loop; runs until shutdown is requested"""
        logger.info(f"Starting dispatch loop for {self.worker_id}", extra={"worker_id": self.worker_id})
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop(), name="lease-heartbeat")

        try:
            while not self._shutdown_requested:
                try:
                    items = await self.poll_once()
                    for item in items:
                        self._spawn(item)
                    await asyncio.sleep(0.1 if items else self.settings.poll_interval_seconds)
                except asyncio.CancelledError:
                    logger.info("Dispatch loop cancelled, shutting down...")
                    break
                except Exception as e:
                    logger.error(f"Error in dispatch loop: {e}")
                    self.stats.record_error("main_loop_error")
                    await asyncio.sleep(self.settings.poll_interval_seconds)
        finally:
            logger.info(f"Dispatch loop for {self.worker_id} stopped")

    async def shutdown(self) -> None:
        """Stop leasing, cancel in-flight work and hand held items back to the queue"""
        logger.info(f"Shutting down dispatcher {self.worker_id}...")
        self._shutdown_requested = True

        for task in [self._main_task, self._heartbeat_task, *self._tasks]:
            if task is not None and not task.done():
                task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        if self._heartbeat_task is not None:
            await asyncio.gather(self._heartbeat_task, return_exceptions=True)

        for item_id in list(self._in_flight):
            try:
                await self.queue_store.release(item_id, self.worker_id)
            except LeaseNotHeldError:
                continue
        self._in_flight.clear()

        if self.http_client is not None:
            await self.http_client.close()
        logger.info(f"Dispatcher {self.worker_id} shutdown complete")

    def get_stats(self) -> Dict[str, Any]:
        return {
            "worker_id": self.worker_id,
            "in_flight": len(self._in_flight),
            **self.stats.get_summary(),
            "classifier_policy": {key.value: value.value for key, value in self.classifier.policy.items()},
        }

    @property
    def in_flight(self) -> Dict[str, QueueItem]:
        return dict(self._in_flight)
