"""
Progress event fan-out.

publish() never blocks and never raises: events go onto a bounded queue and a
background task hands them to subscribers. A full queue drops the event and
a failing subscriber is logged; neither reaches the crawl pipeline.
"""

import asyncio
import logging
from collections import OrderedDict, deque
from typing import Awaitable, Callable, Deque, Dict, List, Optional, Tuple
from uuid import uuid4

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from ..core.types import ProgressEvent

logger = logging.getLogger(__name__)

ProgressSubscriber = Callable[[ProgressEvent], Awaitable[None]]


class ProgressPublisher:
    """
    Best-effort publisher of job progress events.

    Subscribers register for one job tree (matching either the event's job id
    or its root id) or for every event. A bounded history per job backs
    status queries; only the most recently active history_jobs jobs keep one.
    """

    def __init__(self, queue_size: int = 1000, history_size: int = 50, history_jobs: int = 1000):
        self.history_size = history_size
        self.history_jobs = history_jobs
        self._queue: "asyncio.Queue[ProgressEvent]" = asyncio.Queue(maxsize=queue_size)
        self._subscribers: Dict[str, Tuple[Optional[str], ProgressSubscriber]] = {}
        self._history: "OrderedDict[str, Deque[ProgressEvent]]" = OrderedDict()
        self._task: Optional[asyncio.Task] = None

        self.stats = {"published": 0, "delivered": 0, "dropped": 0, "subscriber_errors": 0}

    def subscribe(self, callback: ProgressSubscriber, job_id: Optional[str] = None) -> str:
        """Register a subscriber and return a token for unsubscribe()"""
        token = str(uuid4())
        self._subscribers[token] = (job_id, callback)
        return token

    def unsubscribe(self, token: str) -> None:
        self._subscribers.pop(token, None)

    def publish(self, event: ProgressEvent) -> bool:
        """
        Queue an event for delivery.

        Returns:
            False if the event was dropped
        """
        try:
            if self.history_size > 0 and self.history_jobs > 0:
                self._record(event)
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.stats["dropped"] += 1
            logger.warning(
                f"Progress queue full, dropping {event.event_type.value} for job {event.job_id}",
                extra={"job_id": event.job_id, "event_type": event.event_type.value},
            )
            return False
        except Exception as e:
            self.stats["dropped"] += 1
            logger.error(f"Failed to publish progress event: {e}", extra={"job_id": event.job_id})
            return False

        self.stats["published"] += 1
        return True

    def _record(self, event: ProgressEvent) -> None:
        events = self._history.get(event.job_id)
        if events is None:
            events = self._history[event.job_id] = deque(maxlen=self.history_size)
            while len(self._history) > self.history_jobs:
                self._history.popitem(last=False)
        else:
            self._history.move_to_end(event.job_id)
        events.append(event)

    def history(self, job_id: str, limit: Optional[int] = None) -> List[ProgressEvent]:
        events = list(self._history.get(job_id, ()))
        return events[-limit:] if limit else events

    def _matching(self, event: ProgressEvent) -> List[ProgressSubscriber]:
        return [
            callback
            for job_id, callback in list(self._subscribers.values())
            if job_id is None or job_id in (event.job_id, event.root_id)
        ]

    async def _deliver(self, event: ProgressEvent) -> None:
        for callback in self._matching(event):
            try:
                await callback(event)
                self.stats["delivered"] += 1
            except Exception as e:
                self.stats["subscriber_errors"] += 1
                logger.warning(
                    f"Progress subscriber failed for {event.event_type.value}: {e}",
                    extra={"job_id": event.job_id, "event_type": event.event_type.value},
                )

    async def _run(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self._deliver(event)
            finally:
                self._queue.task_done()

    async def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run(), name="progress-publisher")
            logger.info("Progress publisher started")

    async def flush(self) -> None:
        """Wait until every queued event has been handed to subscribers"""
        if self._task is not None and not self._task.done():
            await self._queue.join()
            return
        while not self._queue.empty():
            event = self._queue.get_nowait()
            try:
                await self._deliver(event)
            finally:
                self._queue.task_done()

    async def stop(self) -> None:
        await self.flush()
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            logger.info("Progress publisher stopped")

    def get_stats(self) -> Dict[str, int]:
        return {
            **self.stats,
            "queued": self._queue.qsize(),
            "subscribers": len(self._subscribers),
            "tracked_jobs": len(self._history),
        }


class RedisProgressSink:
    """
    Subscriber forwarding events to Redis pub/sub.

    Each event goes to `{prefix}:{job_id}` and, for child jobs, also to
    `{prefix}:{root_id}` so a client can follow a whole tree.
    """

    def __init__(self, redis_client: aioredis.Redis, channel_prefix: str = "crawl:progress"):
        self.redis_client = redis_client
        self.channel_prefix = channel_prefix

    @classmethod
    def from_url(cls, redis_url: str, channel_prefix: str = "crawl:progress") -> "RedisProgressSink":
        return cls(aioredis.from_url(redis_url), channel_prefix)

    def channel(self, job_id: str) -> str:
        return f"{self.channel_prefix}:{job_id}"

    async def __call__(self, event: ProgressEvent) -> None:
        payload = event.model_dump_json()
        try:
            await self.redis_client.publish(self.channel(event.job_id), payload)
            if event.root_id and event.root_id != event.job_id:
                await self.redis_client.publish(self.channel(event.root_id), payload)
        except RedisError as e:
            # Surfaced to the publisher, which logs and counts it
            raise ConnectionError(f"Redis publish failed: {e}") from e

    async def close(self) -> None:
        await self.redis_client.aclose()
