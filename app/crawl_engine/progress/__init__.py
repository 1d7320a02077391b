"""Progress event publishing for crawl jobs."""

from .publisher import ProgressPublisher, ProgressSubscriber, RedisProgressSink

__all__ = ["ProgressPublisher", "ProgressSubscriber", "RedisProgressSink"]
