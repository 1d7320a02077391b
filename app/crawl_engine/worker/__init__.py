"""
Crawl worker: error classification, admin notification and the dispatcher.

Run with `python -m app.crawl_engine.worker run`.
"""

from .dispatcher import CrawlDispatcher, DispatcherStats
from .error_handler import CrawlErrorClassifier, detect_error_type
from .notifier import AdminNotifier, LoggingNotifier

__all__ = [
    "AdminNotifier",
    "CrawlDispatcher",
    "CrawlErrorClassifier",
    "DispatcherStats",
    "LoggingNotifier",
    "detect_error_type",
]
