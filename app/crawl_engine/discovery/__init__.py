"""
Discovery-time decisions: duplicate detection and child selection per download mode.
"""

from .deduplication import ContentIndex, DuplicateDetector, InMemoryContentIndex, RedisContentIndex
from .download_mode import select_child_indices, suggest_mode

__all__ = [
    "ContentIndex",
    "DuplicateDetector",
    "InMemoryContentIndex",
    "RedisContentIndex",
    "select_child_indices",
    "suggest_mode",
]
