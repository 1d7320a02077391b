"""
Hierarchical crawl-job engine.

Discovers categories, comics, chapters and images as a tree of crawl jobs
backed by a leasable queue, with pause/cancel/resume/retry at any level.
"""

from .config.settings import EngineSettings, load_settings
from .engine import CrawlEngine, create_engine

__version__ = "0.1.0"

__all__ = ["CrawlEngine", "EngineSettings", "create_engine", "load_settings"]
