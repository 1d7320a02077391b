"""Type processors invoked by the dispatcher."""

from .base import CrawlProcessor, ProcessContext, ProcessorRegistry
from .image import ImageDownloadProcessor

__all__ = ["CrawlProcessor", "ImageDownloadProcessor", "ProcessContext", "ProcessorRegistry"]
