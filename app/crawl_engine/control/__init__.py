from .service import CrawlControlService

__all__ = ["CrawlControlService"]
