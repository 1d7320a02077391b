from .client import CrawlHTTPClient, FetchResult

__all__ = ["CrawlHTTPClient", "FetchResult"]
