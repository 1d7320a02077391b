"""
HTTP client for crawl processors.

Fetches bytes with aiohttp and maps transport failures and HTTP statuses to
the typed CrawlError subclasses the error classifier understands.
"""

import asyncio
import hashlib
import logging
import time
from typing import Dict, Optional

import aiohttp
from aiohttp import ClientError, ClientTimeout, TCPConnector
from pydantic import BaseModel

from ..config.settings import EngineSettings
from ..core.exceptions import (
    AuthRequiredError,
    BlockedError,
    CaptchaRequiredError,
    CrawlTimeoutError,
    NetworkError,
    NotFoundError,
    ParseError,
    RateLimitedError,
)

logger = logging.getLogger(__name__)

_CAPTCHA_MARKERS = ("captcha", "recaptcha", "verify you are human", "cf-challenge")


class FetchResult(BaseModel):
    url: str
    status_code: int
    content: bytes
    content_type: Optional[str] = None
    response_time: float = 0.0


class CrawlHTTPClient:
    """
    aiohttp session wrapper used by processors and the duplicate detector.
    """

    def __init__(self, settings: EngineSettings):
        self.settings = settings
        self._session: Optional[aiohttp.ClientSession] = None
        self._session_created_at = 0.0

        self.stats = {
            "requests_made": 0,
            "requests_successful": 0,
            "requests_failed": 0,
            "bytes_downloaded": 0,
            "total_response_time": 0.0,
        }

    async def _ensure_session(self) -> aiohttp.ClientSession:
        # Recreate session every 30 minutes to prevent connection staleness
        if self._session is None or time.time() - self._session_created_at > 1800:
            if self._session:
                await self._session.close()

            connector = TCPConnector(
                limit=self.settings.max_workers * 4,
                ttl_dns_cache=300,
                use_dns_cache=True,
                keepalive_timeout=30,
                enable_cleanup_closed=True,
            )
            self._session = aiohttp.ClientSession(
                connector=connector,
                timeout=ClientTimeout(total=self.settings.request_timeout, connect=10),
                headers={"User-Agent": self.settings.user_agent, "Accept-Encoding": "gzip, deflate"},
                raise_for_status=False,
            )
            self._session_created_at = time.time()
            logger.debug("Created new HTTP session")

        return self._session

    async def close(self) -> None:
        if self._session:
            await self._session.close()
            self._session = None
        logger.info("HTTP client closed")

    def _raise_for_status(self, url: str, status: int, headers, body: str) -> None:
        if status < 400:
            return
        lowered = body.lower()
        if status == 404 or status == 410:
            raise NotFoundError(f"HTTP {status} for {url}", response_body=body)
        if status == 429:
            retry_after = headers.get("Retry-After")
            raise RateLimitedError(
                f"HTTP 429 for {url}",
                retry_after=float(retry_after) if retry_after and retry_after.isdigit() else None,
                response_body=body,
            )
        if any(marker in lowered for marker in _CAPTCHA_MARKERS):
            raise CaptchaRequiredError(f"Captcha challenge at {url}", response_body=body)
        if status in (401, 407):
            raise AuthRequiredError(f"HTTP {status} for {url}", response_body=body)
        if status == 403:
            raise BlockedError(f"HTTP 403 for {url}", response_body=body)
        if status >= 500:
            raise NetworkError(f"HTTP {status} for {url}", response_body=body)
        raise ParseError(f"Unexpected HTTP {status} for {url}", response_body=body)

    async def fetch(
        self, url: str, headers: Optional[Dict[str, str]] = None, timeout_seconds: Optional[float] = None
    ) -> FetchResult:
        """
        Fetch a URL.

        Raises:
            CrawlError: A typed subclass describing the failure
        """
        session = await self._ensure_session()
        timeout = ClientTimeout(total=timeout_seconds) if timeout_seconds else None
        start_time = time.time()
        self.stats["requests_made"] += 1

        try:
            async with session.get(url, headers=headers, timeout=timeout) as response:
                declared = response.content_length
                if declared is not None and declared > self.settings.max_content_length:
                    raise ParseError(
                        f"Content too large: {declared} bytes > {self.settings.max_content_length} bytes for {url}"
                    )
                content = await response.read()
                if response.status >= 400:
                    self._raise_for_status(
                        url, response.status, response.headers, content.decode("utf-8", errors="replace")
                    )
                result = FetchResult(
                    url=str(response.url),
                    status_code=response.status,
                    content=content,
                    content_type=response.headers.get("Content-Type"),
                    response_time=time.time() - start_time,
                )
        except asyncio.TimeoutError as e:
            self.stats["requests_failed"] += 1
            raise CrawlTimeoutError(f"Request to {url} timed out", original_error=e) from e
        except ClientError as e:
            self.stats["requests_failed"] += 1
            raise NetworkError(f"Request to {url} failed: {e}", original_error=e) from e
        except Exception:
            self.stats["requests_failed"] += 1
            raise

        self.stats["requests_successful"] += 1
        self.stats["bytes_downloaded"] += len(result.content)
        self.stats["total_response_time"] += result.response_time
        return result

    async def fetch_digest(self, url: str) -> Optional[str]:
        """sha256 of the body at url, for content-hash duplicate checks"""
        result = await self.fetch(url)
        return hashlib.sha256(result.content).hexdigest() if result.content else None

    def get_stats(self) -> Dict[str, float]:
        stats = dict(self.stats)
        if stats["requests_successful"]:
            stats["average_response_time"] = stats["total_response_time"] / stats["requests_successful"]
        return stats
