"""
Image download processor.
"""

import logging
import mimetypes
from urllib.parse import urlparse

from ..core.exceptions import ParseError
from ..core.types import CrawlJob, CrawlType, ProcessOutcome
from .base import CrawlProcessor, ProcessContext

logger = logging.getLogger(__name__)


class ImageDownloadProcessor(CrawlProcessor):
    """Fetches an IMAGE job's target and stores it as an artifact"""

    crawl_type = CrawlType.IMAGE

    @staticmethod
    def artifact_path(job: CrawlJob, content_type: str = "") -> str:
        filename = urlparse(job.target_url).path.rsplit("/", 1)[-1]
        suffix = "." + filename.rsplit(".", 1)[-1].lower() if "." in filename else ""
        if not suffix and content_type:
            suffix = mimetypes.guess_extension(content_type.split(";")[0].strip()) or ""
        index = job.item_index if job.item_index is not None else 0
        return f"{job.root_id}/{job.parent_id or job.id}/{index:04d}{suffix}"

    async def process(self, job: CrawlJob, context: ProcessContext) -> ProcessOutcome:
        if context.http_client is None or context.storage is None:
            raise ParseError("Image processing requires an HTTP client and artifact storage")

        result = await context.http_client.fetch(
            job.target_url, headers=job.settings.custom_headers or None, timeout_seconds=context.timeout_seconds
        )
        if not result.content:
            raise ParseError(f"Empty image body at {job.target_url}")

        content_type = result.content_type or "application/octet-stream"
        locator = await context.storage.store(self.artifact_path(job, content_type), result.content, content_type)
        logger.debug(
            f"Stored image {job.id} ({len(result.content)} bytes)",
            extra={"job_id": job.id, "locator": locator},
        )
        return ProcessOutcome.success(bytes_downloaded=len(result.content), storage_locator=locator)
