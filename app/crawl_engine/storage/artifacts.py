"""
Artifact storage for downloaded crawl content.

store(path, data) returns an opaque locator recorded on the job;
delete(locator) removes the artifact again during retention cleanup.
"""

import asyncio
import hashlib
import logging
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from ..config.settings import EngineSettings
from ..utils.retry import STORAGE_RETRY_CONFIG, AsyncRetrier, RetryError

logger = logging.getLogger(__name__)


class StorageError(Exception):
    """Base exception for artifact storage operations"""

    pass


class ArtifactStorage(ABC):
    """Storage backend for downloaded artifacts"""

    @abstractmethod
    async def store(self, path: str, data: bytes, content_type: str = "application/octet-stream") -> str: ...

    @abstractmethod
    async def delete(self, locator: str) -> bool: ...

    def get_stats(self) -> Dict[str, Any]:
        return dict(getattr(self, "stats", {}))


class LocalArtifactStorage(ArtifactStorage):
    """Stores artifacts under a local directory; locators are file:// paths"""

    def __init__(self, base_dir: Path):
        self.base_dir = Path(base_dir)
        self.stats = {"stored": 0, "deleted": 0, "bytes_stored": 0}

    async def store(self, path: str, data: bytes, content_type: str = "application/octet-stream") -> str:
        target = self.base_dir / path.lstrip("/")
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)
        self.stats["stored"] += 1
        self.stats["bytes_stored"] += len(data)
        return f"file://{target.resolve()}"

    async def delete(self, locator: str) -> bool:
        target = Path(locator.removeprefix("file://"))
        if not target.exists():
            return False
        target.unlink()
        self.stats["deleted"] += 1
        return True


class S3ArtifactStorage(ArtifactStorage):
    """
    S3 artifact storage.

    boto3 is synchronous, so calls run in the default executor. Locators are
    s3://bucket/key URIs.
    """

    def __init__(self, settings: EngineSettings, bucket: Optional[str] = None):
        self.settings = settings
        self.bucket = bucket or settings.artifact_bucket
        if not self.bucket:
            raise StorageError("An artifact bucket is required for S3 storage")
        self._client: Optional[Any] = None
        self._session_created_at = 0.0
        self.retrier = AsyncRetrier(STORAGE_RETRY_CONFIG)

        self.stats = {
            "uploads_attempted": 0,
            "uploads_successful": 0,
            "uploads_failed": 0,
            "bytes_uploaded": 0,
            "deleted": 0,
        }

    def _ensure_client(self) -> Any:
        # Recreate the client every hour to prevent credential staleness
        if self._client is None or time.time() - self._session_created_at > 3600:
            if self.settings.localstack_endpoint:
                self._client = boto3.client(  # type: ignore
                    "s3",
                    endpoint_url=self.settings.localstack_endpoint,
                    aws_access_key_id=self.settings.aws_access_key_id,
                    aws_secret_access_key=self.settings.aws_secret_access_key,
                    region_name=self.settings.aws_region,
                )
            else:
                self._client = boto3.client("s3", region_name=self.settings.aws_region)  # type: ignore
            self._session_created_at = time.time()
            logger.debug("Created new S3 client")
        return self._client

    async def store(self, path: str, data: bytes, content_type: str = "application/octet-stream") -> str:
        key = path.lstrip("/")
        self.stats["uploads_attempted"] += 1

        def _upload():
            return self._ensure_client().put_object(
                Bucket=self.bucket,
                Key=key,
                Body=data,
                ContentType=content_type,
                Metadata={"content-hash": hashlib.sha256(data).hexdigest()},
            )

        loop = asyncio.get_running_loop()

        async def put_object():
            return await loop.run_in_executor(None, _upload)

        try:
            await self.retrier.call(put_object, (ClientError, BotoCoreError))
        except RetryError as e:
            self.stats["uploads_failed"] += 1
            logger.error(f"Failed to upload s3://{self.bucket}/{key}: {e.last_exception}")
            raise StorageError(f"S3 upload failed for {key}: {e.last_exception}") from e.last_exception

        self.stats["uploads_successful"] += 1
        self.stats["bytes_uploaded"] += len(data)
        return f"s3://{self.bucket}/{key}"

    async def delete(self, locator: str) -> bool:
        bucket, _, key = locator.removeprefix("s3://").partition("/")

        def _delete():
            self._ensure_client().delete_object(Bucket=bucket, Key=key)

        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, _delete)
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in ("NoSuchKey", "404"):
                return False
            raise StorageError(f"S3 delete failed for {locator}: {e}") from e
        self.stats["deleted"] += 1
        return True


def create_artifact_storage(settings: EngineSettings) -> ArtifactStorage:
    """S3 when a bucket is configured, the local directory otherwise"""
    if settings.artifact_bucket:
        return S3ArtifactStorage(settings)
    return LocalArtifactStorage(settings.artifact_dir)
