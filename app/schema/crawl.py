from __future__ import annotations

from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from ..crawl_engine.core.types import CrawlJob, CrawlSettings, CrawlType, DownloadMode, QueueItem


class CreateJobRequest(BaseModel):
    crawl_type: CrawlType
    target_url: str = Field(..., min_length=1)
    download_mode: Optional[DownloadMode] = Field(None, description="Omit to pick a mode from existing content")
    settings: CrawlSettings = Field(default_factory=CrawlSettings)
    created_by: Optional[str] = None
    target_slug: Optional[str] = None
    target_name: Optional[str] = None
    priority: int = 0


class RetryRequest(BaseModel):
    indices: Optional[List[int]] = Field(None, description="Child item indices to retry (all failed when omitted)")


class RetryResponse(BaseModel):
    job_id: str
    retried: List[str] = Field(default_factory=list)


class JobResponse(BaseModel):
    job: CrawlJob


class QueueSnapshot(BaseModel):
    items: List[QueueItem] = Field(default_factory=list)
    counts: Dict[str, int] = Field(default_factory=dict)
