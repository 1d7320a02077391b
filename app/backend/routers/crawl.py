"""
Crawl control API router.
"""

import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, WebSocket, WebSocketDisconnect

from ...crawl_engine.core.types import (
    CrawlJob,
    CrawlSettings,
    CrawlType,
    JobStatusView,
    ProgressEvent,
    QueueFilter,
    QueueStatus,
)
from ...crawl_engine.engine import CrawlEngine
from ...schema.crawl import CreateJobRequest, JobResponse, QueueSnapshot, RetryRequest, RetryResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/crawl", tags=["crawl"])


def get_engine(request: Request) -> CrawlEngine:
    """Get the engine attached by the application lifespan."""
    engine: Optional[CrawlEngine] = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(status_code=503, detail="Crawl engine not initialized")
    return engine


@router.post("/jobs", response_model=JobResponse, status_code=201)
async def create_job(body: CreateJobRequest, engine: CrawlEngine = Depends(get_engine)) -> JobResponse:
    """
    Create a root crawl job and queue it.

    Without a download mode the target is checked against known content and
    an already-crawled target is refreshed in UPDATE mode.
    """
    job = await engine.control.create_job(
        body.crawl_type,
        body.target_url,
        download_mode=body.download_mode,
        settings=body.settings,
        created_by=body.created_by,
        target_slug=body.target_slug,
        target_name=body.target_name,
        priority=body.priority,
    )
    return JobResponse(job=job)


@router.get("/jobs/{job_id}", response_model=JobStatusView)
async def get_job(job_id: str, engine: CrawlEngine = Depends(get_engine)) -> JobStatusView:
    return await engine.control.get_status(job_id)


@router.post("/jobs/{job_id}/pause", response_model=JobResponse)
async def pause_job(job_id: str, engine: CrawlEngine = Depends(get_engine)) -> JobResponse:
    return JobResponse(job=await engine.control.pause(job_id))


@router.post("/jobs/{job_id}/resume", response_model=JobResponse)
async def resume_job(job_id: str, engine: CrawlEngine = Depends(get_engine)) -> JobResponse:
    return JobResponse(job=await engine.control.resume(job_id))


@router.post("/jobs/{job_id}/cancel", response_model=JobResponse)
async def cancel_job(job_id: str, engine: CrawlEngine = Depends(get_engine)) -> JobResponse:
    """Cancel a job and every unsettled descendant."""
    return JobResponse(job=await engine.control.cancel(job_id))


@router.post("/jobs/{job_id}/retry", response_model=RetryResponse)
async def retry_job(
    job_id: str, body: Optional[RetryRequest] = None, engine: CrawlEngine = Depends(get_engine)
) -> RetryResponse:
    """Retry a failed job, or only the failed children at the given indices."""
    indices = body.indices if body is not None else None
    retried = await engine.control.retry_failed(job_id, indices)
    return RetryResponse(job_id=job_id, retried=retried)


@router.patch("/jobs/{job_id}/settings", response_model=JobResponse)
async def update_settings(
    job_id: str, settings: CrawlSettings, engine: CrawlEngine = Depends(get_engine)
) -> JobResponse:
    return JobResponse(job=await engine.control.update_settings(job_id, settings))


@router.delete("/jobs/{job_id}", response_model=JobResponse)
async def delete_job(job_id: str, engine: CrawlEngine = Depends(get_engine)) -> JobResponse:
    return JobResponse(job=await engine.control.delete_job(job_id))


@router.post("/jobs/{job_id}/restore", response_model=JobResponse)
async def restore_job(job_id: str, engine: CrawlEngine = Depends(get_engine)) -> JobResponse:
    return JobResponse(job=await engine.control.restore_job(job_id))


@router.get("/queue", response_model=QueueSnapshot)
async def list_queue(
    status: Optional[QueueStatus] = Query(None, description="Filter by queue status"),
    job_id: Optional[str] = Query(None, description="Filter by job"),
    admin_id: Optional[str] = Query(None, description="Filter by requesting admin"),
    crawl_type: Optional[CrawlType] = Query(None, description="Filter by crawl type"),
    limit: int = Query(100, ge=1, le=1000),
    engine: CrawlEngine = Depends(get_engine),
) -> QueueSnapshot:
    query = QueueFilter(status=status, job_id=job_id, admin_id=admin_id, crawl_type=crawl_type, limit=limit)
    return QueueSnapshot(
        items=await engine.control.list_queue(query),
        counts=await engine.control.queue_counts(),
    )


@router.websocket("/jobs/{job_id}/events")
async def job_events(websocket: WebSocket, job_id: str) -> None:
    """
    Stream progress events for a job tree.

    Recent events for the job are replayed first, then new events for the job
    and, when it is a root, for its whole tree.
    """
    engine: Optional[CrawlEngine] = getattr(websocket.app.state, "engine", None)
    if engine is None:
        await websocket.close(code=1011)
        return

    job: Optional[CrawlJob] = await engine.job_store.get(job_id)
    if job is None:
        await websocket.close(code=1008)
        return

    await websocket.accept()
    events: "asyncio.Queue[ProgressEvent]" = asyncio.Queue(maxsize=engine.settings.progress_queue_size)

    async def forward(event: ProgressEvent) -> None:
        if not events.full():
            events.put_nowait(event)

    async def pump() -> None:
        for event in engine.publisher.history(job_id):
            await websocket.send_json(event.model_dump(mode="json"))
        while True:
            event = await events.get()
            await websocket.send_json(event.model_dump(mode="json"))

    token = engine.publisher.subscribe(forward, job_id=job_id)
    sender = asyncio.create_task(pump())
    try:
        # Incoming messages are ignored; receiving surfaces the disconnect
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.debug(f"Event stream closed for job {job_id}", extra={"job_id": job_id})
    finally:
        engine.publisher.unsubscribe(token)
        sender.cancel()
