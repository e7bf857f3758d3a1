"""
FastAPI routes for the product video pipeline.

Job Endpoints:
  POST /jobs                  — Create a pending job record
  GET  /jobs/{id}             — Read a job record
  GET  /jobs/{id}/events      — Server-sent events, one per persisted change

Video Endpoints:
  POST /videos/generate       — Run the pipeline for a pending job (wait=false → background)
"""

import asyncio
import logging

from fastapi import APIRouter, HTTPException, Query, Request
from fastapi.responses import JSONResponse, StreamingResponse

from .errors import JobConflictError, JobNotFoundError
from .models import (
    CreateJobRequest,
    GenerateVideoRequest,
    GenerateVideoResponse,
    JobStatus,
    VideoJob,
    VideoJobInputs,
)
from .orchestrator import VideoGenerationService

logger = logging.getLogger(__name__)


def _service(request: Request) -> VideoGenerationService:
    return request.app.state.service


def _inputs(body: VideoJobInputs) -> VideoJobInputs:
    return VideoJobInputs(
        listing_id=body.listing_id,
        product_title=body.product_title,
        product_description=body.product_description,
        product_tags=body.product_tags,
        source_image_url=body.source_image_url,
    )


# ═════════════════════════════════════════════════════════════════════════════
# Job Router — read / subscribe to job records
# ═════════════════════════════════════════════════════════════════════════════

job_router = APIRouter(prefix="/jobs", tags=["jobs"])


@job_router.post("", response_model=VideoJob, status_code=201)
async def create_job(body: CreateJobRequest, request: Request):
    try:
        return await _service(request).create_job(body.owner, _inputs(body), job_id=body.job_id)
    except JobConflictError as e:
        raise HTTPException(status_code=409, detail=str(e))


@job_router.get("/{job_id}", response_model=VideoJob)
async def get_job(job_id: str, request: Request):
    try:
        return await _service(request).get_job(job_id)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail="Job not found")


# Seconds without a notification before the record is re-read; writers in
# other processes do not reach this process's listeners
EVENTS_REFRESH_SECONDS = 15.0


@job_router.get("/{job_id}/events")
async def job_events(job_id: str, request: Request):
    """
    Stream the job record as SSE: the current state first, then every change
    until terminal. Between notifications the record is re-read every
    EVENTS_REFRESH_SECONDS; an unchanged record sends a keep-alive comment.
    """
    service = _service(request)
    queue: asyncio.Queue[VideoJob] = asyncio.Queue()
    unsubscribe = service.store.subscribe(job_id, queue.put_nowait)

    try:
        job = await service.get_job(job_id)
    except JobNotFoundError:
        unsubscribe()
        raise HTTPException(status_code=404, detail="Job not found")

    async def _stream(current: VideoJob):
        try:
            yield f"data: {current.model_dump_json()}\n\n"
            while not current.status.is_terminal:
                try:
                    latest = await asyncio.wait_for(queue.get(), EVENTS_REFRESH_SECONDS)
                except asyncio.TimeoutError:
                    if await request.is_disconnected():
                        logger.info(f"[{job_id}] event stream client disconnected")
                        return
                    latest = await service.get_job(job_id)
                if latest == current:
                    yield ": keep-alive\n\n"
                    continue
                current = latest
                yield f"data: {current.model_dump_json()}\n\n"
        finally:
            unsubscribe()

    return StreamingResponse(_stream(job), media_type="text/event-stream")


# ═════════════════════════════════════════════════════════════════════════════
# Video Router — trigger contract
# ═════════════════════════════════════════════════════════════════════════════

video_router = APIRouter(prefix="/videos", tags=["videos"])


@video_router.post("/generate", response_model=GenerateVideoResponse)
async def generate_video(
    body: GenerateVideoRequest,
    request: Request,
    wait: bool = Query(True, description="Block until the job reaches a terminal state"),
):
    service = _service(request)
    inputs = _inputs(body)
    logger.info(f"Starting video generation: job={body.job_id}, listing={body.listing_id}")

    if not wait:
        try:
            job = await service.get_job(body.job_id)
        except JobNotFoundError:
            raise HTTPException(status_code=404, detail="Job not found")
        if job.status != JobStatus.PENDING:
            raise HTTPException(status_code=409, detail=f"Job is already {job.status.value}")
        service.run_background(body.job_id, inputs)
        return JSONResponse(
            status_code=202,
            content=GenerateVideoResponse(
                success=True, job_id=body.job_id, status=JobStatus.PENDING
            ).model_dump(mode="json"),
        )

    try:
        result = await service.run(body.job_id, inputs)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail="Job not found")
    except JobConflictError as e:
        raise HTTPException(status_code=409, detail=str(e))

    if not result.success:
        return JSONResponse(status_code=500, content={"error": result.error, "job_id": result.job_id})

    return GenerateVideoResponse(
        success=True,
        job_id=result.job_id,
        video_url=result.video_url,
        status=JobStatus.COMPLETED,
    )
