"""Chunked upload API endpoints."""
import json
import logging
from typing import Optional
from uuid import UUID

import redis
import redis.asyncio as aioredis
from fastapi import APIRouter, Depends, Header, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import StreamingResponse

from app.api.dependencies import WorkspaceContext, get_upload_manager, get_workspace_context
from app.config import get_settings
from app.models.upload_job import TERMINAL_STATUSES
from app.schemas.upload import (
    CancelResponse,
    ChunkUploadResponse,
    ImportResultResponse,
    ProcessingStatsResponse,
    ProcessRequest,
    ProcessResponse,
    RetryChunksResponse,
    UploadCreateRequest,
    UploadCreateResponse,
    UploadJobResponse,
    UploadProgressResponse,
)
from app.services.progress import channel_name
from app.services.upload_service import UploadJobManager
from app.services.webhook_service import trigger_webhooks

router = APIRouter(prefix="/api/upload", tags=["upload"])

settings = get_settings()
logger = logging.getLogger(__name__)


@router.post("/create", response_model=UploadCreateResponse, status_code=201)
def create_upload(
    request: UploadCreateRequest,
    context: WorkspaceContext = Depends(get_workspace_context),
    manager: UploadJobManager = Depends(get_upload_manager),
):
    """
    Create an upload job.

    Returns the job plus one upload URL per chunk. The client sends every
    chunk, then calls /process.
    """
    logger.info(f"📁 Creating upload: filename={request.filename}, size={request.file_size}")
    created = manager.create_job(
        workspace_id=context.workspace_id,
        user_id=context.user_id,
        filename=request.filename,
        file_size=request.file_size,
        file_type=request.file_type,
        upload_type=request.upload_type,
        chunk_size=request.chunk_size,
        validation_rules=request.validation_rules,
        processing_config=request.processing_config,
    )
    return UploadCreateResponse(
        upload_job=UploadJobResponse.model_validate(created.job),
        upload_url=created.upload_url,
        chunk_urls=created.chunk_urls,
    )


@router.post("/{job_id}/chunk/{chunk_index}", response_model=ChunkUploadResponse)
async def upload_chunk(
    job_id: UUID,
    chunk_index: int,
    request: Request,
    x_chunk_hash: Optional[str] = Header(None),
    manager: UploadJobManager = Depends(get_upload_manager),
):
    """
    Upload one chunk as the raw request body.

    An optional X-Chunk-Hash header carries the sha256 of the body; a
    mismatch fails the chunk.
    """
    data = await request.body()
    progress = await run_in_threadpool(
        manager.record_chunk_uploaded, job_id, chunk_index, data, x_chunk_hash
    )
    return ChunkUploadResponse.model_validate(progress)


@router.post("/{job_id}/process", response_model=ProcessResponse, status_code=202)
def start_processing(
    job_id: UUID,
    request: Optional[ProcessRequest] = None,
    manager: UploadJobManager = Depends(get_upload_manager),
):
    """Build batches and queue the job; poll /progress or /stream for updates."""
    batch_size = request.batch_size if request else None
    handle = manager.start_processing(job_id, batch_size)
    return ProcessResponse.model_validate(handle)


@router.get("/{job_id}", response_model=UploadJobResponse)
def get_upload(job_id: UUID, manager: UploadJobManager = Depends(get_upload_manager)):
    return manager.get_job(job_id)


@router.get("/{job_id}/progress", response_model=UploadProgressResponse)
def get_upload_progress(job_id: UUID, manager: UploadJobManager = Depends(get_upload_manager)):
    """
    Get upload job progress.

    This endpoint is used for polling-based progress tracking
    as a fallback when Server-Sent Events (SSE) are not available.
    """
    return UploadProgressResponse.model_validate(manager.get_progress(job_id))


@router.get("/{job_id}/stats", response_model=ProcessingStatsResponse)
def get_processing_stats(job_id: UUID, manager: UploadJobManager = Depends(get_upload_manager)):
    stats = manager.get_processing_stats(job_id)
    result = manager.get_import_result(job_id)
    return ProcessingStatsResponse(
        upload_job_id=stats.upload_job_id,
        total_batches=stats.total_batches,
        pending_batches=stats.pending_batches,
        processing_batches=stats.processing_batches,
        completed_batches=stats.completed_batches,
        failed_batches=stats.failed_batches,
        cancelled_batches=stats.cancelled_batches,
        total_records=stats.total_records,
        processed_records=stats.processed_records,
        valid_records=stats.valid_records,
        invalid_records=stats.invalid_records,
        processing_rate=stats.processing_rate,
        estimated_completion=stats.estimated_completion,
        import_result=ImportResultResponse.model_validate(result),
    )


@router.post("/{job_id}/cancel", response_model=CancelResponse)
async def cancel_upload(job_id: UUID, manager: UploadJobManager = Depends(get_upload_manager)):
    """Cancel an upload. Cancelling a finished job is a no-op."""
    cancelled = await run_in_threadpool(manager.cancel, job_id)
    job = manager.get_job(job_id)

    if cancelled:
        await trigger_webhooks(
            "import.cancelled",
            job.workspace_id,
            {"event": "import.cancelled", "data": {"job_id": str(job.id), "filename": job.filename}},
            manager.db,
        )

    return CancelResponse(upload_job_id=job.id, status=job.status, cancelled=cancelled)


@router.post("/{job_id}/retry", response_model=RetryChunksResponse)
def retry_failed_chunks(job_id: UUID, manager: UploadJobManager = Depends(get_upload_manager)):
    """Reset failed chunks to pending so the client can upload them again."""
    reset = manager.reset_failed_chunks(job_id)
    return RetryChunksResponse(upload_job_id=job_id, reset_chunks=reset)


@router.get("/{job_id}/stream")
async def stream_progress(job_id: UUID, manager: UploadJobManager = Depends(get_upload_manager)):
    """
    Server-Sent Events (SSE) endpoint for real-time progress streaming.

    Sends the current state first, then relays every message published on
    the job's Redis channel until the job completes, fails or is cancelled.
    """
    progress = manager.get_progress(job_id)
    snapshot = UploadProgressResponse.model_validate(progress).model_dump(mode="json")

    async def event_generator():
        yield f"data: {json.dumps(snapshot)}\n\n"
        if progress.status in TERMINAL_STATUSES:
            return

        redis_client = aioredis.Redis.from_url(settings.redis_url, decode_responses=True)
        pubsub = redis_client.pubsub()
        await pubsub.subscribe(channel_name(job_id))

        try:
            while True:
                message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
                if message is None:
                    continue

                data = json.loads(message["data"])
                yield f"data: {json.dumps(data)}\n\n"

                # Close connection when job is done
                if data.get("status") in TERMINAL_STATUSES:
                    break

        except redis.RedisError as e:
            logger.warning(f"⚠️ SSE stream error for job {job_id}: {e}")
            yield f"data: {json.dumps({'status': 'error', 'error': 'Stream error'})}\n\n"

        finally:
            await pubsub.unsubscribe(channel_name(job_id))
            await redis_client.aclose()

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
        },
    )
