"""Progress events: persisted to the event log and fanned out over Redis pub/sub."""
import json
import logging
from typing import Any, Dict, Optional
from uuid import UUID

import redis
from sqlalchemy.orm import Session

from app.config import get_settings
from app.models.progress_event import UploadProgressEvent

logger = logging.getLogger(__name__)


def channel_name(job_id) -> str:
    return f"upload:{job_id}"


def record_progress_event(
    db: Session,
    job_id: UUID,
    event_type: str,
    event_data: Optional[Dict[str, Any]] = None,
    current_progress: int = 0,
    message: Optional[str] = None,
) -> UploadProgressEvent:
    """
    Add a progress event to the session; the caller commits it.

    Args:
        db: Database session
        job_id: Upload job ID
        event_type: Event name (e.g. "chunk_uploaded", "batch_completed")
        event_data: Extra event payload
        current_progress: Progress percentage at the time of the event
        message: Human readable message
    """
    event = UploadProgressEvent(
        upload_job_id=job_id,
        event_type=event_type,
        event_data=event_data or {},
        current_progress=current_progress,
        total_progress=100,
        message=message or f"{event_type} completed",
    )
    db.add(event)
    return event


def publish_progress(job_id, status: str, **payload: Any) -> None:
    """
    Publish progress to Redis pub/sub for real-time SSE streaming.

    Args:
        job_id: Upload job ID
        status: Current job status
        **payload: Extra fields (progress, counts, error)
    """
    settings = get_settings()
    if not settings.progress_pubsub_enabled:
        return

    try:
        redis_client = redis.Redis.from_url(settings.redis_url, decode_responses=True)
        message = {"job_id": str(job_id), "status": status, **payload}
        redis_client.publish(channel_name(job_id), json.dumps(message, default=str))
        redis_client.close()
    except redis.RedisError as e:
        # Don't fail the import if Redis is unavailable
        logger.warning(f"⚠️ Failed to publish progress for job {job_id}: {e}")
