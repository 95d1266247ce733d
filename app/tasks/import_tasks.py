"""Celery tasks for lead import processing and upload cleanup."""
import asyncio
import logging
from uuid import UUID

from app.config import get_settings
from app.database import SessionLocal, utcnow
from app.models.upload_job import UploadJob
from app.services.batch_processor import BatchProcessor
from app.services.chunk_store import ChunkStore
from app.services.progress import publish_progress
from app.services.upload_service import UploadJobManager
from app.services.webhook_service import trigger_webhooks
from app.tasks.celery_app import celery_app

settings = get_settings()
logger = logging.getLogger(__name__)


def _notify(event_type: str, job: UploadJob, data: dict, db) -> None:
    asyncio.run(
        trigger_webhooks(
            event_type,
            job.workspace_id,
            {"event": event_type, "data": {"job_id": str(job.id), "filename": job.filename, **data}},
            db,
        )
    )


@celery_app.task(bind=True)
def process_upload_job(self, job_id: str, is_retry: bool = False) -> dict:
    """
    Run the batch processor for one upload job.
    This runs in Celery worker, NOT in web request context.

    A run that leaves failed batches with retries remaining re-queues
    itself with a countdown of retry_count * retry_backoff_seconds.

    Args:
        self: Celery task instance
        job_id: Upload job ID
        is_retry: True when re-running the failed batches of a job

    Returns:
        Dict with job status and counts
    """
    logger.info(f"🚀 Starting lead import task: job_id={job_id}, is_retry={is_retry}")

    job_uuid = UUID(job_id)
    processor = BatchProcessor(SessionLocal, settings)

    if is_retry and not processor.prepare_retry(job_uuid):
        logger.info(f"⏭️ Job {job_id} is no longer retryable, skipping")
        return {"status": "skipped", "job_id": job_id}

    db = SessionLocal()
    try:
        job = db.get(UploadJob, job_uuid)
        if not job:
            logger.error(f"❌ Job not found in database: {job_id}")
            raise ValueError(f"Job {job_id} not found")

        if not is_retry:
            _notify("import.started", job, {"total_records": job.total_records}, db)

        outcome = processor.run_job(job_uuid)

        db.expire_all()
        job = db.get(UploadJob, job_uuid)

        if outcome.retry_delay is not None:
            self.apply_async(args=[job_id], kwargs={"is_retry": True}, countdown=outcome.retry_delay)
            logger.info(f"🔁 Re-queued job {job_id} in {outcome.retry_delay}s")
        elif outcome.status == "completed":
            _notify(
                "import.completed",
                job,
                {
                    "total_records": job.total_records,
                    "valid_records": job.valid_records,
                    "invalid_records": job.invalid_records,
                    "created": outcome.result.created,
                    "updated": outcome.result.updated,
                    "skipped": outcome.result.skipped,
                },
                db,
            )
        elif outcome.status == "failed":
            _notify("import.failed", job, {"error": job.error_message}, db)

        result = {
            "status": outcome.status,
            "job_id": job_id,
            "total_records": job.total_records,
            "valid_records": job.valid_records,
            "invalid_records": job.invalid_records,
            "created": outcome.result.created,
            "updated": outcome.result.updated,
            "skipped": outcome.result.skipped,
            "retry_delay": outcome.retry_delay,
        }
        logger.info(f"🎉 Task finished: {result}")
        return result

    except Exception as e:
        logger.error(f"💥 Task failed for job {job_id}: {str(e)}", exc_info=True)

        db.rollback()
        job = db.get(UploadJob, job_uuid)
        if job and job.status == "processing":
            job.status = "failed"
            job.error_message = str(e)
            job.completed_at = utcnow()
            db.commit()
            logger.info(f"📊 Job marked as failed in database: {job_id}")
            publish_progress(job_uuid, "failed", error=str(e))
            _notify("import.failed", job, {"error": str(e)}, db)
        raise

    finally:
        db.close()


@celery_app.task
def cleanup_expired_uploads() -> dict:
    """Delete upload jobs past their retention window. Scheduled by Celery beat."""
    db = SessionLocal()
    try:
        removed = UploadJobManager(db, ChunkStore(settings.upload_dir), settings=settings).cleanup_expired()
        return {"removed": removed}
    finally:
        db.close()
