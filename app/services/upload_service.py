"""Upload job lifecycle: job creation, chunk tracking, processing hand-off, cancel and cleanup."""
import hashlib
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
from uuid import UUID

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.config import ALLOWED_FILE_TYPES, KB, MB, Settings, get_settings
from app.database import utcnow
from app.exceptions import (
    Cancelled,
    ChunksIncomplete,
    ChunkUploadFailed,
    FileTooLarge,
    InsufficientPermissions,
    InvalidChunkSize,
    InvalidFileType,
    NetworkError,
    ProcessingFailed,
    QuotaExceeded,
    UnknownError,
    UploadError,
    UploadNotFound,
    ValidationFailed,
)
from app.models.processing_batch import ProcessingBatch
from app.models.progress_event import UploadProgressEvent
from app.models.upload_chunk import UploadChunk
from app.models.upload_job import ACTIVE_STATUSES, UploadJob
from app.models.validated_row import ValidatedRow
from app.services.batch_builder import BatchBuilder
from app.services.batch_processor import summarize_job
from app.services.chunk_store import ChunkStore
from app.services.lead_importer import ImportResult
from app.services.progress import publish_progress, record_progress_event

logger = logging.getLogger(__name__)

DEFAULT_VALIDATION_RULES = {
    "required_fields": ["email"],
    "duplicate_handling": "skip",
}

STEP_BY_STATUS = {
    "pending": "uploading_chunks",
    "uploading": "ready_for_processing",
    "processing": "processing_batches",
    "completed": "completed",
    "failed": "failed",
    "cancelled": "cancelled",
}


@dataclass(slots=True)
class CreatedUpload:
    job: UploadJob
    upload_url: str
    chunk_urls: List[str]


@dataclass(slots=True)
class ChunkProgress:
    chunk_id: UUID
    upload_progress: int
    total_progress: float
    next_chunk_url: Optional[str] = None


@dataclass(slots=True)
class ProcessingHandle:
    processing_job_id: UUID
    estimated_completion: datetime
    total_batches: int


@dataclass(slots=True)
class UploadProgress:
    upload_job_id: UUID
    filename: str
    file_size: int
    upload_progress: int
    processing_progress: int
    total_progress: float
    total_chunks: int
    uploaded_chunks: int
    status: str
    current_step: str
    error_message: Optional[str] = None


@dataclass(slots=True)
class ProcessingStats:
    upload_job_id: UUID
    total_batches: int
    pending_batches: int
    processing_batches: int
    completed_batches: int
    failed_batches: int
    cancelled_batches: int
    total_records: int
    processed_records: int
    valid_records: int
    invalid_records: int
    processing_rate: float
    estimated_completion: Optional[datetime]


def default_chunk_size(file_size: int, max_chunk_size: int) -> int:
    """Size-tiered chunk size: small files get smaller chunks."""
    if file_size < 10 * MB:
        size = 512 * KB
    elif file_size < 50 * MB:
        size = 1 * MB
    else:
        size = 2 * MB
    return min(size, max_chunk_size)


def total_progress(upload_progress: int, processing_progress: int) -> float:
    return round(upload_progress * 0.3 + processing_progress * 0.7, 2)


class UploadJobManager:
    """
    Owns the upload job lifecycle.

    When ``workspace_id`` is given every job lookup is scoped to it: a job of
    another workspace raises InsufficientPermissions.
    """

    def __init__(
        self,
        db: Session,
        chunk_store: ChunkStore,
        scheduler=None,
        settings: Optional[Settings] = None,
        workspace_id: Optional[UUID] = None,
    ):
        self.db = db
        self.chunk_store = chunk_store
        self.scheduler = scheduler
        self.settings = settings or get_settings()
        self.workspace_id = workspace_id

    def get_job(self, job_id: UUID) -> UploadJob:
        job = self.db.get(UploadJob, job_id)
        if job is None:
            raise UploadNotFound(f"Upload job {job_id} not found")
        if self.workspace_id is not None and job.workspace_id != self.workspace_id:
            raise InsufficientPermissions("Upload job belongs to another workspace")
        return job

    def _job_lock_query(self, job_id: UUID):
        return self.db.query(UploadJob).filter(UploadJob.id == job_id).with_for_update()

    def _lock_job(self, job: UploadJob) -> UploadJob:
        """Take the job row lock so concurrent chunk writers count progress in turn."""
        return self._job_lock_query(job.id).populate_existing().one()

    def create_job(
        self,
        workspace_id: UUID,
        user_id: UUID,
        filename: str,
        file_size: int,
        file_type: str,
        upload_type: str = "leads_import",
        chunk_size: Optional[int] = None,
        validation_rules: Optional[Dict[str, Any]] = None,
        processing_config: Optional[Dict[str, Any]] = None,
    ) -> CreatedUpload:
        """
        Create an upload job and one pending chunk row per chunk index.

        Raises:
            ValidationFailed: file_size is not positive
            FileTooLarge: file_size exceeds max_file_size
            InvalidFileType: file_type not allowed for upload_type
            InvalidChunkSize: caller chunk size outside the allowed range
            QuotaExceeded: owner already has too many active uploads
        """
        settings = self.settings

        if file_size <= 0:
            raise ValidationFailed("File size must be greater than zero")
        if file_size > settings.max_file_size:
            raise FileTooLarge(
                f"File size {file_size} exceeds maximum of {settings.max_file_size} bytes",
                {"file_size": file_size, "max_file_size": settings.max_file_size},
            )

        allowed = ALLOWED_FILE_TYPES.get(upload_type)
        if allowed is None or file_type not in allowed:
            raise InvalidFileType(
                f"File type {file_type} is not allowed for {upload_type}",
                {"allowed_types": allowed or []},
            )

        if chunk_size is not None:
            if not settings.min_chunk_size <= chunk_size <= settings.max_chunk_size:
                raise InvalidChunkSize(
                    f"Chunk size must be between {settings.min_chunk_size} "
                    f"and {settings.max_chunk_size} bytes"
                )
        else:
            chunk_size = default_chunk_size(file_size, settings.max_chunk_size)

        active_uploads = (
            self.db.query(func.count(UploadJob.id))
            .filter(UploadJob.user_id == user_id, UploadJob.status.in_(ACTIVE_STATUSES))
            .scalar()
        )
        if active_uploads >= settings.max_concurrent_uploads:
            raise QuotaExceeded(
                f"Maximum of {settings.max_concurrent_uploads} concurrent uploads reached"
            )

        total_chunks = math.ceil(file_size / chunk_size)
        now = utcnow()
        job = UploadJob(
            workspace_id=workspace_id,
            user_id=user_id,
            filename=filename,
            file_size=file_size,
            file_type=file_type,
            chunk_size=chunk_size,
            total_chunks=total_chunks,
            upload_type=upload_type,
            status="pending",
            upload_progress=0,
            processing_progress=0,
            max_retries=settings.max_retries,
            validation_rules={**DEFAULT_VALIDATION_RULES, **(validation_rules or {})},
            processing_config=dict(processing_config or {}),
            created_at=now,
            expires_at=now + timedelta(hours=settings.retention_hours),
        )
        self.db.add(job)
        self.db.flush()

        job.storage_path = str(self.chunk_store.job_dir(job.id))
        remainder = file_size - chunk_size * (total_chunks - 1)
        self.db.add_all(
            UploadChunk(
                upload_job_id=job.id,
                chunk_index=index,
                chunk_size=chunk_size if index < total_chunks - 1 else remainder,
                status="pending",
            )
            for index in range(total_chunks)
        )
        self.db.commit()
        self.db.refresh(job)

        logger.info(
            f"🆕 Created upload job {job.id}: filename={filename}, size={file_size}, "
            f"chunks={total_chunks}x{chunk_size}"
        )

        upload_url = f"/api/upload/{job.id}"
        return CreatedUpload(
            job=job,
            upload_url=upload_url,
            chunk_urls=[f"{upload_url}/chunk/{index}" for index in range(total_chunks)],
        )

    def record_chunk_uploaded(
        self,
        job_id: UUID,
        chunk_index: int,
        data: bytes,
        chunk_hash: Optional[str] = None,
    ) -> ChunkProgress:
        """
        Store one chunk and update the job's upload progress.

        Raises:
            ProcessingFailed: job no longer accepts chunks
            UploadNotFound: chunk index does not exist
            InvalidChunkSize: empty chunk or larger than the job chunk size
            ChunkUploadFailed: hash mismatch or storage failure
        """
        job = self.get_job(job_id)
        job = self._lock_job(job)
        if job.status not in ("pending", "uploading"):
            raise ProcessingFailed(f"Job {job_id} does not accept chunks (status={job.status})")

        chunk = (
            self.db.query(UploadChunk)
            .filter(UploadChunk.upload_job_id == job.id, UploadChunk.chunk_index == chunk_index)
            .first()
        )
        if chunk is None:
            raise UploadNotFound(f"Chunk {chunk_index} not found for job {job_id}")

        if not data:
            raise InvalidChunkSize("Chunk data is empty")
        if len(data) > job.chunk_size:
            raise InvalidChunkSize(
                f"Chunk of {len(data)} bytes exceeds job chunk size {job.chunk_size}"
            )

        digest = hashlib.sha256(data).hexdigest()

        try:
            if chunk_hash and chunk_hash.lower() != digest:
                raise ChunkUploadFailed(
                    f"Chunk {chunk_index} hash mismatch",
                    {"expected": chunk_hash, "actual": digest},
                )
            storage_path = self.chunk_store.write_chunk(job.id, chunk_index, data)
        except UploadError as e:
            self._mark_chunk_failed(job, chunk, e.message)
            if isinstance(e, ChunkUploadFailed):
                raise
            raise ChunkUploadFailed(e.message) from e

        chunk.status = "uploaded"
        chunk.chunk_hash = digest
        chunk.storage_path = storage_path
        chunk.error_message = None
        chunk.uploaded_at = utcnow()
        self.db.flush()

        uploaded = self._refresh_upload_progress(job)
        job.status = "uploading" if job.upload_progress == 100 else "pending"

        record_progress_event(
            self.db,
            job.id,
            "chunk_uploaded",
            {"chunk_index": chunk_index, "uploaded_chunks": uploaded},
            current_progress=job.upload_progress,
            message=f"Chunk {chunk_index + 1}/{job.total_chunks} uploaded",
        )
        self.db.commit()
        publish_progress(job.id, job.status, upload_progress=job.upload_progress)

        logger.debug(f"📥 Job {job.id} chunk {chunk_index} uploaded ({job.upload_progress}%)")

        next_chunk_url = None
        if chunk_index + 1 < job.total_chunks:
            next_chunk_url = f"/api/upload/{job.id}/chunk/{chunk_index + 1}"

        return ChunkProgress(
            chunk_id=chunk.id,
            upload_progress=job.upload_progress,
            total_progress=total_progress(job.upload_progress, job.processing_progress),
            next_chunk_url=next_chunk_url,
        )

    def _refresh_upload_progress(self, job: UploadJob) -> int:
        uploaded = (
            self.db.query(func.count(UploadChunk.id))
            .filter(UploadChunk.upload_job_id == job.id, UploadChunk.status == "uploaded")
            .scalar()
        )
        job.upload_progress = uploaded * 100 // job.total_chunks
        return uploaded

    def _mark_chunk_failed(self, job: UploadJob, chunk: UploadChunk, message: str) -> None:
        chunk.status = "failed"
        chunk.error_message = message
        chunk.retry_count += 1
        self.db.flush()
        self._refresh_upload_progress(job)
        if job.status == "uploading":
            job.status = "pending"
        logger.warning(
            f"⚠️ Chunk {chunk.chunk_index} of job {job.id} failed "
            f"({chunk.retry_count}/{job.max_retries}): {message}"
        )
        if chunk.retry_count >= job.max_retries:
            job.status = "failed"
            job.error_message = message
            job.completed_at = utcnow()
            logger.error(f"❌ Job {job.id} failed: chunk {chunk.chunk_index} exhausted retries")
        self.db.commit()
        if job.status == "failed":
            publish_progress(job.id, "failed", error=message)

    def reset_failed_chunks(self, job_id: UUID) -> int:
        """Put failed chunks of a live job back to pending so the client can resend them."""
        job = self.get_job(job_id)
        if job.is_terminal:
            raise ProcessingFailed(f"Job {job_id} is {job.status}")

        count = (
            self.db.query(UploadChunk)
            .filter(UploadChunk.upload_job_id == job.id, UploadChunk.status == "failed")
            .update({"status": "pending", "error_message": None}, synchronize_session=False)
        )
        self.db.commit()
        logger.info(f"🔁 Reset {count} failed chunks for job {job.id}")
        return count

    def start_processing(self, job_id: UUID, batch_size: Optional[int] = None) -> ProcessingHandle:
        """
        Build batches for a fully uploaded job and hand it to the scheduler.

        Raises:
            Cancelled: job was cancelled
            ProcessingFailed: job already processed, or not a leads import
            ChunksIncomplete: not every chunk is uploaded
            ValidationFailed: file holds no data rows
        """
        job = self.get_job(job_id)

        if job.status == "cancelled":
            raise Cancelled(f"Job {job_id} was cancelled")
        if job.status in ("processing", "completed", "failed"):
            raise ProcessingFailed(f"Job {job_id} cannot be processed (status={job.status})")
        if job.upload_type != "leads_import":
            raise ProcessingFailed(f"Upload type {job.upload_type} cannot be processed")

        missing = (
            self.db.query(func.count(UploadChunk.id))
            .filter(UploadChunk.upload_job_id == job.id, UploadChunk.status != "uploaded")
            .scalar()
        )
        if missing:
            raise ChunksIncomplete(
                f"{missing} of {job.total_chunks} chunks are not uploaded",
                {"missing_chunks": missing},
            )

        job.status = "processing"
        job.started_at = utcnow()
        job.error_message = None
        self.db.commit()
        logger.info(f"⚙️ Job {job.id} moved to processing")

        try:
            batch_ids = BatchBuilder(self.db, self.chunk_store, self.settings).build(job, batch_size)
            if not batch_ids:
                raise ValidationFailed("File contains no data rows")
        except Exception as e:
            self.db.rollback()
            # Batches committed before the error belong to no runnable job
            self.db.query(ValidatedRow).filter(ValidatedRow.upload_job_id == job.id).delete(
                synchronize_session=False
            )
            self.db.query(ProcessingBatch).filter(ProcessingBatch.upload_job_id == job.id).delete(
                synchronize_session=False
            )
            self._fail_job(job, e.message if isinstance(e, UploadError) else str(e))
            raise

        record_progress_event(
            self.db,
            job.id,
            "processing_started",
            {"total_batches": len(batch_ids), "total_records": job.total_records},
            message=f"Processing {job.total_records} records in {len(batch_ids)} batches",
        )
        self.db.commit()
        publish_progress(job.id, "processing", processing_progress=0, total_records=job.total_records)

        if self.scheduler is not None:
            try:
                self.scheduler.submit(job.id)
            except NetworkError as e:
                self._fail_job(job, e.message)
                raise
            except RuntimeError as e:
                self._fail_job(job, f"Processing scheduler unavailable: {e}")
                raise UnknownError("Processing scheduler unavailable") from e
        else:
            logger.warning(f"⚠️ No scheduler configured, job {job.id} left for a worker to pick up")

        estimated_completion = utcnow() + timedelta(
            seconds=len(batch_ids) * self.settings.batch_estimate_seconds
        )
        return ProcessingHandle(
            processing_job_id=job.id,
            estimated_completion=estimated_completion,
            total_batches=len(batch_ids),
        )

    def _fail_job(self, job: UploadJob, message: str) -> None:
        job.status = "failed"
        job.error_message = message
        job.completed_at = utcnow()
        record_progress_event(self.db, job.id, "processing_failed", {"error": message}, message=message)
        self.db.commit()
        publish_progress(job.id, "failed", error=message)
        logger.error(f"❌ Job {job.id} failed: {message}")

    def get_progress(self, job_id: UUID) -> UploadProgress:
        job = self.get_job(job_id)
        uploaded = (
            self.db.query(func.count(UploadChunk.id))
            .filter(UploadChunk.upload_job_id == job.id, UploadChunk.status == "uploaded")
            .scalar()
        )
        return UploadProgress(
            upload_job_id=job.id,
            filename=job.filename,
            file_size=job.file_size,
            upload_progress=job.upload_progress,
            processing_progress=job.processing_progress,
            total_progress=total_progress(job.upload_progress, job.processing_progress),
            total_chunks=job.total_chunks,
            uploaded_chunks=uploaded,
            status=job.status,
            current_step=STEP_BY_STATUS.get(job.status, job.status),
            error_message=job.error_message,
        )

    def get_processing_stats(self, job_id: UUID) -> ProcessingStats:
        job = self.get_job(job_id)
        counts = dict(
            self.db.query(ProcessingBatch.status, func.count(ProcessingBatch.id))
            .filter(ProcessingBatch.upload_job_id == job.id)
            .group_by(ProcessingBatch.status)
            .all()
        )
        now = utcnow()

        processing_rate = 0.0
        if job.started_at is not None:
            elapsed = ((job.completed_at or now) - job.started_at).total_seconds()
            if elapsed > 0:
                processing_rate = round(job.valid_records / elapsed, 2)

        remaining = counts.get("pending", 0) + counts.get("processing", 0)
        if job.status == "completed":
            estimated_completion = job.completed_at
        elif remaining:
            estimated_completion = now + timedelta(seconds=remaining * self.settings.batch_estimate_seconds)
        else:
            estimated_completion = None

        return ProcessingStats(
            upload_job_id=job.id,
            total_batches=sum(counts.values()),
            pending_batches=counts.get("pending", 0),
            processing_batches=counts.get("processing", 0),
            completed_batches=counts.get("completed", 0),
            failed_batches=counts.get("failed", 0),
            cancelled_batches=counts.get("cancelled", 0),
            total_records=job.total_records,
            processed_records=job.processed_records,
            valid_records=job.valid_records,
            invalid_records=job.invalid_records,
            processing_rate=processing_rate,
            estimated_completion=estimated_completion,
        )

    def get_import_result(self, job_id: UUID) -> ImportResult:
        job = self.get_job(job_id)
        return summarize_job(self.db, job.id, self.settings.max_import_errors)

    def cancel(self, job_id: UUID) -> bool:
        """
        Cancel a job and its unfinished batches. Idempotent.

        Returns:
            True if the job moved to cancelled, False if it had already settled
        """
        job = self.get_job(job_id)
        if job.is_terminal and not job.awaiting_retry:
            logger.info(f"⏹️ Job {job.id} already {job.status}, nothing to cancel")
            return False

        job.status = "cancelled"
        job.completed_at = utcnow()
        cancelled_batches = (
            self.db.query(ProcessingBatch)
            .filter(
                ProcessingBatch.upload_job_id == job.id,
                ProcessingBatch.status.in_(("pending", "processing", "failed")),
            )
            .update({"status": "cancelled"}, synchronize_session=False)
        )
        record_progress_event(
            self.db,
            job.id,
            "upload_cancelled",
            {"cancelled_batches": cancelled_batches},
            current_progress=job.processing_progress,
            message="Upload cancelled",
        )
        self.db.commit()

        if self.scheduler is not None:
            self.scheduler.forget(job.id)
        publish_progress(job.id, "cancelled")

        logger.info(f"⏹️ Cancelled job {job.id} ({cancelled_batches} batches)")
        return True

    def cleanup_expired(self, now: Optional[datetime] = None) -> int:
        """
        Delete jobs past their retention window, with every row and file they own.

        Jobs still processing are kept until they settle.
        """
        now = now or utcnow()
        job_ids = [
            job_id
            for (job_id,) in self.db.query(UploadJob.id)
            .filter(UploadJob.expires_at < now, UploadJob.status != "processing")
            .all()
        ]
        if not job_ids:
            return 0

        for model in (ValidatedRow, UploadProgressEvent, UploadChunk, ProcessingBatch):
            self.db.query(model).filter(model.upload_job_id.in_(job_ids)).delete(
                synchronize_session=False
            )
        self.db.query(UploadJob).filter(UploadJob.id.in_(job_ids)).delete(synchronize_session=False)
        self.db.commit()

        for job_id in job_ids:
            self.chunk_store.delete_job(job_id)

        logger.info(f"🧹 Cleaned up {len(job_ids)} expired upload jobs")
        return len(job_ids)
