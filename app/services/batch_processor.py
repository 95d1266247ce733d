"""Batch processing: validate, stage and import batches under a bounded worker pool."""
import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Callable, List, Optional
from uuid import UUID

from sqlalchemy import func, insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.config import Settings, get_settings
from app.database import SessionLocal, utcnow
from app.exceptions import ProcessingFailed, UploadNotFound
from app.models.processing_batch import ProcessingBatch
from app.models.upload_job import UploadJob
from app.models.validated_row import ValidatedRow
from app.services.lead_importer import ImportResult, LeadImportConfig, LeadImporter
from app.services.progress import publish_progress, record_progress_event
from app.services.row_validator import CSVMappingConfig, validate_row

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class JobRunOutcome:
    status: str
    result: ImportResult = field(default_factory=ImportResult)
    retry_delay: Optional[int] = None


def summarize_job(db: Session, job_id: UUID, max_errors: Optional[int] = None) -> ImportResult:
    """Sum the import results recorded on a job's batches."""
    result = ImportResult()
    batches = (
        db.query(ProcessingBatch)
        .filter(ProcessingBatch.upload_job_id == job_id)
        .order_by(ProcessingBatch.batch_index)
        .all()
    )
    for batch in batches:
        if batch.status == "failed":
            result.failed += batch.total_records
            continue
        if batch.status != "completed":
            continue
        summary = batch.import_summary or {}
        result.merge(
            ImportResult(
                total_processed=batch.total_records,
                created=summary.get("created", 0),
                updated=summary.get("updated", 0),
                skipped=summary.get("skipped", 0),
                validation_errors=list(batch.validation_errors or []),
                duplicate_emails=list(summary.get("duplicate_emails", [])),
                invalid_emails=list(summary.get("invalid_emails", [])),
            )
        )
    if max_errors is not None:
        result.validation_errors = result.validation_errors[:max_errors]
    return result


class BatchProcessor:
    """
    Runs a job's processing batches.

    Batches are handed to a ThreadPoolExecutor in index order; its work queue
    is FIFO and at most ``max_concurrency`` batches are in flight at once. A
    worker is released as soon as its batch finishes, whether it completed or
    failed. Every batch uses its own session from ``session_factory``.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        settings: Optional[Settings] = None,
        max_concurrency: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.settings = settings or get_settings()
        self.max_concurrency = max_concurrency or self.settings.max_concurrent_batches

    def process_batch(
        self,
        batch_id: UUID,
        mapping: CSVMappingConfig,
        import_config: LeadImportConfig,
        workspace_id: UUID,
    ) -> Optional[ImportResult]:
        """
        Validate, stage and import one batch.

        Returns:
            ImportResult of the batch, or None when the batch was skipped
            (no longer pending, or its job was cancelled)

        Raises:
            Any error that aborted the batch, after marking it failed
        """
        db = self.session_factory()
        try:
            batch = db.get(ProcessingBatch, batch_id)
            if batch is None:
                logger.warning(f"⚠️ Batch {batch_id} not found, skipping")
                return None

            job_id = batch.upload_job_id
            if self._job_status(db, job_id) == "cancelled":
                logger.info(f"⏹️ Job {job_id} cancelled, skipping batch {batch.batch_index}")
                return None

            # Claim the batch; a concurrent cancel or run may already have moved it on
            claimed = (
                db.query(ProcessingBatch)
                .filter(ProcessingBatch.id == batch_id, ProcessingBatch.status == "pending")
                .update(
                    {"status": "processing", "started_at": utcnow(), "error_message": None},
                    synchronize_session=False,
                )
            )
            db.commit()
            if not claimed:
                logger.info(f"⏭️ Batch {batch_id} is no longer pending, skipping")
                return None

            try:
                return self._run_batch(db, batch_id, job_id, mapping, import_config, workspace_id)
            except Exception as e:
                db.rollback()
                logger.error(f"❌ Batch {batch_id} of job {job_id} failed: {e}", exc_info=True)
                self._mark_batch_failed(db, batch_id, str(e))
                raise
        finally:
            db.close()

    def _run_batch(
        self,
        db: Session,
        batch_id: UUID,
        job_id: UUID,
        mapping: CSVMappingConfig,
        import_config: LeadImportConfig,
        workspace_id: UUID,
    ) -> Optional[ImportResult]:
        batch = db.get(ProcessingBatch, batch_id)
        batch_index = batch.batch_index
        start_record = batch.start_record
        raw_rows = list(batch.raw_rows or [])
        interval = self.settings.cancel_check_interval
        max_errors = self.settings.max_validation_errors
        email_columns = {column.name for column in mapping.columns if column.type == "email"}

        processed_indexes = {
            index
            for (index,) in db.query(ValidatedRow.record_index).filter(
                ValidatedRow.batch_id == batch_id, ValidatedRow.status == "processed"
            )
        }

        result = ImportResult(total_processed=len(raw_rows))
        valid_count = 0
        invalid_count = 0
        staged = []

        for offset, raw_row in enumerate(raw_rows):
            if offset and offset % interval == 0 and self._job_status(db, job_id) == "cancelled":
                logger.info(f"⏹️ Job {job_id} cancelled during batch {batch_index} at row {offset}")
                self._mark_batch_cancelled(db, batch_id)
                return None

            record_index = start_record + offset
            validation = validate_row(raw_row, mapping, record_index)

            if validation.is_valid:
                valid_count += 1
            else:
                invalid_count += 1
                result.validation_errors.extend(validation.error_list())
                for column in validation.errors:
                    if column in email_columns and raw_row.get(column):
                        result.invalid_emails.append(raw_row[column])

            if record_index in processed_indexes:
                continue

            fields = validation.fields
            staged.append(
                {
                    "upload_job_id": job_id,
                    "batch_id": batch_id,
                    "record_index": record_index,
                    "raw_data": validation.raw_data,
                    "email": fields.email,
                    "name": fields.name,
                    "phone": fields.phone,
                    "company": fields.company,
                    "position": fields.position,
                    "custom_fields": fields.custom_fields,
                    "is_valid": validation.is_valid,
                    "validation_errors": validation.errors,
                    "status": "pending",
                }
            )

        # Rows left pending by an earlier failed attempt are staged again from scratch
        db.query(ValidatedRow).filter(
            ValidatedRow.batch_id == batch_id, ValidatedRow.status == "pending"
        ).delete(synchronize_session=False)
        if staged:
            db.execute(insert(ValidatedRow), staged)
        db.commit()

        importer = LeadImporter(db)
        # Rows imported by an earlier attempt of this batch keep counting
        outcome = importer.processed_outcome(batch_id)
        outcome.merge(importer.import_validated_rows(job_id, batch_id, workspace_id, import_config))
        result.add_outcome(outcome)
        result.validation_errors = result.validation_errors[:max_errors]

        batch = db.get(ProcessingBatch, batch_id)
        if batch.status == "processing":
            batch.status = "completed"
        batch.total_records = len(raw_rows)
        batch.valid_records = valid_count
        batch.invalid_records = invalid_count
        batch.validation_errors = result.validation_errors
        batch.import_summary = {
            "created": outcome.created,
            "updated": outcome.updated,
            "skipped": outcome.skipped,
            "duplicate_emails": outcome.duplicates,
            "invalid_emails": result.invalid_emails,
        }
        batch.processing_progress = 100
        batch.completed_at = utcnow()
        db.commit()

        progress = self._refresh_job_totals(db, job_id)
        record_progress_event(
            db,
            job_id,
            "batch_completed",
            {
                "batch_index": batch_index,
                "valid_records": valid_count,
                "invalid_records": invalid_count,
                "created": outcome.created,
                "updated": outcome.updated,
                "skipped": outcome.skipped,
            },
            current_progress=progress,
            message=f"Batch {batch_index} completed",
        )
        db.commit()
        publish_progress(job_id, "processing", processing_progress=progress, batch_index=batch_index)

        logger.info(
            f"✅ Batch {batch_index} of job {job_id} completed: valid={valid_count}, "
            f"invalid={invalid_count}, created={outcome.created}, updated={outcome.updated}, "
            f"skipped={outcome.skipped}"
        )
        return result

    def process_batches(
        self,
        batch_ids: List[UUID],
        mapping: CSVMappingConfig,
        import_config: LeadImportConfig,
        workspace_id: UUID,
    ) -> List[ImportResult]:
        """
        Process batches with at most ``max_concurrency`` in flight.

        Failed batches are logged and left out of the returned results.
        """
        results: List[ImportResult] = []
        if not batch_ids:
            return results

        with ThreadPoolExecutor(
            max_workers=self.max_concurrency, thread_name_prefix="batch-worker"
        ) as pool:
            futures = {
                pool.submit(self.process_batch, batch_id, mapping, import_config, workspace_id): batch_id
                for batch_id in batch_ids
            }
            for future in as_completed(futures):
                try:
                    result = future.result()
                except Exception as e:
                    logger.warning(f"⚠️ Batch {futures[future]} did not complete: {e}")
                    continue
                if result is not None:
                    results.append(result)

        return results

    def run_job(self, job_id: UUID) -> JobRunOutcome:
        """
        Process every pending batch of a job and settle the job's status.

        Returns:
            JobRunOutcome; ``retry_delay`` is set (seconds) when the job
            failed but still has retries left
        """
        db = self.session_factory()
        try:
            job = db.get(UploadJob, job_id)
            if job is None:
                raise UploadNotFound(f"Upload job {job_id} not found")
            if job.status == "cancelled":
                return JobRunOutcome(status="cancelled")
            if job.status != "processing":
                raise ProcessingFailed(f"Job {job_id} is not processing (status={job.status})")

            mapping = CSVMappingConfig.from_config(job.processing_config)
            import_config = LeadImportConfig.from_job(job.processing_config, job.validation_rules)
            workspace_id = job.workspace_id
            batch_ids = [
                batch_id
                for (batch_id,) in db.query(ProcessingBatch.id)
                .filter(ProcessingBatch.upload_job_id == job_id, ProcessingBatch.status == "pending")
                .order_by(ProcessingBatch.batch_index)
                .all()
            ]
        finally:
            db.close()

        logger.info(f"🚀 Processing job {job_id}: {len(batch_ids)} batches, concurrency={self.max_concurrency}")
        self.process_batches(batch_ids, mapping, import_config, workspace_id)
        return self._finalize(job_id)

    def _finalize(self, job_id: UUID) -> JobRunOutcome:
        db = self.session_factory()
        try:
            progress = self._refresh_job_totals(db, job_id)
            job = db.get(UploadJob, job_id)
            result = summarize_job(db, job_id, self.settings.max_import_errors)

            if job.status == "cancelled":
                logger.info(f"⏹️ Job {job_id} was cancelled during processing")
                db.commit()
                return JobRunOutcome(status="cancelled", result=result)

            failed_batches = (
                db.query(ProcessingBatch)
                .filter(ProcessingBatch.upload_job_id == job_id, ProcessingBatch.status == "failed")
                .order_by(ProcessingBatch.batch_index)
                .all()
            )

            if failed_batches:
                message = failed_batches[0].error_message or "Batch processing failed"
                job.status = "failed"
                job.error_message = message
                job.error_details = {
                    "failed_batches": [batch.batch_index for batch in failed_batches]
                }

                if job.retry_count < job.max_retries:
                    job.retry_count += 1
                    retry_delay = job.retry_count * self.settings.retry_backoff_seconds
                    record_progress_event(
                        db,
                        job_id,
                        "processing_retry_scheduled",
                        {"retry_count": job.retry_count, "retry_delay": retry_delay},
                        current_progress=progress,
                        message=f"Retry {job.retry_count} scheduled in {retry_delay}s",
                    )
                    db.commit()
                    publish_progress(job_id, "failed", error=message, retry_in=retry_delay)
                    logger.warning(
                        f"🔁 Job {job_id} has {len(failed_batches)} failed batches, "
                        f"retry {job.retry_count}/{job.max_retries} in {retry_delay}s"
                    )
                    return JobRunOutcome(status="failed", result=result, retry_delay=retry_delay)

                job.completed_at = utcnow()
                record_progress_event(
                    db, job_id, "processing_failed", {"error": message},
                    current_progress=progress, message=message,
                )
                db.commit()
                publish_progress(job_id, "failed", error=message)
                logger.error(f"❌ Job {job_id} failed after {job.retry_count} retries: {message}")
                return JobRunOutcome(status="failed", result=result)

            job.status = "completed"
            job.processing_progress = 100
            job.completed_at = utcnow()
            job.error_message = None
            record_progress_event(
                db,
                job_id,
                "processing_completed",
                {
                    "valid_records": job.valid_records,
                    "invalid_records": job.invalid_records,
                    "created": result.created,
                    "updated": result.updated,
                    "skipped": result.skipped,
                },
                current_progress=100,
                message="Processing completed",
            )
            db.commit()
            publish_progress(
                job_id,
                "completed",
                processing_progress=100,
                valid_records=job.valid_records,
                invalid_records=job.invalid_records,
            )
            logger.info(
                f"✅ Job {job_id} completed: valid={job.valid_records}, invalid={job.invalid_records}, "
                f"created={result.created}, updated={result.updated}, skipped={result.skipped}"
            )
            return JobRunOutcome(status="completed", result=result)
        finally:
            db.close()

    def prepare_retry(self, job_id: UUID) -> bool:
        """
        Move a failed job with retries left back to processing.

        Failed batches return to pending with their retry count incremented.

        Returns:
            True if the job was re-armed, False if it is not retryable
        """
        db = self.session_factory()
        try:
            job = db.get(UploadJob, job_id)
            if (
                job is None
                or job.status != "failed"
                or job.completed_at is not None
                or job.retry_count > job.max_retries
            ):
                return False

            failed_batches = (
                db.query(ProcessingBatch)
                .filter(ProcessingBatch.upload_job_id == job_id, ProcessingBatch.status == "failed")
                .all()
            )
            for batch in failed_batches:
                batch.status = "pending"
                batch.retry_count += 1
                batch.processing_progress = 0

            job.status = "processing"
            job.error_message = None
            record_progress_event(
                db,
                job_id,
                "processing_retry",
                {"retry_count": job.retry_count, "batches": len(failed_batches)},
                current_progress=job.processing_progress,
                message=f"Retrying {len(failed_batches)} failed batches",
            )
            db.commit()
            logger.info(f"🔁 Retrying job {job_id}: {len(failed_batches)} batches back to pending")
            return True
        finally:
            db.close()

    def _refresh_job_totals(self, db: Session, job_id: UUID) -> int:
        """Recompute job counters from its completed batches; returns processing progress."""
        total_batches, completed_batches, processed, valid, invalid = (
            db.query(
                func.count(ProcessingBatch.id),
                func.count(ProcessingBatch.id).filter(ProcessingBatch.status == "completed"),
                func.coalesce(
                    func.sum(ProcessingBatch.total_records).filter(ProcessingBatch.status == "completed"), 0
                ),
                func.coalesce(
                    func.sum(ProcessingBatch.valid_records).filter(ProcessingBatch.status == "completed"), 0
                ),
                func.coalesce(
                    func.sum(ProcessingBatch.invalid_records).filter(ProcessingBatch.status == "completed"), 0
                ),
            )
            .filter(ProcessingBatch.upload_job_id == job_id)
            .one()
        )
        progress = int(completed_batches * 100 / total_batches) if total_batches else 0

        db.query(UploadJob).filter(UploadJob.id == job_id).update(
            {
                "processed_records": processed,
                "valid_records": valid,
                "invalid_records": invalid,
                "processing_progress": progress,
                "updated_at": utcnow(),
            },
            synchronize_session=False,
        )
        db.commit()
        return progress

    @staticmethod
    def _job_status(db: Session, job_id: UUID) -> Optional[str]:
        return db.query(UploadJob.status).filter(UploadJob.id == job_id).scalar()

    @staticmethod
    def _mark_batch_failed(db: Session, batch_id: UUID, message: str) -> None:
        try:
            db.query(ProcessingBatch).filter(ProcessingBatch.id == batch_id).update(
                {"status": "failed", "error_message": message, "completed_at": utcnow()},
                synchronize_session=False,
            )
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"❌ Could not mark batch {batch_id} failed: {e}")

    @staticmethod
    def _mark_batch_cancelled(db: Session, batch_id: UUID) -> None:
        db.query(ProcessingBatch).filter(
            ProcessingBatch.id == batch_id, ProcessingBatch.status == "processing"
        ).update({"status": "cancelled"}, synchronize_session=False)
        db.commit()
