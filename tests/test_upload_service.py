"""Tests for the upload job lifecycle."""
import hashlib
import uuid
from datetime import timedelta

import pytest
from sqlalchemy.dialects import postgresql

from app.config import KB, MB
from app.database import utcnow
from app.exceptions import (
    Cancelled,
    ChunksIncomplete,
    ChunkUploadFailed,
    CorruptedFile,
    FileTooLarge,
    InsufficientPermissions,
    InvalidChunkSize,
    InvalidFileType,
    ProcessingFailed,
    QuotaExceeded,
    UnknownError,
    UploadNotFound,
    ValidationFailed,
)
from app.models.processing_batch import ProcessingBatch
from app.models.progress_event import UploadProgressEvent
from app.models.upload_chunk import UploadChunk
from app.models.upload_job import UploadJob
from app.services.upload_service import UploadJobManager, default_chunk_size


def _chunks(db, job):
    return (
        db.query(UploadChunk)
        .filter(UploadChunk.upload_job_id == job.id)
        .order_by(UploadChunk.chunk_index)
        .all()
    )


def _create(manager, workspace_id, file_size=100, **kwargs):
    kwargs.setdefault("user_id", uuid.uuid4())
    return manager.create_job(
        workspace_id=workspace_id,
        filename="leads.csv",
        file_size=file_size,
        file_type="text/csv",
        **kwargs,
    )


def test_create_job_persists_chunks(db, manager, workspace_id):
    created = _create(manager, workspace_id, file_size=100, chunk_size=30)
    job = created.job

    assert job.status == "pending"
    assert job.total_chunks == 4
    assert job.upload_progress == 0
    assert job.validation_rules["duplicate_handling"] == "skip"
    assert job.expires_at > job.created_at
    assert created.upload_url == f"/api/upload/{job.id}"
    assert created.chunk_urls[3] == f"/api/upload/{job.id}/chunk/3"

    chunks = _chunks(db, job)
    assert [c.chunk_index for c in chunks] == [0, 1, 2, 3]
    assert [c.chunk_size for c in chunks] == [30, 30, 30, 10]
    assert all(c.status == "pending" for c in chunks)


def test_file_too_large_creates_nothing(db, chunk_store, scheduler, settings, workspace_id):
    limited = settings.model_copy(update={"max_file_size": 5 * MB})
    manager = UploadJobManager(db, chunk_store, scheduler, limited)

    with pytest.raises(FileTooLarge):
        _create(manager, workspace_id, file_size=10 * MB)

    assert db.query(UploadJob).count() == 0
    assert db.query(UploadChunk).count() == 0


def test_non_positive_size_rejected(manager, workspace_id):
    with pytest.raises(ValidationFailed):
        _create(manager, workspace_id, file_size=0)


def test_file_type_must_match_upload_type(manager, workspace_id):
    with pytest.raises(InvalidFileType):
        manager.create_job(workspace_id, uuid.uuid4(), "leads.xlsx", 100, "application/vnd.ms-excel")
    with pytest.raises(InvalidFileType):
        manager.create_job(workspace_id, uuid.uuid4(), "a.csv", 100, "text/csv", upload_type="videos")

    created = manager.create_job(
        workspace_id, uuid.uuid4(), "logo.png", 100, "image/png", upload_type="template_assets"
    )
    assert created.job.upload_type == "template_assets"


def test_chunk_size_bounds(manager, workspace_id):
    with pytest.raises(InvalidChunkSize):
        _create(manager, workspace_id, chunk_size=2)
    with pytest.raises(InvalidChunkSize):
        _create(manager, workspace_id, chunk_size=2 * MB)


def test_default_chunk_size_tiers():
    assert default_chunk_size(1 * MB, 4 * MB) == 512 * KB
    assert default_chunk_size(20 * MB, 4 * MB) == 1 * MB
    assert default_chunk_size(80 * MB, 4 * MB) == 2 * MB
    assert default_chunk_size(80 * MB, 1 * MB) == 1 * MB


def test_concurrent_upload_quota(manager, workspace_id):
    owner = uuid.uuid4()
    for _ in range(3):
        _create(manager, workspace_id, user_id=owner)

    with pytest.raises(QuotaExceeded):
        _create(manager, workspace_id, user_id=owner)

    # Another owner is unaffected
    _create(manager, workspace_id)


def test_upload_progress_tracks_chunks(db, manager, workspace_id):
    job = _create(manager, workspace_id, file_size=20, chunk_size=10).job

    progress = manager.record_chunk_uploaded(job.id, 1, b"b" * 10)
    assert progress.upload_progress == 50
    assert progress.total_progress == 15.0
    assert progress.next_chunk_url is None
    assert job.status == "pending"

    progress = manager.record_chunk_uploaded(job.id, 0, b"a" * 10)
    assert progress.upload_progress == 100
    assert progress.next_chunk_url == f"/api/upload/{job.id}/chunk/1"
    assert job.status == "uploading"

    chunk = _chunks(db, job)[0]
    assert chunk.status == "uploaded"
    assert chunk.chunk_hash == hashlib.sha256(b"a" * 10).hexdigest()
    assert chunk.uploaded_at is not None

    events = db.query(UploadProgressEvent).filter_by(upload_job_id=job.id, event_type="chunk_uploaded")
    assert events.count() == 2


def test_upload_complete_only_when_every_chunk_uploaded(db, manager, workspace_id):
    job = _create(manager, workspace_id, file_size=30, chunk_size=10).job

    manager.record_chunk_uploaded(job.id, 0, b"x" * 10)
    manager.record_chunk_uploaded(job.id, 0, b"y" * 10)
    manager.record_chunk_uploaded(job.id, 2, b"z" * 10)

    assert job.upload_progress == 66
    assert {c.status for c in _chunks(db, job)} == {"uploaded", "pending"}


def test_chunk_payload_size_checked(manager, workspace_id):
    job = _create(manager, workspace_id, file_size=20, chunk_size=10).job

    with pytest.raises(InvalidChunkSize):
        manager.record_chunk_uploaded(job.id, 0, b"")
    with pytest.raises(InvalidChunkSize):
        manager.record_chunk_uploaded(job.id, 0, b"x" * 11)
    with pytest.raises(UploadNotFound):
        manager.record_chunk_uploaded(job.id, 5, b"x")


def test_hash_mismatch_blocks_processing_until_resent(db, manager, workspace_id, make_csv):
    content = make_csv([(f"l{i}@example.com", "x") for i in range(10)])
    job = _create(manager, workspace_id, file_size=len(content), chunk_size=len(content) // 5 + 1).job
    assert job.total_chunks == 5
    pieces = [content[i * job.chunk_size:(i + 1) * job.chunk_size] for i in range(5)]

    for index in (0, 1, 3, 4):
        manager.record_chunk_uploaded(job.id, index, pieces[index])

    with pytest.raises(ChunkUploadFailed):
        manager.record_chunk_uploaded(job.id, 2, pieces[2], chunk_hash="0" * 64)

    chunk = _chunks(db, job)[2]
    assert chunk.status == "failed"
    assert chunk.retry_count == 1
    assert "hash mismatch" in chunk.error_message
    assert job.upload_progress < 100

    with pytest.raises(ChunksIncomplete):
        manager.start_processing(job.id)

    manager.record_chunk_uploaded(job.id, 2, pieces[2], hashlib.sha256(pieces[2]).hexdigest())
    assert job.upload_progress == 100

    handle = manager.start_processing(job.id)
    assert handle.total_batches == 1


def test_chunk_failures_exhaust_job_retries(manager, workspace_id):
    job = _create(manager, workspace_id, file_size=10, chunk_size=10).job

    for _ in range(job.max_retries):
        with pytest.raises(ChunkUploadFailed):
            manager.record_chunk_uploaded(job.id, 0, b"x" * 10, chunk_hash="bad")

    assert job.status == "failed"
    assert "hash mismatch" in job.error_message

    with pytest.raises(ProcessingFailed):
        manager.record_chunk_uploaded(job.id, 0, b"x" * 10)


def test_reset_failed_chunks(db, manager, workspace_id):
    job = _create(manager, workspace_id, file_size=20, chunk_size=10).job
    with pytest.raises(ChunkUploadFailed):
        manager.record_chunk_uploaded(job.id, 1, b"x" * 10, chunk_hash="bad")

    assert manager.reset_failed_chunks(job.id) == 1
    assert _chunks(db, job)[1].status == "pending"


def test_jobs_are_workspace_scoped(db, chunk_store, manager, workspace_id):
    job = _create(manager, workspace_id).job
    other = UploadJobManager(db, chunk_store, workspace_id=uuid.uuid4())

    with pytest.raises(InsufficientPermissions):
        other.get_progress(job.id)
    with pytest.raises(UploadNotFound):
        other.get_progress(uuid.uuid4())


def test_start_processing_submits_job(db, manager, scheduler, upload_file, make_csv):
    job = upload_file(make_csv([(f"l{i}@example.com", "x") for i in range(25)]))

    before = utcnow()
    handle = manager.start_processing(job.id, batch_size=10)

    assert handle.total_batches == 3
    assert handle.processing_job_id == job.id
    assert handle.estimated_completion >= before + timedelta(seconds=15)
    assert scheduler.submitted == [job.id]
    assert job.status == "processing"
    assert job.started_at is not None
    assert job.total_records == 25


def test_start_processing_preconditions(db, manager, upload_file, make_csv, workspace_id):
    job = upload_file(make_csv([("a@example.com", "A")]))
    manager.start_processing(job.id)
    with pytest.raises(ProcessingFailed):
        manager.start_processing(job.id)

    cancelled = upload_file(make_csv([("b@example.com", "B")]))
    manager.cancel(cancelled.id)
    with pytest.raises(Cancelled):
        manager.start_processing(cancelled.id)

    asset = manager.create_job(
        workspace_id, uuid.uuid4(), "logo.png", 4, "image/png", upload_type="template_assets"
    ).job
    manager.record_chunk_uploaded(asset.id, 0, b"\x89PNG")
    with pytest.raises(ProcessingFailed):
        manager.start_processing(asset.id)


def test_file_without_rows_fails_job(db, manager, scheduler, upload_file):
    job = upload_file(b"email,name\n")

    with pytest.raises(ValidationFailed):
        manager.start_processing(job.id)

    assert job.status == "failed"
    assert job.error_message == "File contains no data rows"
    assert scheduler.submitted == []


def test_corrupted_file_fails_job(manager, upload_file):
    job = upload_file(b"email,name\n\xff\xfe,A\n")

    with pytest.raises(CorruptedFile):
        manager.start_processing(job.id)

    assert job.status == "failed"


def test_cancel_is_idempotent(db, manager, scheduler, upload_file, make_csv):
    job = upload_file(make_csv([(f"l{i}@example.com", "x") for i in range(25)]))
    manager.start_processing(job.id, batch_size=10)

    assert manager.cancel(job.id) is True
    first_completed_at = job.completed_at
    assert manager.cancel(job.id) is False

    assert job.status == "cancelled"
    assert job.completed_at == first_completed_at
    statuses = {b.status for b in db.query(ProcessingBatch).filter_by(upload_job_id=job.id)}
    assert statuses == {"cancelled"}
    assert scheduler.forgotten == [job.id]
    events = db.query(UploadProgressEvent).filter_by(upload_job_id=job.id, event_type="upload_cancelled")
    assert events.count() == 1


def test_cancel_completed_job_is_noop(manager, upload_file, make_csv):
    job = upload_file(make_csv([("a@example.com", "A")]))
    job.status = "completed"
    manager.db.commit()

    assert manager.cancel(job.id) is False
    assert job.status == "completed"


def test_progress_and_stats(db, manager, upload_file, make_csv):
    job = upload_file(make_csv([(f"l{i}@example.com", "x") for i in range(25)]))
    manager.start_processing(job.id, batch_size=10)

    progress = manager.get_progress(job.id)
    assert progress.uploaded_chunks == progress.total_chunks
    assert progress.current_step == "processing_batches"
    assert progress.total_progress == 30.0

    stats = manager.get_processing_stats(job.id)
    assert stats.total_batches == 3
    assert stats.pending_batches == 3
    assert stats.processing_rate == 0.0
    assert stats.estimated_completion is not None


def test_cleanup_expired(db, manager, chunk_store, upload_file, make_csv):
    expired = upload_file(make_csv([("a@example.com", "A")]))
    manager.start_processing(expired.id)
    expired.status = "completed"
    expired.expires_at = utcnow() - timedelta(hours=1)
    busy = upload_file(make_csv([("b@example.com", "B")]))
    busy.status = "processing"
    busy.expires_at = utcnow() - timedelta(hours=1)
    fresh = upload_file(make_csv([("c@example.com", "C")]))
    db.commit()
    expired_id = expired.id

    assert manager.cleanup_expired() == 1

    assert db.get(UploadJob, expired_id) is None
    assert db.query(UploadChunk).filter_by(upload_job_id=expired_id).count() == 0
    assert db.query(ProcessingBatch).filter_by(upload_job_id=expired_id).count() == 0
    assert db.query(UploadProgressEvent).filter_by(upload_job_id=expired_id).count() == 0
    assert not chunk_store.job_dir(expired_id).exists()
    assert db.get(UploadJob, busy.id) is not None
    assert db.get(UploadJob, fresh.id) is not None


def test_chunk_upload_locks_job_row(manager, workspace_id):
    job = _create(manager, workspace_id, file_size=20, chunk_size=10).job

    statement = manager._job_lock_query(job.id).statement.compile(dialect=postgresql.dialect())

    assert "FOR UPDATE" in str(statement)
    assert manager._lock_job(job) is job


def test_quota_exceeded_mid_file_drops_saved_batches(db, manager, scheduler, settings, upload_file, make_csv):
    settings.max_records_per_file = 12
    job = upload_file(make_csv([(f"l{i}@example.com", "x") for i in range(20)]))

    with pytest.raises(QuotaExceeded):
        manager.start_processing(job.id, batch_size=5)

    assert job.status == "failed"
    assert db.query(ProcessingBatch).filter_by(upload_job_id=job.id).count() == 0
    assert scheduler.submitted == []


class StoppedScheduler:
    def submit(self, job_id):
        raise RuntimeError("ProcessingScheduler is not running")

    def forget(self, job_id):
        pass


def test_stopped_scheduler_fails_job(db, chunk_store, settings, upload_file, make_csv):
    job = upload_file(make_csv([("a@example.com", "A")]))
    stopped = UploadJobManager(db, chunk_store, StoppedScheduler(), settings)

    with pytest.raises(UnknownError):
        stopped.start_processing(job.id)

    db.expire_all()
    job = db.get(UploadJob, job.id)
    assert job.status == "failed"
    assert job.completed_at is not None
    assert "scheduler" in job.error_message
