"""Upload job model for tracking chunked uploads and CSV import progress."""
import uuid

from sqlalchemy import JSON, BigInteger, Column, DateTime, Integer, String, Text, Uuid

from app.database import Base, utcnow

ACTIVE_STATUSES = ("pending", "uploading", "processing")
TERMINAL_STATUSES = ("completed", "failed", "cancelled")


class UploadJob(Base):
    """Model for one user-initiated file import."""

    __tablename__ = "upload_jobs"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    workspace_id = Column(Uuid, nullable=False, index=True)
    user_id = Column(Uuid, nullable=False, index=True)

    filename = Column(String(500), nullable=False)
    file_size = Column(BigInteger, nullable=False)
    file_type = Column(String(100), nullable=False)

    chunk_size = Column(Integer, nullable=False)
    total_chunks = Column(Integer, nullable=False)
    upload_type = Column(String(50), nullable=False, default="leads_import")

    status = Column(
        String(50), nullable=False, default="pending", index=True
    )  # pending, uploading, processing, completed, failed, cancelled
    upload_progress = Column(Integer, default=0, nullable=False)
    processing_progress = Column(Integer, default=0, nullable=False)
    storage_path = Column(String(500), nullable=True)

    total_records = Column(Integer, default=0, nullable=False)
    processed_records = Column(Integer, default=0, nullable=False)
    valid_records = Column(Integer, default=0, nullable=False)
    invalid_records = Column(Integer, default=0, nullable=False)

    error_message = Column(Text, nullable=True)
    error_details = Column(JSON, nullable=True)
    retry_count = Column(Integer, default=0, nullable=False)
    max_retries = Column(Integer, default=3, nullable=False)

    validation_rules = Column(JSON, nullable=False, default=dict)
    processing_config = Column(JSON, nullable=False, default=dict)

    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    expires_at = Column(DateTime, nullable=False, index=True)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def awaiting_retry(self) -> bool:
        """Failed with a processing retry still queued."""
        return self.status == "failed" and self.completed_at is None

    def __repr__(self):
        return f"<UploadJob(id={self.id}, filename='{self.filename}', status='{self.status}')>"
