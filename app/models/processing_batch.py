"""Processing batch model: one slice of parsed CSV rows."""
import uuid

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Index, Integer, String, Text, Uuid

from app.database import Base, utcnow


class ProcessingBatch(Base):
    """Model for a fixed-size group of rows validated and imported as one unit."""

    __tablename__ = "processing_batches"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    upload_job_id = Column(
        Uuid, ForeignKey("upload_jobs.id", ondelete="CASCADE"), nullable=False, index=True
    )

    batch_index = Column(Integer, nullable=False)
    start_record = Column(Integer, nullable=False)
    end_record = Column(Integer, nullable=False)
    batch_size = Column(Integer, nullable=False)

    status = Column(
        String(50), nullable=False, default="pending", index=True
    )  # pending, processing, completed, failed, cancelled
    processing_progress = Column(Integer, default=0, nullable=False)

    total_records = Column(Integer, default=0, nullable=False)
    valid_records = Column(Integer, default=0, nullable=False)
    invalid_records = Column(Integer, default=0, nullable=False)

    raw_rows = Column(JSON, nullable=False, default=list)
    validation_errors = Column(JSON, nullable=False, default=list)
    import_summary = Column(JSON, nullable=False, default=dict)

    error_message = Column(Text, nullable=True)
    retry_count = Column(Integer, default=0, nullable=False)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("idx_processing_batches_job_index", "upload_job_id", "batch_index", unique=True),
    )
