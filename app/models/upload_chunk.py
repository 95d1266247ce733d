"""Upload chunk model: one byte range of an uploaded file."""
import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint, Uuid

from app.database import Base, utcnow


class UploadChunk(Base):
    """Model for tracking the upload state of a single file chunk."""

    __tablename__ = "upload_chunks"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    upload_job_id = Column(
        Uuid, ForeignKey("upload_jobs.id", ondelete="CASCADE"), nullable=False, index=True
    )

    chunk_index = Column(Integer, nullable=False)
    chunk_size = Column(Integer, nullable=False)
    chunk_hash = Column(String(64), nullable=True)

    status = Column(
        String(50), nullable=False, default="pending"
    )  # pending, uploading, uploaded, failed
    storage_path = Column(String(500), nullable=True)

    error_message = Column(Text, nullable=True)
    retry_count = Column(Integer, default=0, nullable=False)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
    uploaded_at = Column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("upload_job_id", "chunk_index", name="uq_upload_chunks_job_index"),
    )
