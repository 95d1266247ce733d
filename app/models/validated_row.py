"""Staging model for rows that went through validation."""
import uuid

from sqlalchemy import JSON, Boolean, Column, DateTime, ForeignKey, Integer, String, Uuid

from app.database import Base, utcnow


class ValidatedRow(Base):
    """One validated CSV row waiting to be committed to the leads table."""

    __tablename__ = "validated_rows"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    upload_job_id = Column(
        Uuid, ForeignKey("upload_jobs.id", ondelete="CASCADE"), nullable=False, index=True
    )
    batch_id = Column(
        Uuid, ForeignKey("processing_batches.id", ondelete="CASCADE"), nullable=False, index=True
    )

    record_index = Column(Integer, nullable=False)
    raw_data = Column(JSON, nullable=False, default=dict)

    email = Column(String(255), nullable=True)
    name = Column(String(255), nullable=True)
    phone = Column(String(20), nullable=True)
    company = Column(String(255), nullable=True)
    position = Column(String(255), nullable=True)
    custom_fields = Column(JSON, nullable=False, default=dict)

    is_valid = Column(Boolean, nullable=False, default=False)
    validation_errors = Column(JSON, nullable=False, default=dict)

    status = Column(String(50), nullable=False, default="pending", index=True)  # pending, processed
    import_action = Column(String(20), nullable=True)  # created, updated, skipped
    is_duplicate = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    processed_at = Column(DateTime, nullable=True)
