"""Progress event log for upload jobs."""
import uuid

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Integer, String, Text, Uuid

from app.database import Base, utcnow


class UploadProgressEvent(Base):
    __tablename__ = "upload_progress_events"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    upload_job_id = Column(
        Uuid, ForeignKey("upload_jobs.id", ondelete="CASCADE"), nullable=False, index=True
    )
    event_type = Column(String(100), nullable=False)
    event_data = Column(JSON, nullable=False, default=dict)
    current_progress = Column(Integer, default=0, nullable=False)
    total_progress = Column(Integer, default=100, nullable=False)
    message = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
