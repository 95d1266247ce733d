"""Monitoring and health response schemas."""
from datetime import datetime

from pydantic import BaseModel


class MonitoringResponse(BaseModel):
    """Today's upload activity."""

    active_uploads: int
    queued_uploads: int
    completed_uploads_today: int
    failed_uploads_today: int
    average_upload_time: float
    average_processing_time: float
    error_rate: float

    class Config:
        from_attributes = True


class HealthResponse(BaseModel):
    status: str
    upload_service: str
    processing_service: str
    storage_service: str
    queue_depth: int
    error_count: int
    last_health_check: datetime

    class Config:
        from_attributes = True


class CleanupResponse(BaseModel):
    removed: int
