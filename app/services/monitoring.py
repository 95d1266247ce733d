"""Read-only monitoring snapshots and health for the upload pipeline."""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.database import utcnow
from app.models.upload_job import ACTIVE_STATUSES, UploadJob
from app.services.chunk_store import ChunkStore

logger = logging.getLogger(__name__)

UNHEALTHY_ERROR_RATE = 10.0
DEGRADED_ERROR_RATE = 5.0


@dataclass(slots=True)
class UploadMonitoringData:
    active_uploads: int
    queued_uploads: int
    completed_uploads_today: int
    failed_uploads_today: int
    average_upload_time: float
    average_processing_time: float
    error_rate: float


@dataclass(slots=True)
class UploadSystemHealth:
    status: str
    upload_service: str
    processing_service: str
    storage_service: str
    queue_depth: int
    error_count: int
    last_health_check: datetime


def _average(values: List[float]) -> float:
    return round(sum(values) / len(values), 2) if values else 0.0


class UploadMonitor:
    """Aggregates today's upload jobs; never writes."""

    def __init__(self, db: Session, chunk_store: Optional[ChunkStore] = None):
        self.db = db
        self.chunk_store = chunk_store

    def get_monitoring_data(self, now: Optional[datetime] = None) -> UploadMonitoringData:
        now = now or utcnow()
        day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)

        jobs = (
            self.db.query(
                UploadJob.status,
                UploadJob.created_at,
                UploadJob.started_at,
                UploadJob.completed_at,
            )
            .filter(UploadJob.created_at >= day_start)
            .all()
        )

        active = sum(1 for job in jobs if job.status in ACTIVE_STATUSES)
        queued = sum(1 for job in jobs if job.status == "pending")
        completed = [job for job in jobs if job.status == "completed"]
        failed = sum(1 for job in jobs if job.status == "failed")

        upload_times = [
            (job.started_at - job.created_at).total_seconds()
            for job in completed
            if job.started_at
        ]
        processing_times = [
            (job.completed_at - job.started_at).total_seconds()
            for job in completed
            if job.started_at and job.completed_at
        ]

        return UploadMonitoringData(
            active_uploads=active,
            queued_uploads=queued,
            completed_uploads_today=len(completed),
            failed_uploads_today=failed,
            average_upload_time=_average(upload_times),
            average_processing_time=_average(processing_times),
            error_rate=round(failed / len(jobs) * 100, 2) if jobs else 0.0,
        )

    def get_system_health(self, now: Optional[datetime] = None) -> UploadSystemHealth:
        """Derive healthy/degraded/unhealthy from today's error rate."""
        now = now or utcnow()
        storage_service = "up" if self.chunk_store is None or self.chunk_store.is_available() else "down"

        try:
            data = self.get_monitoring_data(now)
        except SQLAlchemyError as e:
            logger.error(f"❌ Health check could not read upload jobs: {e}")
            return UploadSystemHealth(
                status="unhealthy",
                upload_service="down",
                processing_service="down",
                storage_service="down",
                queue_depth=0,
                error_count=0,
                last_health_check=now,
            )

        if data.error_rate >= UNHEALTHY_ERROR_RATE:
            status = "unhealthy"
        elif data.error_rate >= DEGRADED_ERROR_RATE:
            status = "degraded"
        else:
            status = "healthy"

        if storage_service == "down":
            status = "unhealthy"

        return UploadSystemHealth(
            status=status,
            upload_service="up",
            processing_service="up",
            storage_service=storage_service,
            queue_depth=data.queued_uploads,
            error_count=data.failed_uploads_today,
            last_health_check=now,
        )
