"""Upload monitoring and maintenance endpoints."""
import logging

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.api.dependencies import get_chunk_store
from app.database import get_db
from app.schemas.monitoring import CleanupResponse, HealthResponse, MonitoringResponse
from app.services.chunk_store import ChunkStore
from app.services.monitoring import UploadMonitor
from app.services.upload_service import UploadJobManager

router = APIRouter(prefix="/api/monitoring", tags=["monitoring"])

logger = logging.getLogger(__name__)


@router.get("/uploads", response_model=MonitoringResponse)
def get_upload_monitoring(
    db: Session = Depends(get_db), chunk_store: ChunkStore = Depends(get_chunk_store)
):
    """Upload activity since UTC midnight."""
    return MonitoringResponse.model_validate(UploadMonitor(db, chunk_store).get_monitoring_data())


@router.get("/health", response_model=HealthResponse)
def get_upload_health(
    db: Session = Depends(get_db), chunk_store: ChunkStore = Depends(get_chunk_store)
):
    """
    Tri-state health of the upload pipeline.

    unhealthy at an error rate of 10% or more today, degraded at 5% or more.
    """
    return HealthResponse.model_validate(UploadMonitor(db, chunk_store).get_system_health())


@router.post("/cleanup", response_model=CleanupResponse)
def cleanup_expired_uploads(
    db: Session = Depends(get_db), chunk_store: ChunkStore = Depends(get_chunk_store)
):
    """Delete expired upload jobs now instead of waiting for the beat schedule."""
    removed = UploadJobManager(db, chunk_store).cleanup_expired()
    logger.info(f"🧹 Manual cleanup removed {removed} jobs")
    return CleanupResponse(removed=removed)
