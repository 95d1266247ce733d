"""Upload request and response schemas."""
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, Field


class UploadCreateRequest(BaseModel):
    """Request to create a chunked upload job."""

    filename: str = Field(..., min_length=1, max_length=500)
    file_size: int
    file_type: str = Field(..., min_length=1, max_length=100)
    upload_type: str = "leads_import"
    chunk_size: Optional[int] = None
    validation_rules: Optional[Dict[str, Any]] = None
    processing_config: Optional[Dict[str, Any]] = None


class UploadJobResponse(BaseModel):
    """Upload job detail response."""

    id: UUID
    workspace_id: UUID
    user_id: UUID
    filename: str
    file_size: int
    file_type: str
    upload_type: str
    chunk_size: int
    total_chunks: int
    status: str
    upload_progress: int
    processing_progress: int
    total_records: int
    processed_records: int
    valid_records: int
    invalid_records: int
    error_message: Optional[str] = None
    retry_count: int
    max_retries: int
    created_at: datetime
    updated_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    expires_at: datetime

    class Config:
        from_attributes = True


class UploadCreateResponse(BaseModel):
    """Created job plus the endpoints the client uploads to."""

    upload_job: UploadJobResponse
    upload_url: str
    chunk_urls: List[str]


class ChunkUploadResponse(BaseModel):
    chunk_id: UUID
    upload_progress: int
    total_progress: float
    next_chunk_url: Optional[str] = None

    class Config:
        from_attributes = True


class ProcessRequest(BaseModel):
    """Request to start processing an uploaded file."""

    batch_size: Optional[int] = Field(None, ge=1, le=10_000)


class ProcessResponse(BaseModel):
    processing_job_id: UUID
    estimated_completion: datetime
    total_batches: int
    message: str = "Processing started"

    class Config:
        from_attributes = True


class UploadProgressResponse(BaseModel):
    """Polling fallback when Server-Sent Events are not available."""

    upload_job_id: UUID
    filename: str
    file_size: int
    upload_progress: int
    processing_progress: int
    total_progress: float
    total_chunks: int
    uploaded_chunks: int
    status: str
    current_step: str
    error_message: Optional[str] = None

    class Config:
        from_attributes = True


class ImportResultResponse(BaseModel):
    total_processed: int
    created: int
    updated: int
    skipped: int
    failed: int
    validation_errors: List[Dict[str, Any]]
    duplicate_emails: List[str]
    invalid_emails: List[str]

    class Config:
        from_attributes = True


class ProcessingStatsResponse(BaseModel):
    upload_job_id: UUID
    total_batches: int
    pending_batches: int
    processing_batches: int
    completed_batches: int
    failed_batches: int
    cancelled_batches: int
    total_records: int
    processed_records: int
    valid_records: int
    invalid_records: int
    processing_rate: float
    estimated_completion: Optional[datetime] = None
    import_result: ImportResultResponse


class CancelResponse(BaseModel):
    upload_job_id: UUID
    status: str
    cancelled: bool


class RetryChunksResponse(BaseModel):
    upload_job_id: UUID
    reset_chunks: int
