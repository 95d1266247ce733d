"""Database models."""
from app.models.lead import Lead
from app.models.processing_batch import ProcessingBatch
from app.models.progress_event import UploadProgressEvent
from app.models.upload_chunk import UploadChunk
from app.models.upload_job import UploadJob
from app.models.validated_row import ValidatedRow
from app.models.webhook import Webhook

__all__ = [
    "Lead",
    "ProcessingBatch",
    "UploadChunk",
    "UploadJob",
    "UploadProgressEvent",
    "ValidatedRow",
    "Webhook",
]
