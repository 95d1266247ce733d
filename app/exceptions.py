"""Upload pipeline error taxonomy."""
from typing import Any, Dict, Optional


class UploadError(Exception):
    """Base class for every failure the upload pipeline reports to callers."""

    code = "UNKNOWN_ERROR"
    status_code = 500
    default_message = "An unknown error occurred"

    def __init__(self, message: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        self.message = message or self.default_message
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        payload = {"detail": self.message, "code": self.code}
        if self.details:
            payload["details"] = self.details
        return payload


class FileTooLarge(UploadError):
    code = "FILE_TOO_LARGE"
    status_code = 413
    default_message = "File size exceeds maximum limit"


class InvalidFileType(UploadError):
    code = "INVALID_FILE_TYPE"
    status_code = 415
    default_message = "File type is not supported"


class InvalidChunkSize(UploadError):
    code = "INVALID_CHUNK_SIZE"
    status_code = 400
    default_message = "Chunk size is invalid"


class ChunkUploadFailed(UploadError):
    code = "CHUNK_UPLOAD_FAILED"
    status_code = 422
    default_message = "Failed to upload file chunk"


class ChunksIncomplete(UploadError):
    code = "CHUNKS_INCOMPLETE"
    status_code = 409
    default_message = "Not all chunks have been uploaded"


class ProcessingFailed(UploadError):
    code = "PROCESSING_FAILED"
    status_code = 409
    default_message = "File processing failed"


class ValidationFailed(UploadError):
    code = "VALIDATION_FAILED"
    status_code = 422
    default_message = "Data validation failed"


class Timeout(UploadError):
    code = "TIMEOUT"
    status_code = 504
    default_message = "Upload timeout"


class NetworkError(UploadError):
    code = "NETWORK_ERROR"
    status_code = 502
    default_message = "Network connection error"


class StorageError(UploadError):
    code = "STORAGE_ERROR"
    status_code = 500
    default_message = "Storage system error"


class InsufficientPermissions(UploadError):
    code = "INSUFFICIENT_PERMISSIONS"
    status_code = 403
    default_message = "Insufficient permissions"


class QuotaExceeded(UploadError):
    code = "QUOTA_EXCEEDED"
    status_code = 429
    default_message = "Upload quota exceeded"


class CorruptedFile(UploadError):
    code = "CORRUPTED_FILE"
    status_code = 422
    default_message = "File appears to be corrupted"


class Cancelled(UploadError):
    code = "CANCELLED"
    status_code = 409
    default_message = "Upload was cancelled"


class UnknownError(UploadError):
    pass


class UploadNotFound(UploadError):
    code = "NOT_FOUND"
    status_code = 404
    default_message = "Upload job not found"
