"""
Standardised error handling for the hand history worker.

Every failure raised inside the upload engine or the analysis pipeline
carries an error code; the code decides whether the failing chunk or
window may be retried within its budget.
"""

from typing import Optional


class ErrorCode:
    # Non-retryable
    AUTHORIZATION = "ERR_AUTHORIZATION"
    INVALID_TRANSITION = "ERR_INVALID_TRANSITION"
    NOT_FOUND = "ERR_NOT_FOUND"
    UPLOAD_CANCELLED = "ERR_UPLOAD_CANCELLED"
    MEDIA_PROBE = "ERR_MEDIA_PROBE"

    # Retryable
    CHUNK_UPLOAD = "ERR_CHUNK_UPLOAD"
    RESPONSE_SCHEMA = "ERR_RESPONSE_SCHEMA"
    AI_TIMEOUT = "ERR_AI_TIMEOUT"
    AI_CALL = "ERR_AI_CALL"
    CONCURRENT_MODIFICATION = "ERR_CONCURRENT_MODIFICATION"


RETRYABLE_ERRORS = {
    ErrorCode.CHUNK_UPLOAD,
    ErrorCode.RESPONSE_SCHEMA,
    ErrorCode.AI_TIMEOUT,
    ErrorCode.AI_CALL,
    ErrorCode.CONCURRENT_MODIFICATION,
}


class PipelineError(Exception):
    """Raised when an upload or analysis step hits a known error condition."""

    def __init__(self, code: str, message: str, retryable: Optional[bool] = None):
        self.code = code
        self.message = message
        # auto-detect retryable from code if not explicitly set
        self.retryable = retryable if retryable is not None else (code in RETRYABLE_ERRORS)
        super().__init__(f"[{code}] {message}")


class ChunkUploadError(PipelineError):
    """A chunk could not be committed to the blob store."""

    def __init__(self, message: str):
        super().__init__(ErrorCode.CHUNK_UPLOAD, message)


class UploadCancelledError(PipelineError):
    def __init__(self, upload_id: str):
        super().__init__(ErrorCode.UPLOAD_CANCELLED, f"Upload {upload_id} cancelled")


class ResponseSchemaError(PipelineError):
    """Model output was not JSON or did not match the expected contract."""

    def __init__(self, message: str):
        super().__init__(ErrorCode.RESPONSE_SCHEMA, message)


class AICallTimeoutError(PipelineError):
    def __init__(self, timeout_sec: float):
        super().__init__(ErrorCode.AI_TIMEOUT, f"Model call did not return within {timeout_sec:.0f}s")


class AICallError(PipelineError):
    def __init__(self, message: str):
        super().__init__(ErrorCode.AI_CALL, message)


class AuthorizationError(PipelineError):
    """Credentials were rejected by an external service. Never retried."""

    def __init__(self, message: str):
        super().__init__(ErrorCode.AUTHORIZATION, message, retryable=False)


class InvalidTransitionError(PipelineError):
    def __init__(self, current: str, target: str, what: str = "record"):
        self.current = current
        self.target = target
        super().__init__(ErrorCode.INVALID_TRANSITION, f"Cannot move {what} from '{current}' to '{target}'")


class ConcurrentModificationError(PipelineError):
    """Optimistic version check lost against a concurrent writer."""

    def __init__(self, what: str, record_id: str):
        super().__init__(ErrorCode.CONCURRENT_MODIFICATION, f"{what} {record_id} was modified concurrently")


class RecordNotFoundError(PipelineError):
    def __init__(self, what: str, record_id: str):
        super().__init__(ErrorCode.NOT_FOUND, f"{what} {record_id} not found")


class MediaProbeError(PipelineError):
    def __init__(self, message: str):
        super().__init__(ErrorCode.MEDIA_PROBE, message)
