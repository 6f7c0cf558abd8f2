"""Error taxonomy for the upload pipeline.

Every error carries a human-readable ``message``, a machine-readable
``reason`` code and the HTTP ``status_code`` it maps to. Client errors
(bad/missing/oversized file) map to 4xx, infrastructure errors to 5xx.
"""
from typing import Optional

from .schemas import ErrorBody


class UploadError(Exception):
    """Base exception for upload pipeline errors."""
    reason = "upload_failed"

    def __init__(self, message: str, status_code: int = 500):
        self.message = message
        self.status_code = status_code
        super().__init__(message)

    def to_body(self) -> ErrorBody:
        return ErrorBody(error=self.message, reason=self.reason)


class NoFilePresent(UploadError):
    """Raised when a request carries no file under the expected field(s)."""
    reason = "no_file_present"

    def __init__(self, message: str = "No file uploaded"):
        super().__init__(message, status_code=400)


class TooManyFiles(UploadError):
    """Raised when a field carries more files than its limit allows."""
    reason = "too_many_files"

    def __init__(self, field: str, max_count: int, received: int):
        self.field = field
        self.max_count = max_count
        super().__init__(
            f"Field '{field}' accepts at most {max_count} file(s), received {received}",
            status_code=400,
        )


class UnexpectedField(UploadError):
    """Raised when a file arrives under a field the route does not accept."""
    reason = "unexpected_field"

    def __init__(self, field: str):
        self.field = field
        super().__init__(f"Unexpected file field: '{field}'", status_code=400)


class PayloadTooLarge(UploadError):
    """Raised by the transport layer once a request body crosses its ceiling."""
    reason = "payload_too_large"

    def __init__(self, limit: int):
        self.limit = limit
        super().__init__(f"Request body exceeds limit of {limit} bytes", status_code=413)


class ValidationRejected(UploadError):
    """Raised when a file fails its policy checks. Nothing was written to disk."""
    reason = "validation_rejected"

    def __init__(self, attribute: str, reason: str):
        self.attribute = attribute
        self.detail = reason
        status_code = 413 if attribute == "size" else 400
        super().__init__(reason, status_code=status_code)

    def to_body(self) -> ErrorBody:
        return ErrorBody(error=self.message, reason=self.reason, attribute=self.attribute)


class StageFailed(UploadError):
    """Raised when the local staging write fails. No staged file survives."""
    reason = "stage_failed"

    def __init__(self, cause: str, status_code: int = 500):
        self.cause = cause
        super().__init__(f"Failed to stage upload: {cause}", status_code=status_code)


class CleanupFailed(UploadError):
    """A staged file could not be deleted.

    Never raised to callers: it is recorded by the cleanup coordinator and,
    when the transfer also failed, attached to the ``TransferFailed``.
    """
    reason = "cleanup_failed"

    def __init__(self, stored_name: str, cause: str):
        self.stored_name = stored_name
        self.cause = cause
        super().__init__(
            f"staged file '{stored_name}' could not be removed ({cause})", status_code=500
        )


class TransferFailed(UploadError):
    """Raised when the remote store rejects or fails an upload.

    ``cleanup_error`` is set when removing the local staged copy also
    failed, so an operator can find the orphaned file.
    """
    reason = "transfer_failed"

    def __init__(self, provider_detail: str, cleanup_error: Optional[CleanupFailed] = None):
        self.provider_detail = provider_detail
        self.cleanup_error = cleanup_error
        super().__init__("Failed to upload file to remote storage", status_code=502)

    def with_cleanup_error(self, cleanup_error: CleanupFailed) -> "TransferFailed":
        return TransferFailed(self.provider_detail, cleanup_error=cleanup_error)

    @property
    def details(self) -> str:
        if self.cleanup_error is not None:
            return (
                f"{self.provider_detail}; local cleanup also failed: "
                f"{self.cleanup_error.message}"
            )
        return self.provider_detail

    def to_body(self) -> ErrorBody:
        return ErrorBody(error=self.message, reason=self.reason, details=self.details)
