"""Custom exception classes for the upload engine."""

from typing import Optional

from common.types import RejectReason


class UploadError(Exception):
    """
    Base exception class for all upload errors.

    Every instance carries the number of bytes the server had confirmed
    when the error was raised.
    """

    def __init__(self, message: str, confirmed_bytes: int = 0):
        super().__init__(message)
        self.message = message
        self.confirmed_bytes = confirmed_bytes


class ValidationError(UploadError):
    """
    Raised when the payload is rejected before any network call.
    """
    pass


class UnsupportedMimeTypeError(ValidationError):
    """
    Raised when the declared MIME type is not in the allow-list.
    """
    pass


class FileTooLargeError(ValidationError):
    """
    Raised when the declared size exceeds the upload ceiling.
    """
    pass


class EmptyFileError(ValidationError):
    """
    Raised when the payload has no bytes.
    """
    pass


class SessionInitError(UploadError):
    """
    Raised when the session initiator cannot provide an upload target.
    """
    pass


class FinalizeError(UploadError):
    """
    Raised when the finalize notifier rejects or cannot reach the session.
    """
    pass


class UploadFailedError(UploadError):
    """
    Raised by the sequencer when chunk transfer cannot continue.
    """

    def __init__(
        self,
        message: str,
        confirmed_bytes: int = 0,
        reason: Optional[RejectReason] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message, confirmed_bytes)
        self.reason = reason
        self.status_code = status_code


class SessionExpiredError(UploadFailedError):
    """
    Raised when the upload target no longer exists (HTTP 404).
    """
    pass


class AuthFailedError(UploadFailedError):
    """
    Raised when the upload credentials were rejected (HTTP 401).
    """
    pass


class PermissionDeniedError(UploadFailedError):
    """
    Raised when the server refuses the upload (HTTP 403).
    """
    pass


class RetryBudgetExhaustedError(UploadFailedError):
    """
    Raised when a chunk failed on every allowed attempt.

    reason holds the last concrete failure reason seen for the chunk.
    """

    def __init__(
        self,
        message: str,
        confirmed_bytes: int = 0,
        reason: Optional[RejectReason] = None,
        status_code: Optional[int] = None,
        attempts: int = 0,
    ):
        super().__init__(message, confirmed_bytes, reason, status_code)
        self.attempts = attempts


class UploadCancelledError(UploadError):
    """
    Raised when the user cancels an upload in progress.
    """
    pass


FATAL_REJECTIONS: dict[RejectReason, type[UploadFailedError]] = {
    RejectReason.EXPIRED: SessionExpiredError,
    RejectReason.AUTH_FAILED: AuthFailedError,
    RejectReason.PERMISSION_DENIED: PermissionDeniedError,
}
