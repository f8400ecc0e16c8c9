"""
errors.py: exception taxonomy shared by the upload, transfer and lifecycle layers.
"""
from typing import Iterable, Optional


class TransferError(Exception):
    """Base class for every error raised by the transfer service."""

    status_code = 500

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message


class InvalidInput(TransferError):
    """Malformed chunk index, missing identifier, out-of-range part count..."""

    status_code = 400


class NotFound(TransferError):
    status_code = 404


class IncompleteUpload(TransferError):
    """Reconstruction was requested before every chunk or part was stored."""

    status_code = 409

    def __init__(self, file_id: str, missing: Iterable[int]):
        self.file_id = file_id
        self.missing = sorted(missing)
        preview = ", ".join(str(i) for i in self.missing[:20])
        super().__init__(f"Upload {file_id} is incomplete; missing chunks: {preview}")


class StorageError(TransferError):
    """Backend unavailable, permission denied or object missing."""

    status_code = 502

    def __init__(self, message: str, key: Optional[str] = None):
        super().__init__(message)
        self.key = key


class AccessDenied(TransferError):
    # One message for every failed check: callers must not learn which one failed
    status_code = 403
    MESSAGE = "Transfer not found, expired or not accessible"

    def __init__(self):
        super().__init__(self.MESSAGE)


class PartialBatchFailure(TransferError):
    """Raised on request when a sweep finished but some units of work failed."""

    def __init__(self, report):
        self.report = report
        super().__init__(
            f"Sweep finished with failures: {report.succeeded} succeeded, {report.failed} failed"
        )
