"""Exception hierarchy for document storage, snapshots and conversion.

Every error carries a short ``code`` so the HTTP layer and the conversion
result can report the failure category without inspecting the class.
"""

from __future__ import annotations

__all__ = [
    "SyncError",
    "DocumentNotFoundError",
    "InvalidSourceError",
    "TransformError",
    "StorageError",
    "LockError",
    "InvalidSnapshotError",
    "UploadRejectedError",
]


class SyncError(RuntimeError):
    """Base exception for synchronization failures."""

    code = "error"


class DocumentNotFoundError(SyncError):
    """Raised when a document or snapshot does not exist."""

    code = "not_found"


class InvalidSourceError(SyncError):
    """Raised when the Postman collection fails to parse before conversion."""

    code = "invalid_source"


class TransformError(SyncError):
    """Raised when the conversion capability fails or produces nothing usable."""

    code = "transform_error"


class StorageError(SyncError):
    """Raised when a filesystem operation fails."""

    code = "io_error"


class LockError(SyncError):
    """Raised when the coordination lock is not acquired within the retry budget."""

    code = "lock_error"


class InvalidSnapshotError(SyncError):
    """Raised when a snapshot filename does not map to a known document kind."""

    code = "invalid_kind"


class UploadRejectedError(SyncError):
    """Raised when an uploaded file has the wrong type or exceeds the size limit."""

    code = "upload_rejected"

    def __init__(self, message: str, *, oversize: bool = False) -> None:
        super().__init__(message)
        self.oversize = oversize
