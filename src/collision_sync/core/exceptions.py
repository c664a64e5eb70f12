"""collision-sync exception hierarchy."""

from __future__ import annotations


class CollisionSyncError(Exception):
    """Base exception for all collision-sync errors."""


class RetryableError(CollisionSyncError):
    """Marker base: the caller may retry the whole import."""


class ParseError(CollisionSyncError):
    """Estimate content could not be parsed."""


class StructuralParseError(ParseError):
    """Fatal per-file failure: malformed XML or no recognizable structure."""

    def __init__(self, source: str, reason: str) -> None:
        self.source = source
        self.reason = reason
        super().__init__(f"{source} parsing failed: {reason}")


class UnsupportedFormatError(ParseError):
    """An explicit format hint names a format we do not read."""


class MergeError(CollisionSyncError):
    """Error while merging a payload into the store."""


class TransactionFailure(MergeError, RetryableError):
    """A store error aborted the merge; all writes were rolled back."""

    def __init__(self, message: str, job_key: str = "") -> None:
        self.job_key = job_key
        super().__init__(message)


class TransactionConflictError(TransactionFailure):
    """A concurrent import committed a conflicting row first."""


class StoreError(CollisionSyncError):
    """Persistence backend operation failed."""


class CacheError(CollisionSyncError):
    """Redis cache operation failed."""


class FileStoreError(CollisionSyncError):
    """File store (S3 / local) operation failed."""
