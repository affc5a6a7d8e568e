"""Exceptions raised by the backup, transfer and rotation workflows."""
from __future__ import annotations

from datetime import timedelta
from typing import List, Optional, Sequence, Tuple


class BackupError(Exception):
    """Base class for every error raised by s3backup."""


class ConfigurationError(BackupError):
    """Raised when required configuration is missing or invalid."""


class ValidationError(BackupError):
    """Raised when a transfer request is malformed. Never retried."""

    def __init__(self, field: str, message: str) -> None:
        super().__init__(f"invalid {field}: {message}")
        self.field = field


class StoreError(BackupError):
    """The object store rejected a call or could not be reached."""

    def __init__(
        self,
        operation: str,
        bucket: str,
        key: Optional[str] = None,
        *,
        code: Optional[str] = None,
        status: Optional[int] = None,
        message: str = "",
        retryable: bool = False,
    ) -> None:
        location = f"s3://{bucket}/{key}" if key else f"s3://{bucket}"
        detail = f" [{code}]" if code else ""
        super().__init__(f"{operation} failed for {location}{detail}: {message}")
        self.operation = operation
        self.bucket = bucket
        self.key = key
        self.code = code
        self.status = status
        self.retryable = retryable


class DeadlineExceeded(BackupError):
    def __init__(self, operation: str, bucket: str, key: str, deadline: timedelta) -> None:
        super().__init__(
            f"{operation} of s3://{bucket}/{key} exceeded its deadline of "
            f"{deadline.total_seconds():g}s"
        )
        self.operation = operation
        self.bucket = bucket
        self.key = key
        self.deadline = deadline


class RotationWarning(BackupError):
    """Aggregate of individual delete failures during pruning.

    Non-fatal: the backup that triggered the rotation is already stored.
    """

    def __init__(self, bucket: str, failures: Sequence[Tuple[str, Exception]]) -> None:
        self.bucket = bucket
        self.failures: List[Tuple[str, Exception]] = list(failures)
        keys = ", ".join(key for key, _ in self.failures)
        super().__init__(
            f"rotation in s3://{bucket} failed to delete {len(self.failures)} "
            f"object(s): {keys}"
        )
