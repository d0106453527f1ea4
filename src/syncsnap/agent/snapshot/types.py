"""Shared types and exceptions for snapshot operations.

This module provides:
- SnapshotError and subclasses: one per failure kind of a snapshot run
- RetryAttempt: Record of a failed upload attempt
- SnapshotResult: Overall result of a pipeline run
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from syncsnap.core.types import SnapshotOutcome


class SnapshotError(Exception):
    """Base exception for snapshot errors."""


class ConvergenceTimeoutError(SnapshotError):
    """The folder never left its busy state before the deadline."""

    def __init__(self, timeout: float, last_state: str | None) -> None:
        self.timeout = timeout
        self.last_state = last_state
        super().__init__(
            f"Folder still {last_state or 'unknown'} after {timeout:g}s"
        )


class ConvergenceCancelledError(SnapshotError):
    """The wait for convergence was cancelled by the caller."""


class InventoryUnavailableError(SnapshotError):
    """The folder path could not be resolved or read."""


class SerializationError(SnapshotError):
    """The snapshot document could not be serialized."""


class RetryExhaustedError(SnapshotError):
    """All upload attempts failed with retryable errors.

    Attributes:
        attempts: Number of attempts made.
        last_error: Error raised by the final attempt.
    """

    def __init__(self, attempts: int, last_error: BaseException) -> None:
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Upload failed after {attempts} attempts: {last_error}")


class OperationAlreadyRunningError(SnapshotError):
    """A snapshot operation is already in progress for this project."""

    def __init__(self, key: str) -> None:
        self.key = key
        super().__init__(f"Snapshot already in progress for project {key}")


@dataclass
class RetryAttempt:
    """A failed attempt of a retried call.

    Attributes:
        index: Zero-based attempt index.
        error: Error raised by the attempt.
        retryable: Classification of the error.
        backoff: Seconds waited before the next attempt (0 if none follows).
    """

    index: int
    error: BaseException
    retryable: bool
    backoff: float


# Type alias for retry callback
RetryCallback = Callable[[RetryAttempt], None]


@dataclass
class SnapshotResult:
    """Result of a snapshot pipeline run.

    Attributes:
        project_id: Project the snapshot was taken for.
        outcome: SUCCESS, LOCAL_ONLY (upload failed) or FAILED.
        file_count: Number of inventory entries.
        total_size: Total size of files in bytes.
        snapshot_url: Location of the published snapshot (SUCCESS only).
        upload_error: Why publishing failed (LOCAL_ONLY only).
        error: Why the run failed (FAILED only).
        created_at: When the inventory was taken.
    """

    project_id: str
    outcome: SnapshotOutcome
    file_count: int = 0
    total_size: int = 0
    snapshot_url: str | None = None
    upload_error: str | None = None
    error: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def ok(self) -> bool:
        """Whether an inventory was produced (published or not)."""
        return self.outcome != SnapshotOutcome.FAILED

    def to_dict(self) -> dict[str, Any]:
        """Convert to JSON-serializable dict."""
        return {
            "project_id": self.project_id,
            "outcome": self.outcome.value,
            "file_count": self.file_count,
            "total_size": self.total_size,
            "snapshot_url": self.snapshot_url,
            "upload_error": self.upload_error,
            "error": self.error,
            "created_at": self.created_at.isoformat(),
        }
