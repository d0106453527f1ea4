"""Snapshot generation with live progress.

Architecture:
    SnapshotRunner → SnapshotPipeline → ProgressTracker → Subscriptions

Components:
- **wait_for_convergence**: Polls Syncthing until the folder stops scanning
- **browse_files / build_tree**: Folder inventory
- **retry_async**: Upload retry with exponential backoff
- **ProgressTracker**: Per-project state and fan-out to subscribers
- **SnapshotPipeline**: Runs the six snapshot steps for one project
- **SnapshotRunner**: Background tasks, one per project

All public symbols are re-exported here.
"""

from syncsnap.agent.snapshot.convergence import DEFAULT_POLL_INTERVAL, wait_for_convergence
from syncsnap.agent.snapshot.inventory import (
    FileEntry,
    browse_files,
    build_tree,
    format_bytes,
    summarize,
)
from syncsnap.agent.snapshot.pipeline import (
    PipelineSettings,
    SnapshotDocument,
    SnapshotPipeline,
    SnapshotRunner,
)
from syncsnap.agent.snapshot.retry import (
    DEFAULT_INITIAL_BACKOFF,
    DEFAULT_MAX_ATTEMPTS,
    backoff_delay,
    default_is_retryable,
    retry_async,
)
from syncsnap.agent.snapshot.tracker import (
    PROGRESS_BY_STEP,
    TOTAL_STEPS,
    OperationState,
    ProgressTracker,
    Subscription,
)
from syncsnap.agent.snapshot.types import (
    ConvergenceCancelledError,
    ConvergenceTimeoutError,
    InventoryUnavailableError,
    OperationAlreadyRunningError,
    RetryAttempt,
    RetryExhaustedError,
    SerializationError,
    SnapshotError,
    SnapshotResult,
)

__all__ = [
    # Convergence
    "DEFAULT_POLL_INTERVAL",
    "wait_for_convergence",
    # Inventory
    "FileEntry",
    "browse_files",
    "build_tree",
    "format_bytes",
    "summarize",
    # Pipeline
    "PipelineSettings",
    "SnapshotDocument",
    "SnapshotPipeline",
    "SnapshotRunner",
    # Retry
    "DEFAULT_INITIAL_BACKOFF",
    "DEFAULT_MAX_ATTEMPTS",
    "backoff_delay",
    "default_is_retryable",
    "retry_async",
    # Tracker
    "PROGRESS_BY_STEP",
    "TOTAL_STEPS",
    "OperationState",
    "ProgressTracker",
    "Subscription",
    # Types
    "ConvergenceCancelledError",
    "ConvergenceTimeoutError",
    "InventoryUnavailableError",
    "OperationAlreadyRunningError",
    "RetryAttempt",
    "RetryExhaustedError",
    "SerializationError",
    "SnapshotError",
    "SnapshotResult",
]
