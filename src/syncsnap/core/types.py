"""Shared types for syncsnap.

This module defines enums used by both the agent and the HTTP server.
"""

from __future__ import annotations

from enum import Enum


class SnapshotStep(str, Enum):
    """Step of a snapshot operation.

    IDLE is never stored by the tracker; the delivery surface uses it
    to report that no operation exists for a project.
    """

    IDLE = "idle"
    WAITING = "waiting"
    BROWSING = "browsing"
    COMPRESSING = "compressing"
    UPLOADING = "uploading"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        """Whether no further transitions can follow this step."""
        return self in (SnapshotStep.COMPLETED, SnapshotStep.FAILED)


class SnapshotOutcome(str, Enum):
    """Final result of a snapshot operation.

    LOCAL_ONLY means the inventory was produced but publishing it to
    the cloud failed.
    """

    SUCCESS = "success"
    LOCAL_ONLY = "local_only"
    FAILED = "failed"


class FolderState(str, Enum):
    """Folder states reported by the Syncthing daemon."""

    IDLE = "idle"
    SCANNING = "scanning"
    SYNCING = "syncing"
    ERROR = "error"


# States during which the folder contents are still changing
BUSY_FOLDER_STATES = frozenset({FolderState.SCANNING.value, FolderState.SYNCING.value})
