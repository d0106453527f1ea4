"""Core module - Shared configuration and types."""

from syncsnap.core.config import AgentConfig, get_data_dir, read_syncthing_api_key
from syncsnap.core.types import (
    BUSY_FOLDER_STATES,
    FolderState,
    SnapshotOutcome,
    SnapshotStep,
)

__all__ = [
    # Config
    "AgentConfig",
    "get_data_dir",
    "read_syncthing_api_key",
    # Types
    "BUSY_FOLDER_STATES",
    "FolderState",
    "SnapshotOutcome",
    "SnapshotStep",
]
