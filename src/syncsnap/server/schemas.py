"""Pydantic schemas for API request/response models."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel

from syncsnap.agent.snapshot.inventory import FileEntry
from syncsnap.agent.snapshot.tracker import TOTAL_STEPS, OperationState
from syncsnap.core.types import SnapshotStep

# === Snapshot schemas ===


class SnapshotRequest(BaseModel):
    """Request body for starting a snapshot."""

    access_token: str


class SnapshotStartedResponse(BaseModel):
    """Response when a background snapshot was started."""

    project_id: str
    status: str


class OperationStateResponse(BaseModel):
    """Progress of a snapshot operation."""

    project_id: str
    step: str
    step_number: int
    total_steps: int = TOTAL_STEPS
    progress: int
    file_count: int
    total_size: int
    message: str
    started_at: str | None
    last_updated_at: str | None
    estimated_end: str | None
    result_location: str | None
    error_detail: str | None
    outcome: str | None  # success, local_only, failed
    terminal: bool


# === File schemas ===


class FileEntryResponse(BaseModel):
    """File or directory in a folder listing."""

    name: str
    path: str
    size: int
    is_directory: bool
    mod_time: str


class FilesResponse(BaseModel):
    """Flat listing of a project folder."""

    project_id: str
    files: list[FileEntryResponse]
    status: dict[str, Any]


class FileTreeResponse(BaseModel):
    """Nested tree of a project folder."""

    project_id: str
    tree: dict[str, Any]
    status: dict[str, Any]


# === Health schema ===


class HealthResponse(BaseModel):
    """Health check response."""

    status: str


# === Converters ===


def state_to_response(state: OperationState) -> OperationStateResponse:
    """Convert OperationState to response model.

    The idle placeholder has no timestamps.
    """
    idle = state.step == SnapshotStep.IDLE
    return OperationStateResponse(
        project_id=state.key,
        step=state.step.value,
        step_number=state.step_number,
        progress=state.progress,
        file_count=state.file_count,
        total_size=state.total_size,
        message=state.message,
        started_at=None if idle else state.started_at.isoformat(),
        last_updated_at=None if idle else state.last_updated_at.isoformat(),
        estimated_end=state.estimated_end.isoformat() if state.estimated_end else None,
        result_location=state.result_location,
        error_detail=state.error_detail,
        outcome=state.outcome.value if state.outcome else None,
        terminal=state.terminal,
    )


def entry_to_response(entry: FileEntry) -> FileEntryResponse:
    """Convert FileEntry to response model."""
    return FileEntryResponse(
        name=entry.name,
        path=entry.path,
        size=entry.size,
        is_directory=entry.is_directory,
        mod_time=entry.mod_time.isoformat(),
    )
