"""Snapshot API routes.

Starting a snapshot returns immediately; the work happens in a
background task whose progress is exposed by the progress routes.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, status

from syncsnap.agent.snapshot.pipeline import SnapshotRunner
from syncsnap.agent.snapshot.types import OperationAlreadyRunningError
from syncsnap.server.api.deps import get_runner
from syncsnap.server.schemas import SnapshotRequest, SnapshotStartedResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/projects", tags=["snapshots"])


@router.post(
    "/{project_id}/snapshot",
    response_model=SnapshotStartedResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def start_snapshot(
    project_id: str,
    request: SnapshotRequest,
    runner: SnapshotRunner = Depends(get_runner),
) -> SnapshotStartedResponse:
    """Start generating a snapshot of a project folder in the background."""
    try:
        runner.launch(project_id, request.access_token)
    except OperationAlreadyRunningError as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=str(e),
        ) from e
    return SnapshotStartedResponse(project_id=project_id, status="started")


@router.delete("/{project_id}/snapshot", status_code=status.HTTP_204_NO_CONTENT)
async def cancel_snapshot(
    project_id: str,
    runner: SnapshotRunner = Depends(get_runner),
) -> None:
    """Cancel the snapshot in progress for a project."""
    if not runner.cancel(project_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No snapshot in progress",
        )
