"""Project folder listing API routes."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, status

from syncsnap.agent.api import APIError, NotFoundError, SyncthingClient
from syncsnap.agent.snapshot.inventory import FileEntry, browse_files, build_tree
from syncsnap.agent.snapshot.types import InventoryUnavailableError
from syncsnap.server.api.deps import get_syncthing
from syncsnap.server.schemas import FilesResponse, FileTreeResponse, entry_to_response

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/projects", tags=["files"])


async def _list_folder(
    syncthing: SyncthingClient,
    project_id: str,
    max_depth: int,
) -> tuple[list[FileEntry], dict[str, Any]]:
    try:
        folder_status = await syncthing.get_folder_status(project_id)
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Folder not found") from e
    except APIError as e:
        logger.error("Failed to get folder status for %s: %s", project_id, e)
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e)) from e

    folder_path = folder_status.get("path")
    if not folder_path:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Folder path not available",
        )
    try:
        files = await asyncio.to_thread(browse_files, folder_path, max_depth)
    except InventoryUnavailableError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    return files, folder_status


@router.get("/{project_id}/files", response_model=FilesResponse)
async def list_files(
    project_id: str,
    max_depth: int = Query(default=5, ge=0, description="Maximum depth, 0 for unlimited."),
    syncthing: SyncthingClient = Depends(get_syncthing),
) -> FilesResponse:
    """List the files in a project folder."""
    files, folder_status = await _list_folder(syncthing, project_id, max_depth)
    return FilesResponse(
        project_id=project_id,
        files=[entry_to_response(f) for f in files],
        status=folder_status,
    )


@router.get("/{project_id}/files/tree", response_model=FileTreeResponse)
async def get_file_tree(
    project_id: str,
    syncthing: SyncthingClient = Depends(get_syncthing),
) -> FileTreeResponse:
    """Get the full file tree of a project folder."""
    files, folder_status = await _list_folder(syncthing, project_id, 0)
    return FileTreeResponse(
        project_id=project_id,
        tree=build_tree(files),
        status=folder_status,
    )
