"""WebSocket endpoint for real-time snapshot progress.

Architecture:
    SnapshotPipeline ──► ProgressTracker ──ws──► Desktop app / dashboard

Each connection watches one project. The server sends one JSON text
frame per state update and closes the socket after the terminal state.
"""

from __future__ import annotations

import contextlib
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from syncsnap.agent.snapshot.tracker import ProgressTracker
from syncsnap.server.api.progress import stream_states
from syncsnap.server.schemas import state_to_response

logger = logging.getLogger(__name__)

# WebSocket router
router = APIRouter(tags=["websocket"])


@router.websocket("/ws/projects/{project_id}/snapshot/progress")
async def websocket_progress(websocket: WebSocket, project_id: str) -> None:
    """WebSocket endpoint for snapshot progress.

    Message format (server -> client):
        {"project_id": "...", "step": "browsing", "step_number": 3, ...}

    Args:
        websocket: The WebSocket connection.
        project_id: Project to watch.
    """
    tracker: ProgressTracker = websocket.app.state.tracker
    await websocket.accept()
    logger.info("Progress WebSocket connected for project %s", project_id)

    try:
        async with contextlib.aclosing(stream_states(tracker, project_id)) as states:
            async for state in states:
                await websocket.send_text(state_to_response(state).model_dump_json())
    except WebSocketDisconnect:
        logger.info("Progress WebSocket disconnected for project %s", project_id)
        return
    except Exception as e:
        logger.exception("Error in progress WebSocket: %s", e)

    if websocket.client_state == WebSocketState.CONNECTED:
        with contextlib.suppress(Exception):
            await websocket.close()
