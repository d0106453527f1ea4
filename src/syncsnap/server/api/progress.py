"""Snapshot progress API routes.

- GET .../snapshot/progress: current state (idle when nothing is tracked)
- GET .../snapshot/progress/stream: Server-Sent Events, one state per event,
  closed after the terminal state
"""

from __future__ import annotations

import contextlib
import logging
from collections.abc import AsyncGenerator, AsyncIterator

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse

from syncsnap.agent.snapshot.tracker import OperationState, ProgressTracker
from syncsnap.server.api.deps import get_tracker
from syncsnap.server.schemas import OperationStateResponse, state_to_response

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/projects", tags=["progress"])

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def current_state(tracker: ProgressTracker, project_id: str) -> OperationState:
    """Get the tracked state of a project, or the idle placeholder."""
    return tracker.get_state(project_id) or OperationState.idle(project_id)


def sse_event(state: OperationState) -> str:
    """Format a state as a Server-Sent Events message."""
    return f"data: {state_to_response(state).model_dump_json()}\n\n"


async def stream_states(
    tracker: ProgressTracker, project_id: str
) -> AsyncGenerator[OperationState, None]:
    """Yield the states of a project until the terminal one.

    Starts with the current state (idle if nothing is tracked yet). Ends
    early if the operation is cleaned up.
    """
    subscription = tracker.subscribe(project_id)
    try:
        if tracker.get_state(project_id) is None:
            yield OperationState.idle(project_id)
        async for state in subscription:
            yield state
            if state.terminal:
                break
    finally:
        tracker.unsubscribe(project_id, subscription)


@router.get("/{project_id}/snapshot/progress", response_model=OperationStateResponse)
def get_progress(
    project_id: str,
    tracker: ProgressTracker = Depends(get_tracker),
) -> OperationStateResponse:
    """Get the current snapshot progress of a project."""
    return state_to_response(current_state(tracker, project_id))


@router.get("/{project_id}/snapshot/progress/stream")
async def stream_progress(
    project_id: str,
    tracker: ProgressTracker = Depends(get_tracker),
) -> StreamingResponse:
    """Stream snapshot progress of a project as Server-Sent Events."""
    logger.info("Progress stream opened for project %s", project_id)

    async def events() -> AsyncIterator[str]:
        async with contextlib.aclosing(stream_states(tracker, project_id)) as states:
            async for state in states:
                yield sse_event(state)
        logger.info("Progress stream ended for project %s", project_id)

    return StreamingResponse(events(), media_type="text/event-stream", headers=SSE_HEADERS)
