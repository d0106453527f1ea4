"""FastAPI dependencies for API routes."""

from __future__ import annotations

from fastapi import Request

from syncsnap.agent.api import SyncthingClient
from syncsnap.agent.snapshot.pipeline import SnapshotRunner
from syncsnap.agent.snapshot.tracker import ProgressTracker


def get_tracker(request: Request) -> ProgressTracker:
    """Get the progress tracker from app state."""
    tracker: ProgressTracker = request.app.state.tracker
    return tracker


def get_runner(request: Request) -> SnapshotRunner:
    """Get the snapshot runner from app state."""
    runner: SnapshotRunner = request.app.state.runner
    return runner


def get_syncthing(request: Request) -> SyncthingClient:
    """Get the Syncthing client from app state."""
    syncthing: SyncthingClient = request.app.state.syncthing
    return syncthing
