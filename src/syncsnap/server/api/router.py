"""Main API router that includes all sub-routers."""

from __future__ import annotations

from fastapi import APIRouter

from syncsnap.server.api import files, health, progress, snapshots

router = APIRouter()

# Include all API routers
router.include_router(health.router)
router.include_router(snapshots.router)
router.include_router(progress.router)
router.include_router(files.router)
