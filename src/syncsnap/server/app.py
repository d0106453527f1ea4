"""FastAPI application for the syncsnap agent.

This module creates and configures the FastAPI application with:
- REST API to start, cancel and query snapshot generation
- Server-Sent Events and WebSocket progress streams
- Project folder listings

Usage:
    uvicorn syncsnap.server.app:app_factory --factory --port 29999
"""

from __future__ import annotations

import logging
import sys
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI

from syncsnap.agent.api import CloudClient, SyncthingClient
from syncsnap.agent.snapshot.pipeline import SnapshotPipeline, SnapshotRunner
from syncsnap.agent.snapshot.tracker import ProgressTracker
from syncsnap.core.config import AgentConfig
from syncsnap.server import ws
from syncsnap.server.api.router import router as api_router

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

logger = logging.getLogger(__name__)


def setup_logging(log_path: Path | None = None, level: str = "INFO") -> None:
    """Configure logging to output to stdout and optionally a file.

    Args:
        log_path: Path to the log file, or None for stdout only.
        level: Logging level name.
    """
    formatter = logging.Formatter(LOG_FORMAT)

    # Root logger for syncsnap
    root_logger = logging.getLogger("syncsnap")
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    # Stdout handler
    stdout_handler = logging.StreamHandler(sys.stdout)
    stdout_handler.setFormatter(formatter)
    root_logger.addHandler(stdout_handler)

    if log_path is None:
        return

    # File handler
    log_path.parent.mkdir(parents=True, exist_ok=True)
    file_handler = logging.FileHandler(log_path, encoding="utf-8")
    file_handler.setFormatter(formatter)
    root_logger.addHandler(file_handler)

    # Also capture uvicorn logs to file
    for uvicorn_name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        uvicorn_logger = logging.getLogger(uvicorn_name)
        uvicorn_logger.addHandler(file_handler)


def create_app(
    config: AgentConfig,
    syncthing: SyncthingClient | None = None,
    cloud: CloudClient | None = None,
    tracker: ProgressTracker | None = None,
) -> FastAPI:
    """Create FastAPI application.

    Collaborators can be injected, which is primarily used for testing.

    Args:
        config: Agent configuration.
        syncthing: Syncthing client (built from config if omitted).
        cloud: Cloud client (built from config if omitted).
        tracker: Progress tracker (a fresh one if omitted).

    Returns:
        Configured FastAPI application.
    """
    syncthing = syncthing or SyncthingClient(
        config.syncthing_url, config.syncthing_api_key, timeout=config.request_timeout
    )
    cloud = cloud or CloudClient(config.cloud_url, timeout=config.request_timeout)
    tracker = tracker or ProgressTracker()
    pipeline = SnapshotPipeline(syncthing, cloud, tracker, config.pipeline_settings())
    runner = SnapshotRunner(pipeline, run_timeout=config.run_timeout, retention=config.retention)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan handler for startup/shutdown."""
        # Startup
        logger.info("=" * 60)
        logger.info("syncsnap agent starting")
        logger.info("=" * 60)
        logger.info("  Syncthing: %s", config.syncthing_url)
        if not config.syncthing_api_key:
            logger.warning("  Syncthing API key not configured")
        logger.info("  Cloud:     %s", config.cloud_url)
        logger.info("  Logs:      %s", config.log_path.absolute() if config.log_path else "stdout")
        logger.info("=" * 60)

        yield

        # Shutdown
        logger.info("syncsnap agent shutting down")
        await runner.shutdown()
        await syncthing.aclose()
        await cloud.aclose()

    application = FastAPI(
        title="syncsnap agent",
        description="Folder snapshots with live progress",
        version="0.1.0",
        lifespan=lifespan,
    )

    application.state.config = config
    application.state.syncthing = syncthing
    application.state.cloud = cloud
    application.state.tracker = tracker
    application.state.runner = runner

    application.include_router(api_router)
    application.include_router(ws.router)

    return application


def app_factory() -> FastAPI:
    """Factory function for uvicorn --factory mode."""
    config = AgentConfig.from_env()
    setup_logging(config.log_path, config.log_level)
    return create_app(config)
