"""Snapshot pipeline and background runner.

This module provides:
- SnapshotPipeline: Takes an inventory of a project folder and publishes it
- SnapshotRunner: Runs pipelines as background tasks, one per project
- SnapshotDocument: The serialized snapshot sent to the cloud

Steps (reported through the ProgressTracker):
    1 waiting      wait for Syncthing to finish scanning the folder
    2 browsing     resolve the folder path from its status
    3 browsing     list the folder contents
    4 compressing  compute totals and serialize the snapshot
    5 uploading    upload with retry
    6 completed    or failed at any step

Only the upload has a retry policy. Errors in steps 1-4 fail the whole
operation. An upload that still fails after retrying leaves a valid
local inventory, so the run ends as LOCAL_ONLY instead of FAILED.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Protocol

from syncsnap.agent.snapshot.convergence import wait_for_convergence
from syncsnap.agent.snapshot.inventory import (
    FileEntry,
    browse_files,
    format_bytes,
    summarize,
)
from syncsnap.agent.snapshot.retry import default_is_retryable, retry_async
from syncsnap.agent.snapshot.tracker import ProgressTracker
from syncsnap.agent.snapshot.types import (
    ConvergenceCancelledError,
    ConvergenceTimeoutError,
    InventoryUnavailableError,
    OperationAlreadyRunningError,
    RetryAttempt,
    RetryExhaustedError,
    SerializationError,
    SnapshotResult,
)
from syncsnap.core.types import SnapshotOutcome, SnapshotStep

logger = logging.getLogger(__name__)

CANCELLED_MESSAGE = "Snapshot generation was cancelled"


class FolderStatusSource(Protocol):
    """Status queries the pipeline needs from the Syncthing daemon."""

    async def get_folder_state(self, folder_id: str) -> str: ...

    async def get_folder_status(self, folder_id: str) -> dict[str, Any]: ...


class SnapshotUploader(Protocol):
    """Upload call the pipeline needs from the cloud API."""

    async def upload_snapshot(
        self, project_id: str, payload: dict[str, Any], access_token: str
    ) -> str: ...


@dataclass
class PipelineSettings:
    """Timing settings of a snapshot pipeline.

    Attributes:
        scan_timeout: Seconds to wait for the folder to stop scanning.
        poll_interval: Seconds between folder status polls.
        upload_attempts: Maximum number of upload attempts.
        initial_backoff: Delay before the second upload attempt.
    """

    scan_timeout: float = 120.0
    poll_interval: float = 0.5
    upload_attempts: int = 3
    initial_backoff: float = 1.0


@dataclass
class SnapshotDocument:
    """Inventory of a project folder at a point in time."""

    project_id: str
    files: list[FileEntry]
    file_count: int
    total_size: int
    sync_status: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        """Convert to JSON-serializable dict."""
        return {
            "projectId": self.project_id,
            "createdAt": self.created_at.isoformat(),
            "files": [f.to_dict() for f in self.files],
            "fileCount": self.file_count,
            "totalSize": self.total_size,
            "syncStatus": self.sync_status,
        }

    def to_payload(self) -> dict[str, Any]:
        """Request body expected by the cloud snapshot endpoint."""
        return {"snapshot": self.to_dict(), "syncStatus": "completed"}

    def serialize(self) -> str:
        """Serialize the cloud request body to JSON.

        Raises:
            SerializationError: If the sync status holds unserializable data.
        """
        try:
            return json.dumps(self.to_payload())
        except (TypeError, ValueError) as e:
            raise SerializationError(f"Failed to serialize snapshot: {e}") from e


class SnapshotPipeline:
    """Takes a snapshot of a project folder and publishes it.

    Usage:
        pipeline = SnapshotPipeline(syncthing, cloud, tracker)
        result = await pipeline.run("project-1", access_token)
    """

    def __init__(
        self,
        status_source: FolderStatusSource,
        uploader: SnapshotUploader,
        tracker: ProgressTracker,
        settings: PipelineSettings | None = None,
    ) -> None:
        """Initialize the pipeline.

        Args:
            status_source: Syncthing client.
            uploader: Cloud client.
            tracker: Tracker receiving progress updates.
            settings: Timing settings.
        """
        self._status_source = status_source
        self._uploader = uploader
        self._tracker = tracker
        self._settings = settings or PipelineSettings()

    @property
    def tracker(self) -> ProgressTracker:
        """Tracker receiving progress updates."""
        return self._tracker

    async def run(
        self,
        project_id: str,
        access_token: str,
        cancel_event: asyncio.Event | None = None,
        timeout: float | None = None,
    ) -> SnapshotResult:
        """Run all steps for a project.

        Args:
            project_id: Project (Syncthing folder ID) to snapshot.
            access_token: Bearer token for the cloud upload.
            cancel_event: Optional event that aborts the scan wait.
            timeout: Optional ceiling in seconds for the whole run.

        Returns:
            SnapshotResult; failures, unexpected ones included, are reported
            through it and through the tracker, not raised.

        Raises:
            OperationAlreadyRunningError: If the project already has a run.
            asyncio.CancelledError: If the task was cancelled. The tracked
                state is failed with a cancellation cause first.
        """
        self._tracker.start(project_id)
        logger.info("Generating snapshot for project %s", project_id)
        try:
            async with asyncio.timeout(timeout):
                return await self._run_steps(project_id, access_token, cancel_event)
        except TimeoutError:
            return self._failed(
                project_id, f"Snapshot generation timed out after {timeout:g}s"
            )
        except asyncio.CancelledError:
            self._tracker.fail(project_id, CANCELLED_MESSAGE)
            raise
        except Exception as e:
            logger.exception("Unexpected error in snapshot for %s", project_id)
            return self._failed(project_id, f"Internal error: {e}")

    async def _run_steps(
        self,
        project_id: str,
        access_token: str,
        cancel_event: asyncio.Event | None,
    ) -> SnapshotResult:
        tracker = self._tracker
        settings = self._settings

        # Step 1: wait for Syncthing to settle
        tracker.update(
            project_id, SnapshotStep.WAITING, 1,
            message="Waiting for Syncthing folder scan to complete...",
        )
        try:
            await wait_for_convergence(
                lambda: self._status_source.get_folder_state(project_id),
                timeout=settings.scan_timeout,
                poll_interval=settings.poll_interval,
                cancel_event=cancel_event,
            )
        except ConvergenceTimeoutError as e:
            return self._failed(project_id, f"Scan completion timeout: {e}")
        except ConvergenceCancelledError:
            return self._failed(project_id, CANCELLED_MESSAGE)

        # Step 2: resolve the folder path
        tracker.update(project_id, SnapshotStep.BROWSING, 2, message="Getting folder status...")
        try:
            status = await self._status_source.get_folder_status(project_id)
        except Exception as e:
            logger.exception("Failed to get folder status for %s", project_id)
            return self._failed(project_id, f"Failed to get folder status: {e}")
        folder_path = status.get("path")
        if not isinstance(folder_path, str) or not folder_path:
            return self._failed(project_id, "Folder path not available")

        # Step 3: list files
        tracker.update(project_id, SnapshotStep.BROWSING, 3, message="Browsing files in folder...")
        try:
            files = await asyncio.to_thread(browse_files, folder_path, 0)
        except InventoryUnavailableError as e:
            return self._failed(project_id, f"Failed to browse files: {e}")

        # Step 4: aggregate and serialize
        file_count, total_size = summarize(files)
        tracker.update(
            project_id, SnapshotStep.COMPRESSING, 4, file_count, total_size,
            f"Processing {file_count} files ({format_bytes(total_size)} total)...",
        )
        document = SnapshotDocument(
            project_id=project_id,
            files=files,
            file_count=file_count,
            total_size=total_size,
            sync_status=status,
        )
        try:
            document.serialize()
        except SerializationError as e:
            logger.error("Snapshot serialization failed for %s: %s", project_id, e)
            return self._failed(project_id, str(e))
        payload = document.to_payload()

        # Step 5: upload
        tracker.update(
            project_id, SnapshotStep.UPLOADING, 5, file_count, total_size,
            "Uploading snapshot to cloud storage...",
        )

        def on_retry(attempt: RetryAttempt) -> None:
            if attempt.retryable and attempt.backoff > 0:
                tracker.update(
                    project_id, SnapshotStep.UPLOADING, 5, file_count, total_size,
                    f"Upload attempt {attempt.index + 1} failed, "
                    f"retrying in {attempt.backoff:g}s...",
                )

        result = SnapshotResult(
            project_id=project_id,
            outcome=SnapshotOutcome.SUCCESS,
            file_count=file_count,
            total_size=total_size,
            created_at=document.created_at,
        )
        try:
            snapshot_url = await retry_async(
                lambda: self._uploader.upload_snapshot(project_id, payload, access_token),
                is_retryable=default_is_retryable,
                max_attempts=settings.upload_attempts,
                initial_backoff=settings.initial_backoff,
                on_retry=on_retry,
            )
        except RetryExhaustedError as e:
            return self._local_only(result, str(e))
        except Exception as e:
            logger.warning("Snapshot upload for %s rejected: %s", project_id, e)
            return self._local_only(result, f"Upload rejected: {e}")

        # Step 6: done
        result.snapshot_url = snapshot_url
        tracker.complete(project_id, snapshot_url)
        logger.info("Snapshot for %s uploaded to %s", project_id, snapshot_url)
        return result

    def _failed(self, project_id: str, error: str) -> SnapshotResult:
        logger.error("Snapshot for project %s failed: %s", project_id, error)
        self._tracker.fail(project_id, error)
        return SnapshotResult(
            project_id=project_id,
            outcome=SnapshotOutcome.FAILED,
            error=error,
        )

    def _local_only(self, result: SnapshotResult, upload_error: str) -> SnapshotResult:
        logger.warning(
            "Snapshot for project %s created locally but not uploaded: %s",
            result.project_id, upload_error,
        )
        result.outcome = SnapshotOutcome.LOCAL_ONLY
        result.upload_error = upload_error
        self._tracker.complete(result.project_id, None, upload_error=upload_error)
        return result


class SnapshotRunner:
    """Runs snapshot pipelines as background asyncio tasks.

    At most one run per project. Each run has an overall time limit, and
    its tracked state is kept for ``retention`` seconds after it ends so
    that pollers and late subscribers can still see the outcome.
    """

    def __init__(
        self,
        pipeline: SnapshotPipeline,
        run_timeout: float = 300.0,
        retention: float = 30.0,
    ) -> None:
        self._pipeline = pipeline
        self._run_timeout = run_timeout
        self._retention = retention
        self._tasks: dict[str, asyncio.Task[SnapshotResult]] = {}
        self._cleanups: dict[str, asyncio.TimerHandle] = {}

    @property
    def tracker(self) -> ProgressTracker:
        """Tracker the pipelines report to."""
        return self._pipeline.tracker

    def is_running(self, project_id: str) -> bool:
        """Whether a run for the project is in progress."""
        task = self._tasks.get(project_id)
        return task is not None and not task.done()

    def launch(self, project_id: str, access_token: str) -> asyncio.Task[SnapshotResult]:
        """Start a background run for a project.

        Must be called from within the event loop.

        Raises:
            OperationAlreadyRunningError: If a run for the project is live.
        """
        if self.is_running(project_id):
            raise OperationAlreadyRunningError(project_id)
        existing = self.tracker.get_state(project_id)
        if existing is not None and not existing.terminal:
            raise OperationAlreadyRunningError(project_id)

        pending_cleanup = self._cleanups.pop(project_id, None)
        if pending_cleanup is not None:
            pending_cleanup.cancel()

        task = asyncio.create_task(
            self._run(project_id, access_token),
            name=f"snapshot-{project_id}",
        )
        self._tasks[project_id] = task
        task.add_done_callback(lambda t: self._on_done(project_id, t))
        logger.info("Started background snapshot for project %s", project_id)
        return task

    async def _run(self, project_id: str, access_token: str) -> SnapshotResult:
        return await self._pipeline.run(project_id, access_token, timeout=self._run_timeout)

    def _on_done(self, project_id: str, task: asyncio.Task[SnapshotResult]) -> None:
        if self._tasks.get(project_id) is task:
            del self._tasks[project_id]
        error = None if task.cancelled() else task.exception()
        if isinstance(error, OperationAlreadyRunningError):
            # The tracked state belongs to the run that is still going
            logger.warning("Snapshot for %s not started: %s", project_id, error)
            return
        if error is not None:
            logger.error("Background snapshot for %s crashed", project_id, exc_info=error)
            self.tracker.fail(project_id, f"Internal error: {error}")

        loop = asyncio.get_running_loop()
        self._cleanups[project_id] = loop.call_later(
            self._retention, self._cleanup, project_id
        )

    def _cleanup(self, project_id: str) -> None:
        self._cleanups.pop(project_id, None)
        if not self.is_running(project_id):
            self.tracker.cleanup(project_id)

    def cancel(self, project_id: str) -> bool:
        """Cancel the run of a project.

        Returns:
            True if a running task was cancelled.
        """
        task = self._tasks.get(project_id)
        if task is None or task.done():
            return False
        logger.info("Cancelling snapshot for project %s", project_id)
        return task.cancel()

    async def shutdown(self) -> None:
        """Cancel all runs and forget all tracked state."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        for handle in self._cleanups.values():
            handle.cancel()
        for project_id in list(self._cleanups):
            self.tracker.cleanup(project_id)
        self._cleanups.clear()
