"""Tests for the snapshot pipeline and background runner."""

from __future__ import annotations

import asyncio
import json
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import pytest

from syncsnap.agent.api import APIError, AuthenticationError
from syncsnap.agent.snapshot.inventory import FileEntry, browse_files
from syncsnap.agent.snapshot.pipeline import (
    CANCELLED_MESSAGE,
    PipelineSettings,
    SnapshotDocument,
    SnapshotPipeline,
    SnapshotRunner,
)
from syncsnap.agent.snapshot.tracker import OperationState, ProgressTracker, Subscription
from syncsnap.agent.snapshot.types import (
    OperationAlreadyRunningError,
    SerializationError,
)
from syncsnap.core.types import SnapshotOutcome, SnapshotStep

FAST = PipelineSettings(scan_timeout=1.0, poll_interval=0.01, upload_attempts=3, initial_backoff=0.001)


class FakeSyncthing:
    """In-memory stand-in for SyncthingClient."""

    def __init__(
        self,
        path: str | None,
        states: list[str] | None = None,
        status_error: Exception | None = None,
        state_errors: list[Exception] | None = None,
    ) -> None:
        self.path = path
        self.states = list(states or ["idle"])
        self.status_error = status_error
        self.state_errors = list(state_errors or [])
        self.state_calls = 0

    async def get_folder_state(self, folder_id: str) -> str:
        self.state_calls += 1
        if self.state_errors:
            raise self.state_errors.pop(0)
        if len(self.states) > 1:
            return self.states.pop(0)
        return self.states[0]

    async def get_folder_status(self, folder_id: str) -> dict[str, Any]:
        if self.status_error is not None:
            raise self.status_error
        status: dict[str, Any] = {"state": "idle", "globalFiles": 3}
        if self.path is not None:
            status["path"] = self.path
        return status


class FakeCloud:
    """In-memory stand-in for CloudClient."""

    def __init__(self, *errors: Exception, url: str = "https://cdn.example.com/p1.json") -> None:
        self.errors = list(errors)
        self.url = url
        self.uploads: list[tuple[str, dict[str, Any], str]] = []

    async def upload_snapshot(
        self, project_id: str, payload: dict[str, Any], access_token: str
    ) -> str:
        self.uploads.append((project_id, payload, access_token))
        if self.errors:
            raise self.errors.pop(0)
        return self.url


def unavailable() -> APIError:
    return APIError("Cloud API error: 503 - unavailable", 503, retryable=True)


def drain(sub: Subscription) -> list[OperationState]:
    states = []
    while (state := sub.get_nowait()) is not None:
        states.append(state)
    return states


@pytest.fixture
def project_dir(tmp_path: Path) -> Path:
    """Project folder with two files and a directory."""
    (tmp_path / "docs").mkdir()
    (tmp_path / "docs" / "a.txt").write_bytes(b"x" * 100)
    (tmp_path / "b.bin").write_bytes(b"x" * 50)
    return tmp_path


@pytest.fixture
def tracker() -> ProgressTracker:
    """Fresh tracker with a buffer large enough to keep every update."""
    return ProgressTracker(buffer_size=100)


class TestSnapshotDocument:
    """Tests for SnapshotDocument."""

    def test_payload_shape(self) -> None:
        """Payload should wrap the snapshot with a completed sync status."""
        document = SnapshotDocument(project_id="p1", files=[], file_count=0, total_size=0)
        payload = document.to_payload()
        assert payload["syncStatus"] == "completed"
        assert payload["snapshot"]["projectId"] == "p1"
        assert payload["snapshot"]["files"] == []

    def test_serialize(self, project_dir: Path) -> None:
        """Serialized JSON should include every file entry."""
        files = browse_files(project_dir)
        document = SnapshotDocument(project_id="p1", files=files, file_count=3, total_size=150)
        data = json.loads(document.serialize())
        assert [f["path"] for f in data["snapshot"]["files"]] == ["b.bin", "docs", "docs/a.txt"]
        assert data["snapshot"]["totalSize"] == 150

    def test_serialize_error(self) -> None:
        """Unserializable sync status should raise SerializationError."""
        document = SnapshotDocument(
            project_id="p1", files=[], file_count=0, total_size=0,
            sync_status={"bad": object()},
        )
        with pytest.raises(SerializationError):
            document.serialize()

    def test_file_entry_in_payload(self) -> None:
        """File entries should keep their metadata."""
        entry = FileEntry("a.txt", "a.txt", 5, False, datetime(2025, 1, 1, tzinfo=UTC))
        document = SnapshotDocument(project_id="p1", files=[entry], file_count=1, total_size=5)
        file_data = document.to_dict()["files"][0]
        assert file_data["size"] == 5
        assert file_data["is_directory"] is False


class TestSnapshotPipeline:
    """Tests for SnapshotPipeline.run."""

    @pytest.mark.asyncio
    async def test_success(self, project_dir: Path, tracker: ProgressTracker) -> None:
        """Should upload the inventory and end in SUCCESS."""
        syncthing = FakeSyncthing(str(project_dir), states=["scanning", "idle"])
        cloud = FakeCloud()
        sub = tracker.subscribe("p1")
        pipeline = SnapshotPipeline(syncthing, cloud, tracker, FAST)

        result = await pipeline.run("p1", "token-123")

        assert result.outcome == SnapshotOutcome.SUCCESS
        assert result.snapshot_url == "https://cdn.example.com/p1.json"
        assert result.file_count == 3
        assert result.total_size == 150
        assert result.ok

        project_id, payload, token = cloud.uploads[0]
        assert (project_id, token) == ("p1", "token-123")
        assert payload["snapshot"]["fileCount"] == 3
        assert payload["snapshot"]["syncStatus"]["path"] == str(project_dir)

        state = tracker.get_state("p1")
        assert state is not None
        assert state.outcome == SnapshotOutcome.SUCCESS
        assert state.result_location == "https://cdn.example.com/p1.json"

        states = drain(sub)
        numbers = [s.step_number for s in states]
        assert numbers == sorted(numbers)
        assert {2, 3, 4, 5, 6} <= set(numbers)
        assert states[-1].step == SnapshotStep.COMPLETED
        assert any("Processing 3 files" in s.message for s in states)

    @pytest.mark.asyncio
    async def test_upload_retried(self, project_dir: Path, tracker: ProgressTracker) -> None:
        """Transient upload errors should be retried within the same run."""
        cloud = FakeCloud(unavailable(), unavailable())
        sub = tracker.subscribe("p1")
        pipeline = SnapshotPipeline(FakeSyncthing(str(project_dir)), cloud, tracker, FAST)

        result = await pipeline.run("p1", "token")

        assert result.outcome == SnapshotOutcome.SUCCESS
        assert len(cloud.uploads) == 3
        messages = [s.message for s in drain(sub)]
        assert any("retrying" in m for m in messages)

    @pytest.mark.asyncio
    async def test_local_only_after_retries(
        self, project_dir: Path, tracker: ProgressTracker
    ) -> None:
        """An upload failing every attempt should end as LOCAL_ONLY."""
        cloud = FakeCloud(unavailable(), unavailable(), unavailable())
        pipeline = SnapshotPipeline(FakeSyncthing(str(project_dir)), cloud, tracker, FAST)

        result = await pipeline.run("p1", "token")

        assert result.outcome == SnapshotOutcome.LOCAL_ONLY
        assert result.ok
        assert result.snapshot_url is None
        assert "after 3 attempts" in (result.upload_error or "")
        assert len(cloud.uploads) == 3

        state = tracker.get_state("p1")
        assert state is not None
        assert state.terminal
        assert state.step == SnapshotStep.COMPLETED
        assert state.outcome == SnapshotOutcome.LOCAL_ONLY
        assert state.result_location is None
        assert "503" in (state.error_detail or "")

    @pytest.mark.asyncio
    async def test_local_only_on_fatal_upload_error(
        self, project_dir: Path, tracker: ProgressTracker
    ) -> None:
        """A rejected upload should not be retried and should end as LOCAL_ONLY."""
        cloud = FakeCloud(AuthenticationError("Cloud API error: 401 - expired", 401))
        pipeline = SnapshotPipeline(FakeSyncthing(str(project_dir)), cloud, tracker, FAST)

        result = await pipeline.run("p1", "token")

        assert result.outcome == SnapshotOutcome.LOCAL_ONLY
        assert len(cloud.uploads) == 1
        assert (result.upload_error or "").startswith("Upload rejected")

    @pytest.mark.asyncio
    async def test_scan_timeout_fails(self, project_dir: Path, tracker: ProgressTracker) -> None:
        """A folder that never settles should fail at step 1."""
        settings = PipelineSettings(scan_timeout=0.05, poll_interval=0.01)
        cloud = FakeCloud()
        pipeline = SnapshotPipeline(
            FakeSyncthing(str(project_dir), states=["syncing"]), cloud, tracker, settings
        )

        result = await pipeline.run("p1", "token")

        assert result.outcome == SnapshotOutcome.FAILED
        assert not result.ok
        assert (result.error or "").startswith("Scan completion timeout")
        assert cloud.uploads == []
        state = tracker.get_state("p1")
        assert state is not None
        assert state.step == SnapshotStep.FAILED
        assert state.step_number == 1

    @pytest.mark.asyncio
    async def test_missing_path_fails(self, tracker: ProgressTracker) -> None:
        """A status without a folder path should fail at step 2."""
        pipeline = SnapshotPipeline(FakeSyncthing(None), FakeCloud(), tracker, FAST)

        result = await pipeline.run("p1", "token")

        assert result.outcome == SnapshotOutcome.FAILED
        assert result.error == "Folder path not available"
        state = tracker.get_state("p1")
        assert state is not None
        assert state.step_number == 2
        assert state.error_detail == "Folder path not available"

    @pytest.mark.asyncio
    async def test_status_error_fails(self, tracker: ProgressTracker) -> None:
        """A failing status query should fail the run."""
        syncthing = FakeSyncthing("/x", status_error=APIError("Syncthing API error: 500", 500))
        pipeline = SnapshotPipeline(syncthing, FakeCloud(), tracker, FAST)

        result = await pipeline.run("p1", "token")

        assert result.outcome == SnapshotOutcome.FAILED
        assert (result.error or "").startswith("Failed to get folder status")

    @pytest.mark.asyncio
    async def test_state_errors_do_not_stop_scan_wait(
        self, project_dir: Path, tracker: ProgressTracker
    ) -> None:
        """Errors while polling the folder state should only delay the run."""
        syncthing = FakeSyncthing(
            str(project_dir),
            state_errors=[ValueError("bad json"), KeyError("state")],
        )
        pipeline = SnapshotPipeline(syncthing, FakeCloud(), tracker, FAST)

        result = await pipeline.run("p1", "token")

        assert result.outcome == SnapshotOutcome.SUCCESS
        assert syncthing.state_calls == 3
        assert tracker.get_state("p1").terminal  # type: ignore[union-attr]

    @pytest.mark.asyncio
    async def test_unexpected_error_fails_state(
        self, project_dir: Path, tracker: ProgressTracker, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """An unexpected error should end the run as FAILED, not leave it running."""

        def broken_browse(root: str, max_depth: int = 0) -> list[FileEntry]:
            raise RuntimeError("disk on fire")

        monkeypatch.setattr("syncsnap.agent.snapshot.pipeline.browse_files", broken_browse)
        sub = tracker.subscribe("p1")
        pipeline = SnapshotPipeline(FakeSyncthing(str(project_dir)), FakeCloud(), tracker, FAST)

        result = await pipeline.run("p1", "token")

        assert result.outcome == SnapshotOutcome.FAILED
        assert result.error == "Internal error: disk on fire"
        state = tracker.get_state("p1")
        assert state is not None
        assert state.terminal
        assert state.step == SnapshotStep.FAILED
        assert state.error_detail == "Internal error: disk on fire"
        assert drain(sub)[-1].terminal

        # The project is free for another run
        monkeypatch.undo()
        retry = await pipeline.run("p1", "token")
        assert retry.outcome == SnapshotOutcome.SUCCESS

    @pytest.mark.asyncio
    async def test_unreadable_folder_fails(self, tmp_path: Path, tracker: ProgressTracker) -> None:
        """A folder path that does not exist should fail at step 3."""
        pipeline = SnapshotPipeline(
            FakeSyncthing(str(tmp_path / "gone")), FakeCloud(), tracker, FAST
        )

        result = await pipeline.run("p1", "token")

        assert result.outcome == SnapshotOutcome.FAILED
        assert tracker.get_state("p1").step_number == 3  # type: ignore[union-attr]

    @pytest.mark.asyncio
    async def test_cancel_event(self, project_dir: Path, tracker: ProgressTracker) -> None:
        """Setting the cancel event during the scan wait should fail the run."""
        settings = PipelineSettings(scan_timeout=10, poll_interval=0.01)
        cancel = asyncio.Event()
        cancel.set()
        pipeline = SnapshotPipeline(
            FakeSyncthing(str(project_dir), states=["syncing"]), FakeCloud(), tracker, settings
        )

        result = await pipeline.run("p1", "token", cancel_event=cancel)

        assert result.outcome == SnapshotOutcome.FAILED
        assert result.error == CANCELLED_MESSAGE

    @pytest.mark.asyncio
    async def test_overall_timeout(self, project_dir: Path, tracker: ProgressTracker) -> None:
        """Exceeding the run ceiling should fail with a timeout cause."""
        settings = PipelineSettings(scan_timeout=10, poll_interval=0.01)
        pipeline = SnapshotPipeline(
            FakeSyncthing(str(project_dir), states=["syncing"]), FakeCloud(), tracker, settings
        )

        result = await pipeline.run("p1", "token", timeout=0.05)

        assert result.outcome == SnapshotOutcome.FAILED
        assert "timed out" in (result.error or "")
        assert tracker.get_state("p1").terminal  # type: ignore[union-attr]

    @pytest.mark.asyncio
    async def test_concurrent_run_rejected(
        self, project_dir: Path, tracker: ProgressTracker
    ) -> None:
        """A second run for a running project should be rejected."""
        tracker.start("p1")
        pipeline = SnapshotPipeline(FakeSyncthing(str(project_dir)), FakeCloud(), tracker, FAST)

        with pytest.raises(OperationAlreadyRunningError):
            await pipeline.run("p1", "token")


class TestSnapshotRunner:
    """Tests for SnapshotRunner."""

    @pytest.mark.asyncio
    async def test_launch(self, project_dir: Path, tracker: ProgressTracker) -> None:
        """Should run the pipeline in the background."""
        pipeline = SnapshotPipeline(FakeSyncthing(str(project_dir)), FakeCloud(), tracker, FAST)
        runner = SnapshotRunner(pipeline, retention=60)

        task = runner.launch("p1", "token")
        assert runner.is_running("p1")
        result = await task

        assert result.outcome == SnapshotOutcome.SUCCESS
        assert not runner.is_running("p1")
        assert tracker.get_state("p1") is not None
        await runner.shutdown()

    @pytest.mark.asyncio
    async def test_launch_twice_rejected(self, project_dir: Path, tracker: ProgressTracker) -> None:
        """A second launch while running should be rejected."""
        settings = PipelineSettings(scan_timeout=10, poll_interval=0.01)
        pipeline = SnapshotPipeline(
            FakeSyncthing(str(project_dir), states=["syncing"]), FakeCloud(), tracker, settings
        )
        runner = SnapshotRunner(pipeline)

        runner.launch("p1", "token")
        with pytest.raises(OperationAlreadyRunningError):
            runner.launch("p1", "token")
        await runner.shutdown()

    @pytest.mark.asyncio
    async def test_relaunch_after_finish(self, project_dir: Path, tracker: ProgressTracker) -> None:
        """A finished project can be snapshotted again."""
        pipeline = SnapshotPipeline(FakeSyncthing(str(project_dir)), FakeCloud(), tracker, FAST)
        runner = SnapshotRunner(pipeline, retention=60)

        await runner.launch("p1", "token")
        result = await runner.launch("p1", "token")

        assert result.outcome == SnapshotOutcome.SUCCESS
        await runner.shutdown()

    @pytest.mark.asyncio
    async def test_cancel(self, project_dir: Path, tracker: ProgressTracker) -> None:
        """Cancelling should fail the tracked state with a cancellation cause."""
        settings = PipelineSettings(scan_timeout=10, poll_interval=0.01)
        pipeline = SnapshotPipeline(
            FakeSyncthing(str(project_dir), states=["syncing"]), FakeCloud(), tracker, settings
        )
        runner = SnapshotRunner(pipeline, retention=60)
        sub = tracker.subscribe("p1")

        task = runner.launch("p1", "token")
        await asyncio.sleep(0.05)
        assert runner.cancel("p1") is True

        with pytest.raises(asyncio.CancelledError):
            await task

        state = tracker.get_state("p1")
        assert state is not None
        assert state.step == SnapshotStep.FAILED
        assert state.error_detail == CANCELLED_MESSAGE
        assert drain(sub)[-1].step == SnapshotStep.FAILED
        assert runner.cancel("p1") is False
        await runner.shutdown()

    @pytest.mark.asyncio
    async def test_cancel_during_upload_backoff(
        self, project_dir: Path, tracker: ProgressTracker
    ) -> None:
        """Cancelling while waiting to retry the upload should end promptly."""
        settings = PipelineSettings(
            scan_timeout=1.0, poll_interval=0.01, upload_attempts=3, initial_backoff=30.0
        )
        cloud = FakeCloud(unavailable(), unavailable())
        pipeline = SnapshotPipeline(FakeSyncthing(str(project_dir)), cloud, tracker, settings)
        runner = SnapshotRunner(pipeline, retention=60)

        task = runner.launch("p1", "token")

        async def first_upload() -> None:
            while not cloud.uploads:
                await asyncio.sleep(0.01)

        await asyncio.wait_for(first_upload(), timeout=2)
        await asyncio.sleep(0.02)
        assert runner.cancel("p1") is True

        with pytest.raises(asyncio.CancelledError):
            await asyncio.wait_for(task, timeout=1)

        assert len(cloud.uploads) == 1
        state = tracker.get_state("p1")
        assert state is not None
        assert state.step == SnapshotStep.FAILED
        assert state.outcome == SnapshotOutcome.FAILED
        assert state.error_detail == CANCELLED_MESSAGE
        await runner.shutdown()

    @pytest.mark.asyncio
    async def test_conflicting_writer_state_kept(
        self, project_dir: Path, tracker: ProgressTracker
    ) -> None:
        """A run rejected by another writer should not schedule cleanup of its state."""
        pipeline = SnapshotPipeline(FakeSyncthing(str(project_dir)), FakeCloud(), tracker, FAST)
        runner = SnapshotRunner(pipeline, retention=0.05)

        task = runner.launch("p1", "token")
        tracker.start("p1")

        with pytest.raises(OperationAlreadyRunningError):
            await task

        await asyncio.sleep(0.2)
        state = tracker.get_state("p1")
        assert state is not None
        assert state.step == SnapshotStep.WAITING
        assert not state.terminal
        await runner.shutdown()

    @pytest.mark.asyncio
    async def test_run_timeout(self, project_dir: Path, tracker: ProgressTracker) -> None:
        """Runs exceeding the ceiling should fail instead of hanging."""
        settings = PipelineSettings(scan_timeout=10, poll_interval=0.01)
        pipeline = SnapshotPipeline(
            FakeSyncthing(str(project_dir), states=["syncing"]), FakeCloud(), tracker, settings
        )
        runner = SnapshotRunner(pipeline, run_timeout=0.05, retention=60)

        result = await runner.launch("p1", "token")

        assert result.outcome == SnapshotOutcome.FAILED
        assert "timed out" in (result.error or "")
        await runner.shutdown()

    @pytest.mark.asyncio
    async def test_retention_cleanup(self, project_dir: Path, tracker: ProgressTracker) -> None:
        """Finished state should be forgotten after the retention period."""
        pipeline = SnapshotPipeline(FakeSyncthing(str(project_dir)), FakeCloud(), tracker, FAST)
        runner = SnapshotRunner(pipeline, retention=0.05)
        sub = tracker.subscribe("p1")

        await runner.launch("p1", "token")
        assert tracker.get_state("p1") is not None

        await asyncio.sleep(0.2)
        assert tracker.get_state("p1") is None
        assert sub.closed

    @pytest.mark.asyncio
    async def test_shutdown_cancels_runs(self, project_dir: Path, tracker: ProgressTracker) -> None:
        """Shutdown should cancel live runs and forget their state."""
        settings = PipelineSettings(scan_timeout=10, poll_interval=0.01)
        pipeline = SnapshotPipeline(
            FakeSyncthing(str(project_dir), states=["syncing"]), FakeCloud(), tracker, settings
        )
        runner = SnapshotRunner(pipeline, retention=60)

        task = runner.launch("p1", "token")
        await asyncio.sleep(0.02)
        await runner.shutdown()

        assert task.done()
        assert not runner.is_running("p1")
        assert tracker.get_state("p1") is None
