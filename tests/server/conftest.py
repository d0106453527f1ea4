"""Shared fixtures for server tests."""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from syncsnap.agent.snapshot.tracker import ProgressTracker
from syncsnap.core.config import AgentConfig
from syncsnap.server.app import create_app
from tests.server.fakes import FakeCloud, FakeSyncthing


@pytest.fixture
def project_dir(tmp_path: Path) -> Path:
    """Project folder with a nested file."""
    folder = tmp_path / "project"
    (folder / "docs").mkdir(parents=True)
    (folder / "docs" / "a.txt").write_bytes(b"x" * 100)
    (folder / "readme.md").write_bytes(b"x" * 10)
    return folder


@pytest.fixture
def config(tmp_path: Path) -> AgentConfig:
    """Configuration with short timings."""
    return AgentConfig(
        syncthing_api_key="secret",
        scan_timeout=2.0,
        poll_interval=0.01,
        initial_backoff=0.01,
        retention=60.0,
        data_dir=tmp_path / "data",
    )


@pytest.fixture
def syncthing(project_dir: Path) -> FakeSyncthing:
    """Fake Syncthing knowing a single project."""
    return FakeSyncthing({"p1": str(project_dir)})


@pytest.fixture
def cloud() -> FakeCloud:
    """Fake cloud API."""
    return FakeCloud()


@pytest.fixture
def tracker() -> ProgressTracker:
    """Tracker shared between the app and the test."""
    return ProgressTracker()


@pytest.fixture
def client(
    config: AgentConfig,
    syncthing: FakeSyncthing,
    cloud: FakeCloud,
    tracker: ProgressTracker,
) -> Iterator[TestClient]:
    """Test client running the app lifespan."""
    app = create_app(config, syncthing=syncthing, cloud=cloud, tracker=tracker)  # type: ignore[arg-type]
    with TestClient(app) as test_client:
        yield test_client
