"""Snapshot command for syncsnap CLI.

Commands:
- snapshot: Generate and upload a snapshot in the foreground
"""

from __future__ import annotations

import asyncio
import json
import sys

import click

from syncsnap.agent.api import CloudClient, SyncthingClient
from syncsnap.agent.snapshot.pipeline import SnapshotPipeline
from syncsnap.agent.snapshot.tracker import TOTAL_STEPS, OperationState, ProgressTracker
from syncsnap.agent.snapshot.types import SnapshotResult
from syncsnap.core.config import AgentConfig
from syncsnap.core.types import SnapshotOutcome


def format_progress(state: OperationState) -> str:
    """Format a progress update as a single status line."""
    return f"[{state.step_number}/{TOTAL_STEPS}] {state.progress:3d}% {state.step.value:<11} {state.message}"


async def run_snapshot(config: AgentConfig, project_id: str, token: str) -> SnapshotResult:
    """Run one pipeline, echoing progress updates as they happen."""
    tracker = ProgressTracker()
    subscription = tracker.subscribe(project_id)

    async def echo_progress() -> None:
        async for state in subscription:
            click.echo(format_progress(state), err=True)

    async with (
        SyncthingClient(
            config.syncthing_url, config.syncthing_api_key, timeout=config.request_timeout
        ) as syncthing,
        CloudClient(config.cloud_url, timeout=config.request_timeout) as cloud,
    ):
        pipeline = SnapshotPipeline(syncthing, cloud, tracker, config.pipeline_settings())
        printer = asyncio.create_task(echo_progress())
        try:
            return await pipeline.run(project_id, token, timeout=config.run_timeout)
        finally:
            tracker.cleanup(project_id)
            await printer


@click.command()
@click.argument("project_id")
@click.option("--token", "-t", envvar="SYNCSNAP_ACCESS_TOKEN", required=True, help="Cloud access token.")
def snapshot(project_id: str, token: str) -> None:
    """Generate a snapshot of PROJECT_ID and upload it.

    Progress is printed to stderr, the result as JSON to stdout. Exits
    with status 1 if no snapshot could be produced.
    """
    config = AgentConfig.from_env()
    result = asyncio.run(run_snapshot(config, project_id, token))
    click.echo(json.dumps(result.to_dict(), indent=2))

    if result.outcome == SnapshotOutcome.LOCAL_ONLY:
        click.echo(f"Warning: snapshot not uploaded: {result.upload_error}", err=True)
    elif result.outcome == SnapshotOutcome.FAILED:
        click.echo(f"Error: {result.error}", err=True)
        sys.exit(1)
