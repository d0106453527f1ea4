"""Command-line interface for syncsnap.

This module provides the main CLI entry point and assembles all commands.

Commands:
- serve: Run the local agent HTTP API
- browse: List a folder the way a snapshot would
- snapshot: Generate and upload a snapshot in the foreground
"""

from __future__ import annotations

import click

from syncsnap.cli.browse import browse
from syncsnap.cli.serve import serve
from syncsnap.cli.snapshot import snapshot


@click.group()
@click.version_option(package_name="syncsnap")
def cli() -> None:
    """syncsnap - Folder snapshots with live progress."""


cli.add_command(serve)
cli.add_command(browse)
cli.add_command(snapshot)


def main() -> None:
    """Entry point for the CLI."""
    cli()


__all__ = [
    "cli",
    "main",
]
