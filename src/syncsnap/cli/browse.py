"""Browse command for syncsnap CLI.

Commands:
- browse: List a folder the way a snapshot would
"""

from __future__ import annotations

import json
import sys
from pathlib import Path

import click

from syncsnap.agent.snapshot.inventory import browse_files, build_tree, format_bytes, summarize
from syncsnap.agent.snapshot.types import InventoryUnavailableError


@click.command()
@click.argument("path", type=click.Path(path_type=Path))
@click.option("--max-depth", "-d", type=int, default=0, help="Maximum depth (0 = unlimited).")
@click.option("--tree", is_flag=True, help="Print a nested tree instead of a flat list.")
def browse(path: Path, max_depth: int, tree: bool) -> None:
    """List the files under PATH as JSON."""
    try:
        entries = browse_files(path, max_depth)
    except InventoryUnavailableError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    if tree:
        click.echo(json.dumps(build_tree(entries), indent=2))
    else:
        click.echo(json.dumps([e.to_dict() for e in entries], indent=2))

    count, total_size = summarize(entries)
    click.echo(f"{count} entries, {format_bytes(total_size)}", err=True)
