"""Inventory of a synchronized folder.

This module provides:
- FileEntry: Metadata of one file or directory
- browse_files: Flat, depth-limited listing of a folder
- build_tree: Nested tree built from a flat listing
- summarize, format_bytes: Aggregates for progress messages
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path, PurePosixPath
from typing import Any

from syncsnap.agent.snapshot.types import InventoryUnavailableError

logger = logging.getLogger(__name__)


@dataclass
class FileEntry:
    """Metadata of a file or directory in a snapshot.

    Attributes:
        name: Base name.
        path: Path relative to the folder root, with "/" separators.
        size: Size in bytes (as reported by stat for directories).
        is_directory: Whether the entry is a directory.
        mod_time: Last modification time (UTC).
    """

    name: str
    path: str
    size: int
    is_directory: bool
    mod_time: datetime

    @property
    def depth(self) -> int:
        """Number of path segments from the root."""
        return len(PurePosixPath(self.path).parts)

    def to_dict(self) -> dict[str, Any]:
        """Convert to JSON-serializable dict."""
        return {
            "name": self.name,
            "path": self.path,
            "size": self.size,
            "is_directory": self.is_directory,
            "mod_time": self.mod_time.isoformat(),
        }


def browse_files(root: Path | str, max_depth: int = 0) -> list[FileEntry]:
    """List the files and directories below a folder.

    Entries are returned parents first, siblings sorted by name. Entries
    that cannot be read (permission errors, files deleted during the
    walk) are skipped.

    Args:
        root: Folder to list. The root itself is not included.
        max_depth: Maximum depth in path segments; 0 means unlimited.
            Directories at the limit are listed but not descended into.

    Returns:
        List of entries.

    Raises:
        InventoryUnavailableError: If root is missing or not a directory.
    """
    root_path = Path(root)
    if not root_path.is_dir():
        raise InventoryUnavailableError(f"Folder not found: {root_path}")

    entries: list[FileEntry] = []
    _walk(root_path, PurePosixPath(), 1, max_depth, entries)
    logger.debug("Listed %d entries under %s", len(entries), root_path)
    return entries


def _walk(
    directory: Path,
    relative: PurePosixPath,
    depth: int,
    max_depth: int,
    entries: list[FileEntry],
) -> None:
    try:
        with os.scandir(directory) as it:
            children = sorted(it, key=lambda e: e.name)
    except OSError as e:
        logger.debug("Skipping unreadable directory %s: %s", directory, e)
        return

    for child in children:
        try:
            is_dir = child.is_dir(follow_symlinks=False)
            stat = child.stat(follow_symlinks=False)
        except OSError as e:
            logger.debug("Skipping %s: %s", child.path, e)
            continue

        child_relative = relative / child.name
        entries.append(
            FileEntry(
                name=child.name,
                path=child_relative.as_posix(),
                size=stat.st_size,
                is_directory=is_dir,
                mod_time=datetime.fromtimestamp(stat.st_mtime, tz=UTC),
            )
        )

        if is_dir and (max_depth <= 0 or depth < max_depth):
            _walk(Path(child.path), child_relative, depth + 1, max_depth, entries)


def build_tree(entries: list[FileEntry]) -> dict[str, Any]:
    """Build a nested tree from a flat listing.

    Each entry is attached to its nearest ancestor directory present in
    the listing, comparing whole path segments (so "docs2/a" never lands
    under "docs"). Entries without a listed ancestor go under the root.

    Args:
        entries: Flat listing, in any order.

    Returns:
        Root node: {"name": "root", "type": "directory", "children": [...]}.
    """
    root: dict[str, Any] = {"name": "root", "type": "directory", "children": []}
    directories: dict[PurePosixPath, dict[str, Any]] = {}
    nodes: list[tuple[PurePosixPath, dict[str, Any]]] = []

    for entry in entries:
        if entry.path in ("", "."):
            continue
        path = PurePosixPath(entry.path)
        node: dict[str, Any] = {
            "name": entry.name,
            "path": entry.path,
            "size": entry.size,
            "mod_time": entry.mod_time.isoformat(),
            "type": "directory" if entry.is_directory else "file",
        }
        if entry.is_directory:
            node["children"] = []
            directories[path] = node
        nodes.append((path, node))

    for path, node in nodes:
        parent = root
        for ancestor in path.parents:
            if ancestor in directories:
                parent = directories[ancestor]
                break
        parent["children"].append(node)

    return root


def summarize(entries: list[FileEntry]) -> tuple[int, int]:
    """Get the entry count and total file size of a listing."""
    total_size = sum(e.size for e in entries if not e.is_directory)
    return len(entries), total_size


def format_bytes(size: int) -> str:
    """Format a byte count for display (e.g. "1.50 MB")."""
    kb = 1024
    mb = kb * 1024
    gb = mb * 1024
    if size < kb:
        return f"{size} B"
    if size < mb:
        return f"{size / kb:.2f} KB"
    if size < gb:
        return f"{size / mb:.2f} MB"
    return f"{size / gb:.2f} GB"
