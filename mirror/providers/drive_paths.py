"""
Path resolution for Google Drive.

Drive addresses files by id and parent ids; the mirror engine wants
absolute, case-folded paths. The index remembers the path it handed
out for every id so later removals and renames can be expressed in
terms of the old path.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Callable

if TYPE_CHECKING:
    from mirror.providers.google_drive import DriveFile

logger = logging.getLogger(__name__)

# Parent chains deeper than this are treated as unresolvable
MAX_DEPTH = 64


class DrivePathIndex:
    """
    In-memory mapping between Drive file ids and mirror paths.

    Handles:
    - Parent folder resolution (fetching unknown parents on demand)
    - Name sanitization (invalid characters)
    - Conflict resolution (duplicate names within a folder)
    - Re-rooting descendants when a folder moves
    """

    # Characters forbidden in filenames on most filesystems
    INVALID_CHARS = '<>:"|?*\\/\x00'

    def __init__(self, root_id: str | None = None):
        self.root_id = root_id
        self._paths: dict[str, str] = {}
        self._ids: dict[str, str] = {}
        # Mirrored entries only: id -> is_folder
        self._kinds: dict[str, bool] = {}

    def reset(self, root_id: str | None = None) -> None:
        """Forget everything, e.g. before a full listing."""
        self.root_id = root_id
        self._paths.clear()
        self._ids.clear()
        self._kinds.clear()

    def snapshot(self) -> tuple:
        """Opaque copy of the current mapping, for ``restore``."""
        return (self.root_id, dict(self._paths), dict(self._ids), dict(self._kinds))

    def restore(self, state: tuple) -> None:
        root_id, paths, ids, kinds = state
        self.root_id = root_id
        self._paths = dict(paths)
        self._ids = dict(ids)
        self._kinds = dict(kinds)

    def path_for(self, file_id: str) -> str | None:
        return self._paths.get(file_id)

    def file_id(self, path: str) -> str | None:
        return self._ids.get(path.lower())

    def build_path(
        self,
        drive_file: DriveFile,
        lookup: Callable[[str], DriveFile | None],
        depth: int = 0,
    ) -> str:
        """
        Build and remember the absolute path for a Drive file.

        Args:
            drive_file: The Drive file to place
            lookup: Fetches metadata for a parent id not seen yet

        Returns:
            Lower-cased absolute path, e.g. "/documents/report.pdf"
        """
        parent_path = self._parent_path(drive_file, lookup, depth)
        name = self._sanitize_name(drive_file.local_name).lower()
        path = self._resolve_conflicts(f"{parent_path}/{name}", drive_file.id)
        self._record(drive_file.id, path)
        if drive_file.is_folder or drive_file.is_downloadable:
            self._kinds[drive_file.id] = drive_file.is_folder
        else:
            self._kinds.pop(drive_file.id, None)
        return path

    def descendants(self, path: str) -> list[tuple[str, str, bool]]:
        """Mirrored entries below ``path`` as (path, file_id, is_folder), parents first."""
        prefix = path + "/"
        return sorted(
            (p, file_id, self._kinds[file_id])
            for p, file_id in self._ids.items()
            if p.startswith(prefix) and file_id in self._kinds
        )

    def forget(self, file_id: str) -> str | None:
        """Drop a file (and anything below it); returns its last path."""
        path = self._paths.pop(file_id, None)
        if path is None:
            return None

        self._ids.pop(path, None)
        self._kinds.pop(file_id, None)
        prefix = path + "/"
        for child_path in [p for p in self._ids if p.startswith(prefix)]:
            child_id = self._ids.pop(child_path)
            self._paths.pop(child_id, None)
            self._kinds.pop(child_id, None)
        return path

    def _parent_path(
        self,
        drive_file: DriveFile,
        lookup: Callable[[str], DriveFile | None],
        depth: int,
    ) -> str:
        # Root-level file (no parents or parent is the drive root)
        if not drive_file.parents:
            return ""
        parent_id = drive_file.parents[0]  # Use first parent
        if parent_id == "root" or parent_id == self.root_id:
            return ""

        if parent_id in self._paths:
            return self._paths[parent_id]

        parent = lookup(parent_id) if depth < MAX_DEPTH else None
        if parent is None:
            logger.warning(f"Parent {parent_id} not found for {drive_file.name}, using temp path")
            return f"/_pending_/{parent_id}"

        return self.build_path(parent, lookup, depth + 1)

    def _record(self, file_id: str, path: str) -> None:
        old = self._paths.get(file_id)
        if old == path:
            return

        if old is not None:
            self._ids.pop(old, None)
            # Folder moved or renamed: carry its descendants along
            prefix = old + "/"
            for child_path in [p for p in self._ids if p.startswith(prefix)]:
                child_id = self._ids.pop(child_path)
                moved = path + child_path[len(old):]
                self._paths[child_id] = moved
                self._ids[moved] = child_id

        self._paths[file_id] = path
        self._ids[path] = file_id

    def _sanitize_name(self, name: str) -> str:
        """Replace invalid filesystem characters and clamp the length."""
        for char in self.INVALID_CHARS:
            name = name.replace(char, "_")

        name = name.strip(". ")
        if not name:
            name = "unnamed"

        if len(name) > 255:
            # Try to preserve extension
            parts = name.rsplit(".", 1)
            if len(parts) == 2 and len(parts[1]) <= 10:
                max_base = 255 - len(parts[1]) - 1
                name = parts[0][:max_base] + "." + parts[1]
            else:
                name = name[:255]

        return name

    def _resolve_conflicts(self, path: str, file_id: str) -> str:
        """Append " (n)" until no other file owns the path."""
        original_path = path
        counter = 1

        while self._ids.get(path, file_id) != file_id:
            head, _, name = original_path.rpartition("/")
            if "." in name:
                base, ext = name.rsplit(".", 1)
                path = f"{head}/{base} ({counter}).{ext}"
            else:
                path = f"{original_path} ({counter})"
            counter += 1

        return path
