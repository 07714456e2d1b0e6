"""
Remote path normalization and translation to local paths.
"""

from __future__ import annotations

import os


def normalize_path(path: str | None) -> str:
    """
    Normalize a remote path for the watch table.

    Remote paths always carry a leading slash and are compared
    case-insensitively, so the stored form is lower-cased.
    ``None`` or an empty string means the account root.
    """
    if not path:
        return "/"

    if not path.startswith("/"):
        path = "/" + path

    return path.lower()


def path_matches(watched: str, remote_path: str) -> bool:
    """True if ``remote_path`` falls under the watched path (string prefix)."""
    return normalize_path(remote_path).startswith(watched)


def to_local_path(root: str, remote_path: str) -> str:
    """
    Translate a remote path into a path below ``root``.

    Args:
        root: Local mirror root
        remote_path: Path within the remote account, e.g. "/docs/a.txt"

    Returns:
        Local path equivalent, e.g. "<root>/docs/a.txt"
    """
    relative = remote_path.lstrip("/")
    if not relative:
        return root
    return os.path.join(root, relative)
