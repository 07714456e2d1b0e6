"""
Local filesystem primitives used by the commit pipeline.

Every operation runs in a worker thread so the event loop keeps
serving other accounts while disks are busy. A missing path raises
``FileNotFoundError``; anything else surfaces as ``OSError``.
"""

from __future__ import annotations

import asyncio
import os
import shutil
import tempfile
from pathlib import Path


def _remove(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    else:
        path.unlink()


async def remove(path: str | Path) -> None:
    """Delete a file or directory tree. Missing paths are not an error."""
    try:
        await asyncio.to_thread(_remove, Path(path))
    except FileNotFoundError:
        pass


async def mkdirs(path: str | Path) -> None:
    """Create a directory and any missing parents."""
    await asyncio.to_thread(Path(path).mkdir, parents=True, exist_ok=True)


async def stat(path: str | Path) -> os.stat_result:
    """Stat without following symlinks; raises FileNotFoundError if absent."""
    return await asyncio.to_thread(os.lstat, path)


def _write_file(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)

    # Write to temp file first (atomic write pattern)
    fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=".mirror_", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        os.replace(tmp_path, path)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


async def write_file(path: str | Path, data: bytes) -> None:
    """Write ``data`` to ``path``, creating parent directories."""
    await asyncio.to_thread(_write_file, Path(path), data)


async def reset_dir(path: str | Path) -> None:
    """Wipe a directory tree and recreate it empty."""
    await remove(path)
    await mkdirs(path)


def _list_files(path: Path) -> list[str]:
    if not path.is_dir():
        return []
    return sorted(str(p) for p in path.rglob("*") if p.is_file())


async def list_files(path: str | Path) -> list[str]:
    """All files below ``path``, recursively; empty if it doesn't exist."""
    return await asyncio.to_thread(_list_files, Path(path))
