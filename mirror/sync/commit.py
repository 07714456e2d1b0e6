"""
Per-path commit pipeline.

Each watched path owns one pipeline: a queue drained by a single
worker task. A batch is applied to the filesystem, then the path's
change handler runs to completion before the next batch is touched.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import stat
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable

from mirror import localfs
from mirror.sync.exceptions import (
    CommitError,
    HandlerError,
    MirrorError,
    TransportError,
    UnrecognizedChangeError,
)

if TYPE_CHECKING:
    from mirror.providers.base import Change
    from mirror.sync.batch import DeltaBatch
    from mirror.sync.engine import MirrorSync

logger = logging.getLogger(__name__)

ChangeHandler = Callable[[list[str]], Any]
ErrorHandler = Callable[[MirrorError], Any]


@dataclass
class _Job:
    done: asyncio.Future
    batch: DeltaBatch | None = None
    # Pre-computed notification, used when announcing existing local state
    changed: list[str] | None = None


class CommitPipeline:
    """
    Serialized filesystem commits for one watched path.

    Args:
        mirror: Owning engine (for path translation, content fetches
            and account-wide error broadcast)
        path: Normalized watched path
        on_change: Called with the affected local paths of each batch
        on_error: Called with any error affecting this path
    """

    def __init__(
        self,
        mirror: MirrorSync,
        path: str,
        on_change: ChangeHandler,
        on_error: ErrorHandler,
    ):
        self.mirror = mirror
        self.path = path
        self.on_change = on_change
        self.on_error = on_error
        self.local_dir = mirror.to_local_path(path)
        self._queue: asyncio.Queue[_Job] = asyncio.Queue()
        self._worker: asyncio.Task | None = None
        self._current: _Job | None = None
        self._closed = False
        self._handler_tasks: set[asyncio.Future] = set()

    def submit(self, batch: DeltaBatch) -> asyncio.Future:
        """Queue a path-scoped batch; the future resolves once it's handled."""
        return self._enqueue(_Job(done=self._new_future(), batch=batch))

    def announce(self, local_paths: list[str]) -> asyncio.Future:
        """Queue a notification for paths that are already on disk."""
        return self._enqueue(_Job(done=self._new_future(), changed=list(local_paths)))

    def close(self) -> None:
        """Stop the worker and release anyone waiting on queued batches."""
        self._closed = True

        if self._worker is not None and self._worker is not asyncio.current_task():
            self._worker.cancel()
        self._worker = None

        if self._current is not None:
            _resolve(self._current.done)
        while not self._queue.empty():
            _resolve(self._queue.get_nowait().done)

    def report(self, err: MirrorError) -> None:
        """Hand an error to this path's error handler."""
        try:
            result = self.on_error(err)
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._handler_tasks.add(task)
                task.add_done_callback(self._handler_tasks.discard)
        except Exception:
            logger.exception(f"Error handler for {self.path} raised")

    def _new_future(self) -> asyncio.Future:
        return asyncio.get_running_loop().create_future()

    def _enqueue(self, job: _Job) -> asyncio.Future:
        if self._closed:
            _resolve(job.done)
            return job.done

        logger.debug(f"adding changes to {self.path} queue.")
        self._queue.put_nowait(job)

        if self._worker is None or self._worker.done():
            self._worker = asyncio.get_running_loop().create_task(self._run())
        return job.done

    async def _run(self) -> None:
        while not self._closed:
            job = await self._queue.get()
            self._current = job
            try:
                await self._process(job)
            finally:
                self._current = None
                _resolve(job.done)

    async def _process(self, job: _Job) -> None:
        if job.batch is None:
            changed = job.changed or []
        else:
            try:
                changed = await self.commit(job.batch)
            except TransportError as e:
                self.mirror.fail(e)
                return
            except CommitError as e:
                logger.warning(f"Commit for {self.path} failed: {e}")
                self.report(e)
                return

            if not changed and not job.batch.blank_slate:
                return

        if self._closed:
            return

        try:
            result = self.on_change(changed)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.exception(f"Change handler for {self.path} raised")
            err = HandlerError(f"Change handler for {self.path} failed: {e}")
            err.__cause__ = e
            self.report(err)

    async def commit(self, batch: DeltaBatch) -> list[str]:
        """
        Apply a batch to the local mirror of this path.

        Args:
            batch: Path-scoped, complete batch

        Returns:
            Local paths touched, in feed order

        Raises:
            CommitError: If the filesystem rejects an operation
            TransportError: If file content couldn't be fetched
        """
        logger.debug(f"committing {len(batch.changes)} changes to {self.path}.")

        if batch.blank_slate:
            logger.info(f"Blank slate: resetting {self.local_dir}")
            try:
                await localfs.reset_dir(self.local_dir)
            except OSError as e:
                raise CommitError(f"Failed to reset {self.local_dir}: {e}", path=self.path) from e

        changed = []
        for change in batch.changes:
            changed.append(await self.apply(change))
        return changed

    async def apply(self, change: Change) -> str:
        """Commit a single change; returns its local path."""
        local_path = self.mirror.to_local_path(change.path)

        try:
            if change.was_removed:
                logger.debug(f"{change.path} was deleted.")
                await localfs.remove(local_path)

            elif change.stat is not None and change.stat.is_file:
                logger.debug(f"{change.path} is now a file.")
                await self._replace_with_file(change, local_path)

            elif change.stat is not None and change.stat.is_folder:
                logger.debug(f"{change.path} is now a folder.")
                await self._replace_with_folder(local_path)

            else:
                raise UnrecognizedChangeError(
                    f"Unable to commit change for {change.path}", path=change.path
                )

        except OSError as e:
            raise CommitError(f"Failed to commit {change.path}: {e}", path=change.path) from e

        return local_path

    async def _replace_with_file(self, change: Change, local_path: str) -> None:
        # Clear the local path and fetch content independently; write once both are done
        removed, content = await asyncio.gather(
            localfs.remove(local_path),
            self.mirror.read_remote(change.path, change.stat.source_id),
            return_exceptions=True,
        )

        if isinstance(content, BaseException):
            raise content
        if isinstance(removed, BaseException):
            raise removed

        await localfs.write_file(local_path, content)

    async def _replace_with_folder(self, local_path: str) -> None:
        try:
            st = await localfs.stat(local_path)
        except FileNotFoundError:
            await localfs.mkdirs(local_path)
            return

        # Already a folder, nothing to do
        if _is_dir(st):
            return

        await localfs.remove(local_path)
        await localfs.mkdirs(local_path)


def _is_dir(st) -> bool:
    return stat.S_ISDIR(st.st_mode)


def _resolve(future: asyncio.Future) -> None:
    if not future.done():
        future.set_result(None)
