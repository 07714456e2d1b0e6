"""
Mirror engine: keeps local directories in step with a remote delta feed.

One ``MirrorSync`` per (account, local root). It owns the cursor, runs
the watch loop (long-poll, pull, backoff), splits each complete batch
across the watched paths and hands the slices to per-path commit
pipelines. The loop is only re-armed once every pipeline triggered by
a batch has finished.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import TYPE_CHECKING

from mirror import localfs
from mirror.sync.batch import DeltaBatch
from mirror.sync.commit import ChangeHandler, CommitPipeline, ErrorHandler
from mirror.sync.exceptions import MirrorError, TransportError
from mirror.sync.paths import normalize_path, to_local_path
from mirror.sync.registry import instance_key, instances

if TYPE_CHECKING:
    from mirror.providers.base import RemoteFeed

logger = logging.getLogger(__name__)


class WatchState(Enum):
    NO_CURSOR = "no_cursor"
    IDLE = "idle"
    IDLE_WATCHING = "idle_watching"
    BACKOFF = "backoff"
    PULLING = "pulling"
    COMMITTING = "committing"
    FAILED = "failed"
    STOPPED = "stopped"


def _transport_error(message: str, cause: Exception) -> TransportError:
    err = TransportError(f"{message}: {cause}")
    err.__cause__ = cause
    return err


def _ignore_changes(paths: list[str]) -> None:
    pass


def _log_error(err: MirrorError) -> None:
    logger.error(f"Unhandled mirror error: {err}")


class MirrorSync:
    """
    Synchronization engine for one remote account and one local root.

    Use ``MirrorSync.open`` rather than the constructor so that repeated
    registrations for the same account share cursor and watch state.

    Args:
        feed: Remote delta feed for the account
        root: Local directory the account is mirrored into
    """

    def __init__(self, feed: RemoteFeed, root: str):
        self.feed = feed
        self.root = str(root)
        self.key = instance_key(feed.uid, self.root)
        self.cursor: str | None = None
        self.paths: dict[str, CommitPipeline] = {}
        self.state = WatchState.NO_CURSOR

        self._alive = True
        self._poll_task: asyncio.Task | None = None
        self._pull_task: asyncio.Task | None = None
        self._commit_task: asyncio.Task | None = None
        self._backoff: asyncio.Handle | None = None
        self._side_tasks: set[asyncio.Task] = set()

    @classmethod
    def open(cls, feed: RemoteFeed, root: str) -> MirrorSync:
        """Return the live engine for this account and root, creating it if needed."""
        return instances.get_or_create(instance_key(feed.uid, root), lambda: cls(feed, root))

    @property
    def alive(self) -> bool:
        return self._alive

    def to_local_path(self, path: str) -> str:
        """Translate a remote path into its location below the local root."""
        return to_local_path(self.root, path)

    # Subscription

    def sync(
        self,
        path: str | None = None,
        on_error: ErrorHandler | None = None,
        on_change: ChangeHandler | None = None,
    ) -> MirrorSync:
        """
        Mirror a remote folder and get notified of changes.

        Must be called from within a running event loop.

        Args:
            path: Folder within the account to watch (default: root)
            on_error: Called with a MirrorError when something goes wrong.
                Once triggered the path is not resumed automatically.
            on_change: Called with the local paths touched by each
                committed batch. May be a coroutine function; the next
                batch for this path waits until it returns.

        Returns:
            This engine
        """
        if not self._alive:
            raise MirrorError(f"Mirror {self.key} has been stopped")

        path = normalize_path(path)
        on_change = on_change or _ignore_changes
        on_error = on_error or _log_error

        pipeline = self.paths.get(path)
        if pipeline is not None:
            pipeline.on_change = on_change
            pipeline.on_error = on_error
        else:
            pipeline = CommitPipeline(self, path, on_change, on_error)
            self.paths[path] = pipeline
            logger.info(f"Watching {path} in {self.key}")

            # Joining an instance that already synced: report what is on disk
            if self.cursor is not None:
                task = asyncio.get_running_loop().create_task(self._announce_local_state(pipeline))
                self._side_tasks.add(task)
                task.add_done_callback(self._side_tasks.discard)

        if self.state is WatchState.FAILED:
            self._recover()

        self.watch_for_changes()
        return self

    async def stop_sync(self, path: str | None = None) -> None:
        """
        Stop mirroring a folder.

        When the last folder is removed the long-poll is aborted, the
        engine is evicted from the instance cache and the local root
        is reset to an empty directory.
        """
        path = normalize_path(path)

        pipeline = self.paths.pop(path, None)
        if pipeline is not None:
            pipeline.close()
            logger.info(f"Stopped watching {path} in {self.key}")

        if self.paths or not self._alive:
            return

        await self.close()

    async def close(self) -> None:
        """Tear the engine down and wipe its local root."""
        self._alive = False
        self.state = WatchState.STOPPED

        self._cancel_poll()
        self._cancel_backoff()
        _cancel(self._pull_task)
        _cancel(self._commit_task)
        self._pull_task = None
        self._commit_task = None
        for task in list(self._side_tasks):
            _cancel(task)

        for pipeline in list(self.paths.values()):
            pipeline.close()
        self.paths.clear()

        logger.debug("removing from cache")
        instances.evict(self.key, self)

        logger.info(f"Resetting local root {self.root}")
        await localfs.reset_dir(self.root)

    # Watch loop

    def watch_for_changes(self) -> MirrorSync:
        """
        Advance the watch loop.

        Without a cursor this pulls immediately. Otherwise a long-poll
        is started unless one is already outstanding, a pull or commit
        is in progress, or the feed asked us to back off.
        """
        if not self._alive:
            return self

        if self.state not in (WatchState.NO_CURSOR, WatchState.IDLE):
            logger.debug(f"watch_for_changes ignored in state {self.state.value}")
            return self

        if self.cursor is None:
            return self.pull_changes()

        logger.debug("watching for changes...")
        self.state = WatchState.IDLE_WATCHING
        self._poll_task = asyncio.get_running_loop().create_task(self._poll(self.cursor))
        return self

    async def _poll(self, cursor: str) -> None:
        try:
            result = await self.feed.poll_for_changes(cursor)
        except Exception as e:
            if self._is_current_poll():
                self._poll_task = None
                self.fail(_transport_error("Polling for changes failed", e))
            return

        if not self._is_current_poll():
            logger.debug("no longer watching for changes, discarding poll result.")
            return

        self._poll_task = None

        if not result.has_changes:
            delay = result.retry_after or 0
            logger.debug(f"No changes reported. Polling again in {delay} seconds.")
            self.state = WatchState.BACKOFF
            loop = asyncio.get_running_loop()
            if delay > 0:
                self._backoff = loop.call_later(delay, self._end_backoff)
            else:
                self._backoff = loop.call_soon(self._end_backoff)
            return

        logger.debug("changes reported, processing...")
        self.state = WatchState.IDLE
        self.pull_changes()

    def _is_current_poll(self) -> bool:
        return self._alive and self._poll_task is asyncio.current_task()

    def _end_backoff(self) -> None:
        self._backoff = None
        if not self._alive or self.state is not WatchState.BACKOFF:
            return
        self.state = WatchState.IDLE
        self.watch_for_changes()

    # Delta puller

    def pull_changes(self) -> MirrorSync:
        """
        Pull every pending page of changes, then dispatch the batch.

        A call made while a pull or commit is already running is dropped.
        """
        if not self._alive:
            return self

        if self.state in (WatchState.PULLING, WatchState.COMMITTING, WatchState.FAILED):
            logger.debug(f"pull_changes ignored in state {self.state.value}")
            return self

        self._cancel_poll()
        self._cancel_backoff()

        logger.debug("pulling changes...")
        self.state = WatchState.PULLING
        self._pull_task = asyncio.get_running_loop().create_task(self._pull_all())
        return self

    async def _pull_all(self) -> None:
        batch = DeltaBatch()
        cursor = self.cursor

        try:
            while True:
                page = await self.feed.pull_changes(cursor)
                if not self._alive:
                    return

                logger.debug(f"{len(page.changes)} changes reported.")
                batch.extend(page)
                cursor = page.cursor

                if batch.is_complete:
                    break
                logger.debug("more changes to pull, pulling...")

        except Exception as e:
            self._pull_task = None
            if self._alive:
                # The stored cursor still points before the failed page
                self.fail(_transport_error("Pulling changes failed", e))
            return

        self._pull_task = None
        self.cursor = cursor
        self.dispatch(batch)

    # Dispatcher

    def dispatch(self, batch: DeltaBatch) -> None:
        """Route a complete batch to the pipelines of the paths it touches."""
        pending = []

        for path, pipeline in list(self.paths.items()):
            scoped = batch.for_path(path)
            logger.debug(f"{len(scoped.changes)} changes remaining after filtering for {path}.")

            # Blank slate resets every watched path, even without entries
            if not scoped.changes and not scoped.blank_slate:
                continue

            pending.append(pipeline.submit(scoped))

        if not pending:
            # None of our paths were changed, go straight back to watching
            self.state = WatchState.IDLE
            self.watch_for_changes()
            return

        self.state = WatchState.COMMITTING
        self._commit_task = asyncio.get_running_loop().create_task(self._await_commits(pending))

    async def _await_commits(self, pending: list[asyncio.Future]) -> None:
        await asyncio.gather(*pending, return_exceptions=True)
        self._commit_task = None

        if not self._alive or self.state is not WatchState.COMMITTING:
            return

        logger.debug("all commits finished, resuming watch.")
        self.state = WatchState.IDLE
        self.watch_for_changes()

    # Errors

    def fail(self, err: MirrorError) -> None:
        """
        Report an account-wide error to every watched path.

        The watch loop stops until a path is registered again.
        """
        logger.error(f"Mirror {self.key} failed: {err}")

        self._cancel_poll()
        self._cancel_backoff()
        if self._alive:
            self.state = WatchState.FAILED

        for pipeline in list(self.paths.values()):
            pipeline.report(err)

    def _recover(self) -> None:
        if self._commit_task is not None:
            # Let running commits re-arm the loop when they finish
            self.state = WatchState.COMMITTING
        elif self.cursor is None:
            self.state = WatchState.NO_CURSOR
        else:
            self.state = WatchState.IDLE
        logger.debug(f"recovering from failure in state {self.state.value}")

    async def read_remote(self, path: str, source_id: str | None = None) -> bytes:
        """Fetch file content from the feed, as a TransportError on failure."""
        try:
            return await self.feed.read_file(path, source_id)
        except Exception as e:
            raise _transport_error(f"Failed to fetch {path}", e) from e

    async def _announce_local_state(self, pipeline: CommitPipeline) -> None:
        try:
            existing = await localfs.list_files(pipeline.local_dir)
        except OSError as e:
            logger.warning(f"Could not list {pipeline.local_dir}: {e}")
            return

        if existing and self.paths.get(pipeline.path) is pipeline:
            pipeline.announce(existing)

    # Handles

    def _cancel_poll(self) -> None:
        if self._poll_task is not None:
            logger.debug("aborting outstanding poll")
            _cancel(self._poll_task)
            self._poll_task = None

    def _cancel_backoff(self) -> None:
        if self._backoff is not None:
            self._backoff.cancel()
            self._backoff = None


def _cancel(task: asyncio.Task | None) -> None:
    if task is not None and task is not asyncio.current_task() and not task.done():
        task.cancel()


def start_mirror(
    feed: RemoteFeed,
    root: str,
    path: str | None = None,
    on_error: ErrorHandler | None = None,
    on_change: ChangeHandler | None = None,
) -> MirrorSync:
    """
    Convenience function for keeping a folder in sync.

    Args:
        feed: Remote delta feed for the account
        root: Local directory for the account's mirror
        path: Folder within the account to limit the sync to (if any)
        on_error: Called when an error occurs
        on_change: Called with the local paths touched by each batch

    Returns:
        The (possibly shared) MirrorSync instance
    """
    mirror = MirrorSync.open(feed, root)
    mirror.sync(path, on_error, on_change)
    return mirror
