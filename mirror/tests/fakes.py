"""Scripted in-memory feed and helpers for mirror tests."""

import asyncio
import os
from pathlib import Path

from mirror.providers.base import PollResult, PulledChanges, RemoteFeed


class FakeFeed(RemoteFeed):
    """
    Feed that replays scripted pages and poll results.

    Entries in ``pages``/``polls`` may be exceptions, which are raised
    instead of returned. Once polls run out, polling blocks until
    cancelled, like an idle long-poll.
    """

    def __init__(self, uid="user-1", pages=None, polls=None, files=None):
        self._uid = uid
        self.pages = list(pages or [])
        self.polls = list(polls or [])
        self.files = dict(files or {})
        self.pull_calls = []
        self.poll_calls = []
        self.read_calls = []

    @property
    def uid(self):
        return self._uid

    async def poll_for_changes(self, cursor):
        self.poll_calls.append(cursor)
        if not self.polls:
            await asyncio.Event().wait()
        result = self.polls.pop(0)
        if isinstance(result, Exception):
            raise result
        return result

    async def pull_changes(self, cursor):
        self.pull_calls.append(cursor)
        await asyncio.sleep(0)
        if not self.pages:
            return PulledChanges(cursor=cursor or "empty")
        page = self.pages.pop(0)
        if isinstance(page, Exception):
            raise page
        return page

    async def read_file(self, path, source_id=None):
        self.read_calls.append(path)
        await asyncio.sleep(0)
        if path not in self.files:
            raise KeyError(path)
        return self.files[path]


class Recorder:
    """Collects what a watched path's handlers receive."""

    def __init__(self):
        self.changes = []
        self.errors = []

    def on_change(self, paths):
        self.changes.append(paths)

    def on_error(self, err):
        self.errors.append(err)


async def wait_until(predicate, timeout=5.0):
    """Yield to the loop until ``predicate()`` is true."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


def snapshot(root):
    """Map of relative path -> bytes (files) or None (directories)."""
    root = Path(root)
    tree = {}
    for path in sorted(root.rglob("*")):
        rel = os.path.relpath(path, root)
        tree[rel] = path.read_bytes() if path.is_file() else None
    return tree


def page(cursor, changes=(), should_pull_again=False, blank_slate=False):
    return PulledChanges(
        cursor=cursor,
        changes=list(changes),
        should_pull_again=should_pull_again,
        blank_slate=blank_slate,
    )


def no_changes(retry_after=0):
    return PollResult(has_changes=False, retry_after=retry_after)


def has_changes():
    return PollResult(has_changes=True)
