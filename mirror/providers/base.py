"""
Remote feed interface consumed by the mirror engine.

A feed exposes a cursor-based delta stream for one account: long-poll
for "anything new?", pull pages of changes, and read file content.
Paths are absolute and case-folded (``/docs/a.txt``).
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field


@dataclass(frozen=True)
class EntryStat:
    """Metadata for a path that exists remotely."""

    is_file: bool = False
    is_folder: bool = False
    size: int | None = None
    revision: str | None = None
    # Feed-specific handle fixed when the page was pulled; later entries
    # in the same batch may move the path elsewhere
    source_id: str | None = None


@dataclass(frozen=True)
class Change:
    """One change record from the delta feed."""

    path: str
    was_removed: bool = False
    stat: EntryStat | None = None

    @classmethod
    def removed(cls, path: str) -> "Change":
        return cls(path=path, was_removed=True)

    @classmethod
    def file(
        cls,
        path: str,
        size: int | None = None,
        revision: str | None = None,
        source_id: str | None = None,
    ) -> "Change":
        stat = EntryStat(is_file=True, size=size, revision=revision, source_id=source_id)
        return cls(path=path, stat=stat)

    @classmethod
    def folder(cls, path: str) -> "Change":
        return cls(path=path, stat=EntryStat(is_folder=True))


@dataclass
class PollResult:
    """Result of a long-poll against the feed."""

    has_changes: bool
    retry_after: float = 0


@dataclass
class PulledChanges:
    """A single page of changes."""

    cursor: str
    changes: list[Change] = field(default_factory=list)
    should_pull_again: bool = False
    blank_slate: bool = False


class RemoteFeed(ABC):
    """
    Capability set the engine needs from a hosted storage service.

    Implementations are free to block internally as long as the
    coroutines yield to the event loop (e.g. via ``asyncio.to_thread``).
    """

    @property
    @abstractmethod
    def uid(self) -> str:
        """Account identity; part of the engine's instance cache key."""

    @abstractmethod
    async def poll_for_changes(self, cursor: str) -> PollResult:
        """Wait until changes after ``cursor`` exist or the feed times out.

        The engine runs this as a task and cancels it on teardown.
        """

    @abstractmethod
    async def pull_changes(self, cursor: str | None) -> PulledChanges:
        """Fetch the page of changes after ``cursor``.

        A ``None`` cursor asks for the complete current state, reported
        with ``blank_slate=True``.
        """

    @abstractmethod
    async def read_file(self, path: str, source_id: str | None = None) -> bytes:
        """Return the full content of the remote file at ``path``.

        ``source_id`` is the entry's ``EntryStat.source_id`` when the feed
        set one, and takes precedence over the path.
        """
