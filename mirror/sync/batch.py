"""
Accumulation of delta pages into one logical batch.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from mirror.providers.base import Change, PulledChanges
from mirror.sync.paths import path_matches


@dataclass
class DeltaBatch:
    """
    Ordered changes gathered from one or more feed pages.

    Only a complete batch (``should_pull_again`` false) is ever handed
    to the dispatcher.
    """

    changes: list[Change] = field(default_factory=list)
    blank_slate: bool = False
    should_pull_again: bool = False

    @property
    def is_complete(self) -> bool:
        return not self.should_pull_again

    def extend(self, page: PulledChanges) -> None:
        """Append a page, keeping earlier entries and their order."""
        self.changes.extend(page.changes)
        # A reset reported by any page applies to the whole batch
        self.blank_slate = self.blank_slate or page.blank_slate
        self.should_pull_again = page.should_pull_again

    def for_path(self, watched: str) -> DeltaBatch:
        """The slice of this batch under ``watched``, flags copied."""
        return DeltaBatch(
            changes=[c for c in self.changes if path_matches(watched, c.path)],
            blank_slate=self.blank_slate,
            should_pull_again=self.should_pull_again,
        )
