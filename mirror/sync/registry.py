"""
Process-wide registry of live mirror engines.

One engine per (account uid, local root). Entries are removed
explicitly when an engine tears down, never by garbage collection.
"""

from __future__ import annotations

import logging
import os
from typing import TYPE_CHECKING, Callable

if TYPE_CHECKING:
    from mirror.sync.engine import MirrorSync

logger = logging.getLogger(__name__)


def instance_key(uid: str, root: str) -> str:
    """Cache key for an account identity: ``<uid>:<absolute root>``."""
    return f"{uid}:{os.path.abspath(root)}"


class InstanceCache:
    def __init__(self):
        self._instances: dict[str, MirrorSync] = {}

    def get_or_create(self, key: str, factory: Callable[[], MirrorSync]) -> MirrorSync:
        """Return the live engine for ``key``, creating it on first use."""
        instance = self._instances.get(key)
        if instance is not None:
            logger.debug(f"Reusing mirror instance {key}")
            return instance

        instance = factory()
        self._instances[key] = instance
        logger.debug(f"Registered mirror instance {key}")
        return instance

    def evict(self, key: str, instance: MirrorSync) -> None:
        """Drop ``key`` if it still points at ``instance``."""
        if self._instances.get(key) is instance:
            del self._instances[key]
            logger.debug(f"Evicted mirror instance {key}")

    def clear(self) -> None:
        self._instances.clear()

    def __contains__(self, key: str) -> bool:
        return key in self._instances

    def __len__(self) -> int:
        return len(self._instances)


instances = InstanceCache()
