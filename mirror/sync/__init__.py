"""
Mirror engine for remote-to-local directory synchronization.
"""

from mirror.sync.batch import DeltaBatch
from mirror.sync.commit import CommitPipeline
from mirror.sync.engine import MirrorSync, WatchState, start_mirror
from mirror.sync.exceptions import (
    CommitError,
    HandlerError,
    MirrorError,
    TransportError,
    UnrecognizedChangeError,
)
from mirror.sync.paths import normalize_path, to_local_path
from mirror.sync.registry import instances

__all__ = [
    "MirrorSync",
    "WatchState",
    "start_mirror",
    "CommitPipeline",
    "DeltaBatch",
    "instances",
    "normalize_path",
    "to_local_path",
    "MirrorError",
    "TransportError",
    "CommitError",
    "UnrecognizedChangeError",
    "HandlerError",
]
