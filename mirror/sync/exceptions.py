"""
Exceptions for mirror operations.
"""


class MirrorError(Exception):
    """Base exception for mirror operations."""

    pass


class TransportError(MirrorError):
    """Talking to the remote feed failed (poll, pull or content fetch).

    Affects every watched path of the account, since the cursor and
    watch state are shared.
    """

    pass


class CommitError(MirrorError):
    """Applying a batch to the local filesystem failed."""

    def __init__(self, message: str, path: str | None = None):
        super().__init__(message)
        self.path = path


class UnrecognizedChangeError(CommitError):
    """Change entry is neither a removal, a file nor a folder."""

    pass


class HandlerError(MirrorError):
    """A consumer's change handler raised."""

    pass
