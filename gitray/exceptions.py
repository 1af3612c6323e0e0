"""
Exceptions for the Gitray sync engine.
"""


class GitrayError(Exception):
    """Base exception for Gitray operations."""


class HashMismatchError(GitrayError):
    """Content changed underneath a path that was assumed to be stable."""

    def __init__(self, path: str, expected: str | None, actual: str | None):
        super().__init__(
            f"Hash mismatch for {path}: expected {expected}, got {actual}"
        )
        self.path = path
        self.expected = expected
        self.actual = actual


class RemoteError(GitrayError):
    """The remote object store refused a request."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class RemoteUnavailableError(RemoteError):
    """Network or remote API failure; the operation can be retried."""


class StoreNotFoundError(RemoteError):
    """The remote store (repository) does not exist or is not accessible."""


class SchemaUpgradeConflictError(GitrayError):
    """Another caller bumped the local database version first."""

    def __init__(self, db_name: str, expected: int, actual: int):
        super().__init__(
            f"Schema upgrade conflict on {db_name}: "
            f"expected version {expected}, found {actual}"
        )
        self.db_name = db_name
        self.expected = expected
        self.actual = actual


class LocalStoreCorruptedError(GitrayError):
    """The local database cannot be read; there is no safe retry path."""


class PatchApplicationError(GitrayError):
    """Raised when a structural patch is malformed."""


class ActionDecodeError(GitrayError):
    """Raised when a journal entry cannot be decoded into a known action."""


class RemoteContentError(GitrayError):
    """A remote file could not be decoded."""

    def __init__(self, path: str, reason: str):
        super().__init__(f"Cannot decode {path}: {reason}")
        self.path = path
        self.reason = reason
