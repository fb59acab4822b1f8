"""Exceptions for git-sync-reloader."""


class SyncError(Exception):
    """Base class for recoverable errors raised by a sync phase.

    Attributes:
        kind (str): A short machine-readable error category.
    """

    kind: str = "error"

    def __init__(self, message: str, kind: str | None = None):
        super().__init__(message)
        if kind:
            self.kind = kind

    def describe(self) -> str:
        """Returns '<kind>: <message>' for logs and status reports."""
        return f"{self.kind}: {self}"


class FetchError(SyncError):
    """Raised when the upstream repository state could not be fetched.

    Kinds: ``transport``, ``timeout``, ``missing``.
    """

    kind = "transport"


class MirrorError(SyncError):
    """Raised when a mirror operation fails.

    The plan is aborted at the failing operation; already-applied operations
    are left in place.

    Kinds: ``permission``, ``conflict``, ``io``, ``timeout``.
    """

    kind = "io"

    def __init__(self, message: str, path: str = "", kind: str | None = None):
        super().__init__(message, kind)
        self.path = path

    def describe(self) -> str:
        where = f" ({self.path})" if self.path else ""
        return f"{self.kind}{where}: {self}"


class ReloadError(SyncError):
    """Raised when the dependent process could not be told to reload.

    Kinds: ``signal``, ``command``, ``http``, ``kubernetes``, ``timeout``.
    """

    kind = "signal"


class ConfigError(ValueError):
    """Raised when the configuration cannot drive a sync process."""
