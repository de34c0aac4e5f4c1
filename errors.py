"""Exception classes for BridgeSpace.

Validation errors are raised before any I/O; storage errors carry enough
context for the caller to say which item failed.
"""


class BridgeSpaceError(Exception):
    """Base exception for all sharing errors."""

    pass


class ScopeUnavailable(BridgeSpaceError):
    """Raised when no usable scope can be resolved (e.g. a blank private key)."""

    pass


class QuotaExceeded(BridgeSpaceError):
    """Raised when a file size, file count or text length limit is violated."""

    def __init__(self, message: str, limit: int = None, remaining: int = None):
        super().__init__(message)
        self.limit = limit
        self.remaining = remaining


class StorageWriteFailure(BridgeSpaceError):
    """Raised when a blob or metadata write fails."""

    def __init__(self, message: str, file_name: str = None):
        super().__init__(message)
        self.file_name = file_name


class StorageDeleteFailure(BridgeSpaceError):
    """One side of a two-store delete failed; the other side succeeded."""

    pass


class ParseFailure(BridgeSpaceError):
    """Raised when a stored reference cannot be mapped to a blob path."""

    pass
