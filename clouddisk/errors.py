"""
Error Types

Every failure the client or server can raise derives from DiskError, so
callers can catch the whole family in one place. Transport failures
(TransferConnectionError, ProtocolError) are the retryable ones.
"""


class DiskError(Exception):
    """Base class for clouddisk errors."""


class TransferConnectionError(DiskError):
    """Dial failure, reset, or timeout on a connection."""


class ProtocolError(DiskError):
    """Unexpected EOF mid-frame or a malformed frame."""


class RemoteFileNotFound(DiskError):
    """The server reported that a path does not exist."""

    def __init__(self, path: str):
        super().__init__(f"Remote file not found: {path}")
        self.path = path


class PathEscapeError(DiskError):
    """A client-supplied path resolves outside the server root."""

    def __init__(self, path: str):
        super().__init__(f"Path escapes server root: {path}")
        self.path = path


# Errors worth another attempt on a fresh connection
RETRYABLE_ERRORS = (
    TransferConnectionError,
    ProtocolError,
    OSError,
)
