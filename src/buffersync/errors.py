"""Exceptions raised by buffersync."""

from typing import Optional


class BufferSyncError(Exception):
    """Base exception for all buffersync errors."""

    pass


class BufferConnectionError(BufferSyncError):
    """I/O failure on the connection to the buffer server.

    Raised for failed connects and for any read or write that fails on an
    established connection. The client never retries on its own.
    """

    pass


class BufferProtocolError(BufferSyncError):
    """Server answered with an error command or a malformed message."""

    def __init__(self, message: str, command: Optional[int] = None):
        super().__init__(message)
        self.command = command


class ConfigurationError(BufferSyncError):
    """Invalid configuration file or values."""

    pass
