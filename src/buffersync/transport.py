"""
Stream transport to the buffer server.

A SocketChannel owns exactly one TCP connection. Use it as a context manager
(or call close()) so the socket is released on every exit path.
"""

import logging
import socket
from typing import Optional

from .errors import BufferConnectionError

logger = logging.getLogger(__name__)


class SocketChannel:
    """Blocking TCP connection with exact-length reads."""

    def __init__(self, read_timeout_s: Optional[float] = None,
                 connect_timeout_s: Optional[float] = 10.0):
        """
        Args:
            read_timeout_s: Socket timeout once connected. None blocks
                forever, which long WAIT_DAT requests rely on.
            connect_timeout_s: Timeout of the TCP handshake
        """
        self.read_timeout_s = read_timeout_s
        self.connect_timeout_s = connect_timeout_s
        self.host: Optional[str] = None
        self.port: Optional[int] = None
        self._sock: Optional[socket.socket] = None

    def connect(self, host: str, port: int) -> bool:
        """Open the connection, closing any previous one first."""
        self.close()
        self.host = host
        self.port = port
        try:
            sock = socket.create_connection((host, port), timeout=self.connect_timeout_s)
        except OSError as e:
            raise BufferConnectionError(f"Socket error connecting to {host}:{port}: {e}") from e

        try:
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
            sock.settimeout(self.read_timeout_s)
        except OSError as e:
            sock.close()
            raise BufferConnectionError(f"Socket error configuring {host}:{port}: {e}") from e

        self._sock = sock
        logger.info(f"Connected to buffer at {host}:{port}")
        return True

    @property
    def is_connected(self) -> bool:
        return self._sock is not None

    def _require_socket(self) -> socket.socket:
        if self._sock is None:
            raise BufferConnectionError("Not connected to a buffer server")
        return self._sock

    def write(self, data: bytes) -> int:
        sock = self._require_socket()
        try:
            sock.sendall(data)
        except OSError as e:
            self.close()
            raise BufferConnectionError(f"Write to {self.host}:{self.port} failed: {e}") from e
        return len(data)

    def read_exact(self, num_bytes: int) -> bytes:
        """Read exactly ``num_bytes``; a closed connection before that is an error."""
        sock = self._require_socket()
        buf = bytearray(num_bytes)
        view = memoryview(buf)
        received = 0
        try:
            while received < num_bytes:
                count = sock.recv_into(view[received:], num_bytes - received)
                if count == 0:
                    raise BufferConnectionError(
                        f"Connection to {self.host}:{self.port} closed after "
                        f"{received}/{num_bytes} bytes"
                    )
                received += count
        except OSError as e:
            self.close()
            raise BufferConnectionError(f"Read from {self.host}:{self.port} failed: {e}") from e
        except BufferConnectionError:
            self.close()
            raise
        return bytes(buf)

    def close(self):
        if self._sock is None:
            return
        try:
            self._sock.close()
        finally:
            self._sock = None
            logger.debug(f"Closed connection to {self.host}:{self.port}")

    def __enter__(self) -> "SocketChannel":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
