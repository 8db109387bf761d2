"""A simple TCP client that sends a payload and reads the whole reply.

A reply is read until the server closes the connection; bytes beyond the
response buffer are read and discarded.
"""

from __future__ import annotations

import socket
import ssl
from dataclasses import dataclass, replace

from .settings import debug

READ_CHUNK_SIZE = 64 * 1024
MAX_RESPONSE_SIZE = 1073741824
DEFAULT_TIMEOUT = 5.0
DEFAULT_RESPONSE_BUFFER_SIZE = 100 * 1024


@dataclass
class TCPClientConfig:
    """Client settings; timeouts are in seconds."""

    debug: bool = False
    connection_timeout: float = 0.0
    timeout: float = 0.0
    response_buffer_size: int = 0
    secure: bool = False


def _split_address(address: str) -> tuple[str, int]:
    host, _, port = address.rpartition(":")
    host = host.strip("[]") or "localhost"
    return host, int(port)


class TCPClient:
    """Keeps one connection to ``addr`` and reconnects when it is lost."""

    def __init__(self, addr: str, config: TCPClientConfig | None = None) -> None:
        config = replace(config) if config is not None else TCPClientConfig()
        if config.timeout == 0:
            config.timeout = DEFAULT_TIMEOUT
        config.connection_timeout = config.timeout
        if config.response_buffer_size == 0:
            config.response_buffer_size = DEFAULT_RESPONSE_BUFFER_SIZE
        self.addr = addr
        self.config = config
        self._conn: socket.socket | None = None

    @property
    def connected(self) -> bool:
        """Tell whether a connection is open."""
        return self._conn is not None

    def connect(self) -> None:
        """Open a new connection, closing any previous one."""
        self.disconnect()
        host, port = _split_address(self.addr)
        sock = socket.create_connection((host, port), timeout=self.config.connection_timeout)
        if self.config.secure:
            context = ssl.create_default_context()
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE
            try:
                sock = context.wrap_socket(sock, server_hostname=host)
            except (OSError, ssl.SSLError):
                sock.close()
                raise
        self._conn = sock

    def disconnect(self) -> None:
        """Close the connection if one is open."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None
            debug(1, "[TCPClient] Disconnected: ", self.addr)

    def _is_alive(self) -> bool:
        assert self._conn is not None
        try:
            self._conn.settimeout(0.001)
            peeked = self._conn.recv(1, socket.MSG_PEEK)
        except (socket.timeout, BlockingIOError, ssl.SSLWantReadError):
            return True
        except ConnectionError as exc:
            debug(1, "Detected broken connection.", exc)
            return False
        except OSError:
            return True
        if not peeked:
            debug(1, "[TCPClient] connection closed, reconnecting")
            return False
        return True

    def send(self, data: bytes) -> bytes:
        """Send ``data`` and return the reply, cut to the response buffer size.

        Raises OSError (TimeoutError included) when connecting, writing or
        reading fails.
        """
        if self._conn is None or not self._is_alive():
            debug(1, "[TCPClient] Connecting:", self.addr)
            try:
                self.connect()
            except OSError as exc:
                debug(1, "[TCPClient] Connection error:", exc)
                raise
        conn = self._conn
        assert conn is not None

        if self.config.debug:
            debug(1, "[TCPClient] Sending:", data.decode("utf-8", "replace"))
        try:
            conn.settimeout(self.config.timeout)
            conn.sendall(data)
        except OSError as exc:
            debug(1, "[TCPClient] Write error:", exc, self.addr)
            raise

        limit = self.config.response_buffer_size
        buffer = bytearray()
        read_bytes = 0
        timeout = self.config.timeout
        try:
            while True:
                conn.settimeout(timeout)
                if read_bytes < limit:
                    chunk = conn.recv(limit - read_bytes)
                    if not chunk:
                        break
                    buffer += chunk
                else:
                    chunk = conn.recv(READ_CHUNK_SIZE)
                    if not chunk:
                        break
                read_bytes += len(chunk)
                if read_bytes >= MAX_RESPONSE_SIZE:
                    debug(1, "[TCPClient] Body is more than the max size", MAX_RESPONSE_SIZE, self.addr)
                    break
                # following chunks are expected sooner
                timeout = self.config.timeout / 5
        except OSError as exc:
            debug(1, "[TCPClient] Response read error", exc, self.addr, read_bytes)
            raise

        payload = bytes(buffer[:limit])
        if self.config.debug:
            debug(1, "[TCPClient] Received:", payload.decode("utf-8", "replace"))
        return payload