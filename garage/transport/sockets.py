# garage/transport/sockets.py
from __future__ import annotations

import socket
import ssl
import threading
from typing import Optional

from garage.core.config import TlsConfig

from .errors import (
    TransportAuthError,
    TransportClosed,
    TransportIOError,
    TransportOpenError,
    TransportTimeout,
)

MAX_LINE = 64 * 1024


def client_ssl_context(tls: TlsConfig) -> Optional[ssl.SSLContext]:
    if not tls.enabled:
        return None
    ctx = ssl.create_default_context(cafile=tls.ca_file)
    ctx.check_hostname = bool(tls.check_hostname)
    if tls.cert_file and tls.key_file:
        ctx.load_cert_chain(tls.cert_file, tls.key_file)
    return ctx


def server_ssl_context(tls: TlsConfig) -> Optional[ssl.SSLContext]:
    if not tls.enabled:
        return None
    ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    ctx.load_cert_chain(tls.cert_file, tls.key_file)
    return ctx


def open_connection(
    host: str,
    port: int,
    timeout: float,
    *,
    ssl_context: Optional[ssl.SSLContext] = None,
) -> socket.socket:
    """
    TCP connect, optionally wrapped for TLS. The TLS handshake is deferred to tls_handshake()
    so it can be bounded separately from the connect.
    """
    try:
        sock = socket.create_connection((host, int(port)), timeout=timeout)
    except socket.timeout as e:
        raise TransportTimeout(f"connect to {host}:{port} timed out: {e}") from None
    except OSError as e:
        raise TransportOpenError(f"connect to {host}:{port} failed: {e}") from None

    sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
    if ssl_context is None:
        return sock

    try:
        return ssl_context.wrap_socket(sock, server_hostname=host, do_handshake_on_connect=False)
    except (OSError, ValueError) as e:
        sock.close()
        raise TransportOpenError(f"TLS wrap failed: {e}") from None


def tls_handshake(sock: socket.socket, timeout: float) -> None:
    """No-op for plain sockets."""
    if not isinstance(sock, ssl.SSLSocket):
        return
    sock.settimeout(timeout)
    try:
        sock.do_handshake()
    except ssl.SSLCertVerificationError as e:
        raise TransportAuthError(f"certificate verification failed: {e}") from None
    except socket.timeout:
        raise TransportTimeout(f"TLS handshake timed out after {timeout}s") from None
    except ssl.SSLError as e:
        raise TransportIOError(f"TLS handshake failed: {e}") from None
    except OSError as e:
        raise TransportIOError(f"TLS handshake failed: {e}") from None


class StreamSocket:
    """
    Buffered wrapper over a connected socket: exact-size reads, line reads, idempotent close.

    close() may be called from another thread to unblock a pending read.
    """

    def __init__(self, sock: socket.socket, *, max_line: int = MAX_LINE):
        self.sock = sock
        self._buf = bytearray()
        self._max_line = int(max_line)
        self._close_lock = threading.Lock()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def peer(self) -> str:
        try:
            host, port = self.sock.getpeername()[:2]
            return f"{host}:{port}"
        except OSError:
            return "?"

    def send_all(self, data: bytes, timeout: Optional[float] = None) -> None:
        if self._closed:
            raise TransportClosed("send on closed socket")
        try:
            self.sock.settimeout(timeout)
            self.sock.sendall(data)
        except socket.timeout:
            raise TransportTimeout(f"send timed out after {timeout}s") from None
        except OSError as e:
            raise TransportIOError(f"send failed: {e}") from None

    def recv_exact(self, n: int, timeout: Optional[float] = None) -> bytes:
        while len(self._buf) < n:
            if not self._fill(timeout):
                raise TransportTimeout(f"read timed out after {timeout}s")
        out = bytes(self._buf[:n])
        del self._buf[:n]
        return out

    def recv_line(self, timeout: Optional[float] = None) -> Optional[bytes]:
        """
        Return one line without its terminator, or None if nothing complete arrived in time.
        A partial line stays buffered for the next call.
        """
        while True:
            idx = self._buf.find(b"\n")
            if idx >= 0:
                line = bytes(self._buf[:idx])
                del self._buf[: idx + 1]
                return line
            if len(self._buf) > self._max_line:
                raise TransportIOError(f"line exceeds {self._max_line} bytes")
            if not self._fill(timeout):
                return None

    def _fill(self, timeout: Optional[float]) -> bool:
        if self._closed:
            raise TransportClosed("read on closed socket")
        try:
            self.sock.settimeout(timeout)
            chunk = self.sock.recv(4096)
        except socket.timeout:
            return False
        except OSError as e:
            if self._closed:
                raise TransportClosed("socket closed locally") from None
            raise TransportIOError(f"read failed: {e}") from None
        if not chunk:
            raise TransportClosed("peer closed the connection")
        self._buf += chunk
        return True

    def close(self) -> None:
        with self._close_lock:
            if self._closed:
                return
            self._closed = True
        try:
            self.sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        try:
            self.sock.close()
        except OSError:
            pass


def accept_tls(sock: socket.socket, ssl_context: ssl.SSLContext, timeout: float) -> ssl.SSLSocket:
    """Server side of tls_handshake(): wrap an accepted socket and complete the handshake in time."""
    try:
        tls = ssl_context.wrap_socket(sock, server_side=True, do_handshake_on_connect=False)
    except (OSError, ValueError) as e:
        raise TransportOpenError(f"TLS wrap failed: {e}") from None
    tls_handshake(tls, timeout)
    return tls
