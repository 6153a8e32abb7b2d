# garage/server/tcp.py
from __future__ import annotations

import logging
import socket
import socketserver
import ssl
import threading
from typing import Optional, Set, Tuple, Type

from garage.transport.errors import TransportError
from garage.transport.sockets import StreamSocket, accept_tls


class TcpServer(socketserver.ThreadingTCPServer):
    """
    Thread-per-connection TCP listener with optional TLS and a clean stop().

    stop() ends serve_forever, then closes every connection still open so
    handler threads blocked on reads return promptly.
    """

    allow_reuse_address = True
    daemon_threads = True
    label = "TcpServer"

    def __init__(
        self,
        address: Tuple[str, int],
        handler_cls: Type[socketserver.BaseRequestHandler],
        *,
        ssl_context: Optional[ssl.SSLContext] = None,
        handshake_timeout_s: float = 3.0,
        logger: Optional[logging.Logger] = None,
    ):
        self.ssl_context = ssl_context
        self.handshake_timeout_s = float(handshake_timeout_s)
        self.log = logger or logging.getLogger(__name__)

        self._streams: Set[StreamSocket] = set()
        self._streams_lock = threading.Lock()
        self._stopping = threading.Event()
        self._thread: Optional[threading.Thread] = None

        super().__init__(address, handler_cls)

    @property
    def port(self) -> int:
        return self.server_address[1]

    @property
    def stopping(self) -> bool:
        return self._stopping.is_set()

    @property
    def stop_event(self) -> threading.Event:
        return self._stopping

    def secure(self, sock: socket.socket) -> Optional[socket.socket]:
        """TLS-wrap an accepted socket (bounded handshake). None if the handshake failed."""
        if self.ssl_context is None:
            return sock
        try:
            return accept_tls(sock, self.ssl_context, self.handshake_timeout_s)
        except TransportError as e:
            self.log.warning("TLS_HANDSHAKE_FAILED err=%s", e)
            try:
                sock.close()
            except OSError:
                pass
            return None

    def track(self, stream: StreamSocket) -> None:
        with self._streams_lock:
            self._streams.add(stream)

    def untrack(self, stream: StreamSocket) -> None:
        with self._streams_lock:
            self._streams.discard(stream)

    def start(self) -> threading.Thread:
        self._thread = threading.Thread(
            target=self.serve_forever,
            kwargs={"poll_interval": 0.1},
            name=f"{self.label}:{self.port}",
            daemon=True,
        )
        self._thread.start()
        self.log.info("%s_LISTENING port=%d tls=%s", self.label.upper(), self.port, self.ssl_context is not None)
        return self._thread

    def stop(self) -> None:
        self._stopping.set()
        if self._thread is not None:
            self.shutdown()
            self._thread.join(timeout=2.0)
            self._thread = None
        with self._streams_lock:
            streams = list(self._streams)
        for s in streams:
            s.close()
        self.server_close()
