# garage/transport/framed.py
from __future__ import annotations

import logging
import ssl
from typing import Optional

from garage.protocol import Command, CommandKind, Response
from garage.protocol import frames

from .base import CommandChannel, Connection
from .sockets import StreamSocket, open_connection, tls_handshake


class FramedChannel(CommandChannel):
    """
    Fixed 100-byte frames over TCP (optionally TLS).

    The handshake is the TLS handshake; on a plain socket it is a no-op.
    """

    driver = "framed"

    def __init__(
        self,
        host: str,
        port: int,
        *,
        ssl_context: Optional[ssl.SSLContext] = None,
        request_timeout_s: float = 5.0,
        logger: Optional[logging.Logger] = None,
    ):
        self.host = host
        self.port = int(port)
        self.ssl_context = ssl_context
        self.request_timeout_s = float(request_timeout_s)
        self._log = logger or logging.getLogger(__name__)

    def connect(self, timeout: float) -> Connection:
        with self.translated_errors("connect"):
            sock = open_connection(self.host, self.port, timeout, ssl_context=self.ssl_context)
        return Connection(peer=f"{self.host}:{self.port}", handle=StreamSocket(sock))

    def handshake(self, conn: Connection, timeout: float) -> None:
        with self.translated_errors("handshake"):
            tls_handshake(conn.handle.sock, timeout)

    def send(self, conn: Connection, cmd: Command) -> Response:
        stream: StreamSocket = conn.handle
        with self.translated_errors(cmd.kind.value):
            stream.send_all(frames.encode_request(cmd), timeout=self.request_timeout_s)
            raw = stream.recv_exact(frames.FRAME_SIZE, timeout=self.request_timeout_s)
            resp = frames.decode_response(raw)
        self._log.debug("FRAMED_ROUND_TRIP kind=%s ok=%s", cmd.kind.value, resp.ok)
        if cmd.kind is CommandKind.CLOSE:
            return resp
        return self.require_ok(resp)

    def close(self, conn: Connection) -> None:
        if conn.closed:
            return
        conn.closed = True
        conn.handle.close()
