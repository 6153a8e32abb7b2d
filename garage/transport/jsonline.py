# garage/transport/jsonline.py
from __future__ import annotations

import logging
import ssl
from typing import Optional

from garage.core.errors import ChannelTimeoutError
from garage.protocol import Command, CommandKind, Response
from garage.protocol import json_codec

from .base import CommandChannel, Connection
from .sockets import StreamSocket, open_connection, tls_handshake


class JsonLineChannel(CommandChannel):
    """
    One JSON object per line over TCP/TLS: {auth, type, ts} -> {ok, message[, code]}.

    Authentication rides on every request; the handshake only covers TLS.
    """

    driver = "json"

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
            stream.send_all(json_codec.encode_request(cmd), timeout=self.request_timeout_s)
            line = stream.recv_line(timeout=self.request_timeout_s)
            if line is None:
                raise ChannelTimeoutError(
                    f"No reply to '{cmd.kind.value}' within {self.request_timeout_s}s.",
                    details={"driver": self.driver},
                )
            resp = json_codec.decode_response(line)
        self._log.debug("JSON_ROUND_TRIP kind=%s ok=%s", cmd.kind.value, resp.ok)
        if cmd.kind is CommandKind.CLOSE:
            return resp
        return self.require_ok(resp)

    def close(self, conn: Connection) -> None:
        if conn.closed:
            return
        conn.closed = True
        conn.handle.close()
