# garage/server/socket_server.py
from __future__ import annotations

import logging
import socketserver
import ssl
import time
from abc import ABC, abstractmethod
from typing import Optional, Tuple

from garage.core.errors import AuthError, GarageError
from garage.protocol import Command, CommandKind, ProtocolError, Response
from garage.protocol import frames, json_codec
from garage.transport.errors import TransportClosed, TransportError, TransportTimeout
from garage.transport.sockets import StreamSocket

from .dispatcher import CommandDispatcher
from .tcp import TcpServer

_POLL_S = 0.5


class _Codec(ABC):
    """Request framing for one socket encoding; read() returns None on an idle poll."""

    name = "base"

    @abstractmethod
    def read(self, stream: StreamSocket, timeout: float) -> Optional[bytes]: ...

    @abstractmethod
    def decode(self, raw: bytes, received_at: float) -> Command: ...

    @abstractmethod
    def encode(self, resp: Response) -> bytes: ...


class FramedCodec(_Codec):
    name = "framed"

    def read(self, stream: StreamSocket, timeout: float) -> Optional[bytes]:
        try:
            return stream.recv_exact(frames.FRAME_SIZE, timeout=timeout)
        except TransportTimeout:
            return None

    def decode(self, raw: bytes, received_at: float) -> Command:
        return frames.decode_request(raw, received_at=received_at)

    def encode(self, resp: Response) -> bytes:
        return frames.encode_response(resp)


class JsonCodec(_Codec):
    name = "json"

    def read(self, stream: StreamSocket, timeout: float) -> Optional[bytes]:
        return stream.recv_line(timeout=timeout)

    def decode(self, raw: bytes, received_at: float) -> Command:
        return json_codec.decode_request(raw, received_at=received_at)

    def encode(self, resp: Response) -> bytes:
        return json_codec.encode_response(resp)


CODECS = {"framed": FramedCodec, "json": JsonCodec}


class _CommandHandler(socketserver.BaseRequestHandler):
    """
    One client connection: strictly request/response, one command at a time.

    The connection ends on CLOSE, an auth failure, an undecodable or unknown
    command, EOF, or idle_timeout_s without a request.
    """

    server: "CommandServer"

    def handle(self) -> None:
        srv = self.server
        log = srv.log
        sock = srv.secure(self.request)
        if sock is None:
            return

        stream = StreamSocket(sock)
        peer = stream.peer()
        srv.track(stream)
        log.info("CLIENT_CONNECTED peer=%s codec=%s", peer, srv.codec.name)
        try:
            self._serve(stream, peer)
        except TransportClosed:
            log.info("CLIENT_EOF peer=%s", peer)
        except TransportError as e:
            log.warning("CLIENT_IO_ERROR peer=%s err=%s", peer, e)
        finally:
            srv.untrack(stream)
            stream.close()
            log.info("CLIENT_DISCONNECTED peer=%s", peer)

    def _serve(self, stream: StreamSocket, peer: str) -> None:
        srv = self.server
        idle_since = time.monotonic()

        while not srv.stopping:
            raw = srv.codec.read(stream, _POLL_S)
            if raw is None:
                if time.monotonic() - idle_since > srv.idle_timeout_s:
                    srv.log.info("CLIENT_IDLE_TIMEOUT peer=%s", peer)
                    return
                continue
            idle_since = time.monotonic()

            keep_open = True
            try:
                cmd = srv.codec.decode(raw, time.time())
                resp = srv.dispatcher.handle(cmd)
                keep_open = cmd.kind is not CommandKind.CLOSE
            except AuthError as e:
                resp = srv.dispatcher.error_response(e)
                keep_open = False
            except GarageError as e:
                resp = srv.dispatcher.error_response(e)
            except ProtocolError as e:
                srv.log.warning("CLIENT_BAD_REQUEST peer=%s err=%s", peer, e)
                resp = srv.dispatcher.error_response(e)
                keep_open = False
            except Exception as e:
                srv.log.exception("DISPATCH_FAILED peer=%s", peer)
                resp = srv.dispatcher.error_response(e)
                keep_open = False

            stream.send_all(srv.codec.encode(resp), timeout=srv.request_timeout_s)
            if not keep_open:
                return


class CommandServer(TcpServer):
    """
    TCP command server for the framed and JSON-lines encodings, optionally TLS.

    One thread per client; every request goes through the shared CommandDispatcher.
    """

    label = "CommandServer"

    def __init__(
        self,
        address: Tuple[str, int],
        dispatcher: CommandDispatcher,
        *,
        codec: str = "json",
        ssl_context: Optional[ssl.SSLContext] = None,
        handshake_timeout_s: float = 3.0,
        request_timeout_s: float = 5.0,
        idle_timeout_s: float = 30.0,
        logger: Optional[logging.Logger] = None,
    ):
        if codec not in CODECS:
            raise ValueError(f"unknown codec {codec!r}; expected one of {sorted(CODECS)}")
        self.dispatcher = dispatcher
        self.codec = CODECS[codec]()
        self.request_timeout_s = float(request_timeout_s)
        self.idle_timeout_s = float(idle_timeout_s)
        super().__init__(
            address,
            _CommandHandler,
            ssl_context=ssl_context,
            handshake_timeout_s=handshake_timeout_s,
            logger=logger or logging.getLogger(__name__),
        )
