# garage/relay/agent_service.py
from __future__ import annotations

import hmac
import itertools
import logging
import queue
import socketserver
import ssl
import threading
import time
from typing import Optional, Tuple

from garage.protocol import ProtocolError
from garage.protocol import json_codec
from garage.server.tcp import TcpServer
from garage.transport.errors import TransportClosed, TransportError
from garage.transport.sockets import StreamSocket

from .hub import RelayHub

_POLL_S = 0.1


class AgentService:
    """
    Relay side of one agent stream (JSON lines).

      agent -> relay: {"type":"hello","auth":...}, then {"type":"event","ts":N} heartbeats
      relay -> agent: {"type":"hello","ok":true}, {"type":"toggle","ts":N},
                      and every event echoed back as {"type":"event","ts":N}

    The agent is registered with the hub only after a valid hello, and stays
    registered exactly as long as serve() runs.
    """

    def __init__(
        self,
        hub: RelayHub,
        secret: str,
        *,
        hello_timeout_s: float = 3.0,
        idle_timeout_s: float = 30.0,
        write_timeout_s: float = 5.0,
        logger: Optional[logging.Logger] = None,
    ):
        self.hub = hub
        self._secret = secret.encode("utf-8")
        self.hello_timeout_s = float(hello_timeout_s)
        self.idle_timeout_s = float(idle_timeout_s)
        self.write_timeout_s = float(write_timeout_s)
        self._log = logger or logging.getLogger(__name__)

    def serve(self, stream: StreamSocket, agent_id: str, stop_event: Optional[threading.Event] = None) -> None:
        stop_event = stop_event or threading.Event()
        try:
            if not self._hello(stream, agent_id):
                return
            with self.hub.agent_session(agent_id) as notify:
                self._pump(stream, agent_id, notify, stop_event)
        except TransportClosed:
            self._log.info("AGENT_EOF agent=%s", agent_id)
        except TransportError as e:
            self._log.warning("AGENT_IO_ERROR agent=%s err=%s", agent_id, e)
        except ProtocolError as e:
            self._log.warning("AGENT_BAD_MESSAGE agent=%s err=%s", agent_id, e)

    def _hello(self, stream: StreamSocket, agent_id: str) -> bool:
        line = stream.recv_line(timeout=self.hello_timeout_s)
        if line is None:
            self._log.warning("AGENT_HELLO_TIMEOUT agent=%s", agent_id)
            return False

        msg = json_codec.decode_agent_message(line)
        auth = str(msg.get("auth") or "").encode("utf-8")
        if msg["type"] != "hello" or not hmac.compare_digest(auth, self._secret):
            self._log.warning("AGENT_AUTH_REJECTED agent=%s type=%s", agent_id, msg["type"])
            stream.send_all(
                json_codec.encode_agent_message("hello", ok=False, message="Authentication failed."),
                timeout=self.write_timeout_s,
            )
            return False

        stream.send_all(json_codec.encode_agent_message("hello", ok=True), timeout=self.write_timeout_s)
        return True

    def _pump(self, stream: StreamSocket, agent_id: str, notify: "queue.Queue[float]", stop_event: threading.Event) -> None:
        last_seen = time.monotonic()
        while not stop_event.is_set():
            while True:
                try:
                    ts = notify.get_nowait()
                except queue.Empty:
                    break
                stream.send_all(json_codec.encode_agent_message("toggle", ts=ts), timeout=self.write_timeout_s)
                self._log.info("AGENT_TOGGLE_SENT agent=%s ts=%.3f", agent_id, ts)

            line = stream.recv_line(timeout=_POLL_S)
            if line is None:
                if time.monotonic() - last_seen > self.idle_timeout_s:
                    self._log.warning("AGENT_IDLE_TIMEOUT agent=%s", agent_id)
                    return
                continue

            last_seen = time.monotonic()
            msg = json_codec.decode_agent_message(line)
            if msg["type"] != "event":
                self._log.debug("AGENT_MESSAGE_IGNORED agent=%s type=%s", agent_id, msg["type"])
                continue
            ts = msg.get("ts", time.time())
            self.hub.record_event(agent_id, ts)
            stream.send_all(json_codec.encode_agent_message("event", ts=ts), timeout=self.write_timeout_s)


class _AgentHandler(socketserver.BaseRequestHandler):
    server: "AgentListener"

    def handle(self) -> None:
        srv = self.server
        sock = srv.secure(self.request)
        if sock is None:
            return
        stream = StreamSocket(sock)
        agent_id = f"{stream.peer()}#{next(srv.ids)}"
        srv.track(stream)
        srv.log.info("AGENT_CONNECTED agent=%s", agent_id)
        try:
            srv.service.serve(stream, agent_id, srv.stop_event)
        finally:
            srv.untrack(stream)
            stream.close()
            srv.log.info("AGENT_DISCONNECTED agent=%s", agent_id)


class AgentListener(TcpServer):
    """Accepts agent connections and hands each one to AgentService.serve()."""

    label = "AgentListener"

    def __init__(
        self,
        address: Tuple[str, int],
        service: AgentService,
        *,
        ssl_context: Optional[ssl.SSLContext] = None,
        handshake_timeout_s: float = 3.0,
        logger: Optional[logging.Logger] = None,
    ):
        self.service = service
        self.ids = itertools.count(1)
        super().__init__(
            address,
            _AgentHandler,
            ssl_context=ssl_context,
            handshake_timeout_s=handshake_timeout_s,
            logger=logger or logging.getLogger(__name__),
        )
