# garage/agent/client.py
from __future__ import annotations

import logging
import ssl
import threading
import time
from typing import Callable, Optional

from garage.core.config import GarageConfig
from garage.core.errors import AuthError
from garage.interfaces.toggle_target import ToggleTarget
from garage.protocol import ProtocolError
from garage.protocol import json_codec
from garage.runtime.backoff import BackoffPolicy
from garage.transport.errors import TransportError
from garage.transport.sockets import StreamSocket, open_connection, tls_handshake

_POLL_S = 0.1


class AgentClient:
    """
    Actuator-side process of a relayed setup.

    Dials the relay's agent port, says hello with the shared secret, sends an
    event heartbeat every heartbeat_interval_s and hands each toggle it receives
    to the local target. Reconnects with exponential backoff; a rejected hello
    ends run().
    """

    def __init__(
        self,
        config: GarageConfig,
        target: ToggleTarget,
        *,
        ssl_context: Optional[ssl.SSLContext] = None,
        backoff: Optional[BackoffPolicy] = None,
        clock: Callable[[], float] = time.time,
        logger: Optional[logging.Logger] = None,
    ):
        self.host = config.endpoint.host
        self.port = config.relay.agent_port
        self._secret = config.endpoint.secret
        self._session_cfg = config.session
        self.heartbeat_interval_s = config.relay.heartbeat_interval_s
        self.target = target
        self.ssl_context = ssl_context
        s = config.session
        self.backoff = backoff or BackoffPolicy(s.backoff_base_s, s.backoff_max_s, s.backoff_factor)
        self._clock = clock
        self._log = logger or logging.getLogger(__name__)

        self._stop_event = threading.Event()
        self._stream: Optional[StreamSocket] = None
        self._lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None

        self.toggles_received = 0
        self.last_echo: Optional[float] = None

    @property
    def connected(self) -> bool:
        with self._lock:
            return self._stream is not None

    def run(self, stop_event: Optional[threading.Event] = None) -> None:
        if stop_event is not None:
            self._stop_event = stop_event
        self._log.info("AGENT_CLIENT_START relay=%s:%d", self.host, self.port)
        try:
            while not self._stop_event.is_set():
                try:
                    self._serve_once()
                except AuthError as e:
                    self._log.error("AGENT_AUTH_FAILED msg=%s (not retrying)", e.message)
                    return
                except (TransportError, ProtocolError) as e:
                    if self._stop_event.is_set():
                        return
                    self._log.warning("AGENT_LINK_FAILED err=%s", e)
                finally:
                    self._drop_stream()

                delay = self.backoff.next_delay()
                self._log.info("AGENT_RETRY delay_s=%.3f failures=%d", delay, self.backoff.failures)
                if self._stop_event.wait(delay):
                    return
        finally:
            self._log.info("AGENT_CLIENT_EXIT")

    def start(self) -> threading.Thread:
        self._thread = threading.Thread(target=self.run, name="AgentClient", daemon=True)
        self._thread.start()
        return self._thread

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop_event.set()
        self._drop_stream()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=timeout)

    def _serve_once(self) -> None:
        cfg = self._session_cfg
        sock = open_connection(self.host, self.port, cfg.connect_timeout_s, ssl_context=self.ssl_context)
        stream = StreamSocket(sock)
        with self._lock:
            self._stream = stream
        tls_handshake(sock, cfg.handshake_timeout_s)

        stream.send_all(json_codec.encode_agent_message("hello", auth=self._secret), timeout=cfg.request_timeout_s)
        line = stream.recv_line(timeout=cfg.handshake_timeout_s)
        if line is None:
            raise TransportError(f"no hello reply within {cfg.handshake_timeout_s}s")
        reply = json_codec.decode_agent_message(line)
        if reply["type"] != "hello" or not reply.get("ok"):
            raise AuthError(str(reply.get("message") or "Relay rejected the agent."))

        self.backoff.reset()
        self._log.info("AGENT_REGISTERED relay=%s:%d", self.host, self.port)
        self._pump(stream)

    def _pump(self, stream: StreamSocket) -> None:
        next_beat = time.monotonic()
        while not self._stop_event.is_set():
            if time.monotonic() >= next_beat:
                stream.send_all(
                    json_codec.encode_agent_message("event", ts=self._clock()),
                    timeout=self._session_cfg.request_timeout_s,
                )
                next_beat = time.monotonic() + self.heartbeat_interval_s

            line = stream.recv_line(timeout=_POLL_S)
            if line is None:
                continue

            msg = json_codec.decode_agent_message(line)
            if msg["type"] == "toggle":
                ts = msg.get("ts", self._clock())
                self.toggles_received += 1
                self._log.info("AGENT_TOGGLE ts=%.3f", ts)
                self.target.toggle(ts)
            elif msg["type"] == "event":
                self.last_echo = msg.get("ts")

    def _drop_stream(self) -> None:
        with self._lock:
            stream, self._stream = self._stream, None
        if stream is not None:
            stream.close()
