# garage/transport/http_channel.py
from __future__ import annotations

import logging
from typing import Callable, Optional, Union

import requests

from garage.core.errors import (
    AuthError,
    ChannelClosedError,
    ChannelConnectError,
    ChannelTimeoutError,
    CommandRejectedError,
    NoAgentError,
    ProtocolDecodeError,
)
from garage.protocol import Command, CommandKind, Response

from .base import CommandChannel, Connection

AUTH_HEADER = "x-auth"


class HttpChannel(CommandChannel):
    """
    Plain HTTP(S) with the shared secret in the x-auth header.

    There is no socket to hold open: connect() prepares a requests.Session and
    handshake() proves the server is reachable and accepts the secret with one
    GET /api/ping. A not-ok answer (e.g. no agent behind a relay) still counts
    as reachable.
    """

    driver = "http"

    def __init__(
        self,
        host: str,
        port: int,
        *,
        auth: Optional[str] = None,
        scheme: str = "https",
        verify: Union[bool, str] = True,
        request_timeout_s: float = 5.0,
        session_factory: Callable[[], requests.Session] = requests.Session,
        logger: Optional[logging.Logger] = None,
    ):
        self.base_url = f"{scheme}://{host}:{int(port)}"
        self.auth = auth
        self.verify = verify
        self.request_timeout_s = float(request_timeout_s)
        self._session_factory = session_factory
        self._log = logger or logging.getLogger(__name__)

    def connect(self, timeout: float) -> Connection:
        session = self._session_factory()
        session.verify = self.verify
        return Connection(peer=self.base_url, handle=session)

    def handshake(self, conn: Connection, timeout: float) -> None:
        try:
            self._request(conn.handle, Command.ping(auth=self.auth), timeout)
        except CommandRejectedError as e:
            self._log.info("HTTP_HANDSHAKE_REJECTED msg=%s", e.message)

    def send(self, conn: Connection, cmd: Command) -> Response:
        if cmd.kind is CommandKind.CLOSE:
            # Stateless transport: nothing to tell the peer.
            return Response.success("closed")
        return self._request(conn.handle, cmd, self.request_timeout_s)

    def _request(self, session: requests.Session, cmd: Command, timeout: float) -> Response:
        headers = {AUTH_HEADER: cmd.auth or ""}
        try:
            if cmd.kind is CommandKind.PING:
                r = session.get(f"{self.base_url}/api/ping", headers=headers, timeout=timeout)
            else:
                r = session.post(
                    f"{self.base_url}/api/toggle",
                    headers=headers,
                    json={"ts": cmd.issued_at},
                    timeout=timeout,
                )
        except requests.exceptions.Timeout as e:
            raise ChannelTimeoutError(f"'{cmd.kind.value}' timed out.", hint=str(e)) from None
        except requests.exceptions.SSLError as e:
            raise AuthError("TLS verification of the server failed.", hint=str(e)) from None
        except requests.exceptions.ConnectionError as e:
            raise ChannelConnectError(f"Could not reach {self.base_url}.", hint=str(e)) from None
        except requests.exceptions.RequestException as e:
            raise ChannelClosedError(f"HTTP request failed: {e}") from None

        body = (r.text or "").strip()
        self._log.debug("HTTP_ROUND_TRIP kind=%s status=%d", cmd.kind.value, r.status_code)

        if r.status_code == 200:
            if body != "OK":
                raise ProtocolDecodeError(f"Unexpected response body {body[:40]!r}.")
            return Response.success()
        if r.status_code in (401, 403):
            raise AuthError(body or "Authentication failed.", details={"status": r.status_code})
        if r.status_code == 503:
            raise NoAgentError(body or "No agent reachable")
        raise CommandRejectedError(
            f"HTTP {r.status_code}: {body[:80] or r.reason}",
            details={"status": r.status_code},
        )

    def close(self, conn: Connection) -> None:
        if conn.closed:
            return
        conn.closed = True
        conn.handle.close()
