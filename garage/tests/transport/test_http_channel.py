from __future__ import annotations

import time

import pytest
import requests

from garage.core.config import SessionConfig
from garage.core.errors import (
    AuthError,
    ChannelConnectError,
    ChannelTimeoutError,
    CommandRejectedError,
    NoAgentError,
    ProtocolDecodeError,
)
from garage.protocol import Command
from garage.runtime.session_manager import SessionManager
from garage.runtime.state import SessionState
from garage.transport.http_channel import AUTH_HEADER, HttpChannel


class FakeResponse:
    def __init__(self, status_code=200, text="OK", reason=""):
        self.status_code = status_code
        self.text = text
        self.reason = reason


class FakeSession:
    def __init__(self, response=None, raise_exc=None):
        self.response = response or FakeResponse()
        self.raise_exc = raise_exc
        self.calls = []
        self.verify = None
        self.closed = False

    def _do(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        if self.raise_exc is not None:
            raise self.raise_exc
        return self.response

    def get(self, url, **kwargs):
        return self._do("GET", url, **kwargs)

    def post(self, url, **kwargs):
        return self._do("POST", url, **kwargs)

    def close(self):
        self.closed = True


def _channel(session: FakeSession, **kw) -> HttpChannel:
    return HttpChannel("garage.lan", 8443, session_factory=lambda: session, **kw)


def test_ping_is_authenticated_get():
    s = FakeSession()
    ch = _channel(s, verify="/etc/ca.pem")
    conn = ch.connect(1.0)
    assert s.verify == "/etc/ca.pem"

    assert ch.send(conn, Command.ping(auth="k")).ok
    method, url, kwargs = s.calls[0]
    assert (method, url) == ("GET", "https://garage.lan:8443/api/ping")
    assert kwargs["headers"] == {AUTH_HEADER: "k"}


def test_toggle_posts_timestamp():
    s = FakeSession()
    ch = _channel(s)
    ch.send(ch.connect(1.0), Command.toggle(auth="k", issued_at=55.0))
    method, url, kwargs = s.calls[0]
    assert (method, url) == ("POST", "https://garage.lan:8443/api/toggle")
    assert kwargs["json"] == {"ts": 55.0}


@pytest.mark.parametrize(
    "status,text,exc",
    [
        (401, "Authentication failed.", AuthError),
        (403, "", AuthError),
        (503, "No agent reachable", NoAgentError),
        (500, "oops", CommandRejectedError),
        (200, "<html>", ProtocolDecodeError),
    ],
)
def test_status_mapping(status, text, exc):
    ch = _channel(FakeSession(FakeResponse(status, text)))
    with pytest.raises(exc):
        ch.send(ch.connect(1.0), Command.ping(auth="k"))


def test_no_agent_is_distinguishable_from_network_failure():
    ch = _channel(FakeSession(FakeResponse(503, "No agent reachable")))
    with pytest.raises(NoAgentError) as ei:
        ch.send(ch.connect(1.0), Command.ping(auth="k"))
    assert ei.value.message == "No agent reachable"
    assert ei.value.code == "no_agent"


@pytest.mark.parametrize(
    "raised,exc",
    [
        (requests.exceptions.ConnectTimeout("slow"), ChannelTimeoutError),
        (requests.exceptions.ConnectionError("refused"), ChannelConnectError),
        (requests.exceptions.SSLError("bad cert"), AuthError),
    ],
)
def test_requests_errors_are_translated(raised, exc):
    ch = _channel(FakeSession(raise_exc=raised))
    with pytest.raises(exc):
        ch.send(ch.connect(1.0), Command.ping(auth="k"))


def test_close_is_local_and_idempotent():
    s = FakeSession()
    ch = _channel(s)
    conn = ch.connect(1.0)
    assert ch.send(conn, Command.close(auth="k")).ok
    assert s.calls == []
    ch.close(conn)
    ch.close(conn)
    assert s.closed and conn.closed


def test_handshake_pings_with_the_configured_secret():
    s = FakeSession()
    ch = _channel(s, auth="k")
    ch.handshake(ch.connect(1.0), 2.5)
    method, url, kwargs = s.calls[0]
    assert (method, url) == ("GET", "https://garage.lan:8443/api/ping")
    assert kwargs["headers"] == {AUTH_HEADER: "k"}
    assert kwargs["timeout"] == 2.5


@pytest.mark.parametrize(
    "raised,exc",
    [
        (requests.exceptions.ConnectionError("refused"), ChannelConnectError),
        (requests.exceptions.ConnectTimeout("slow"), ChannelTimeoutError),
    ],
)
def test_handshake_fails_when_server_unreachable(raised, exc):
    ch = _channel(FakeSession(raise_exc=raised), auth="k")
    with pytest.raises(exc):
        ch.handshake(ch.connect(1.0), 1.0)


def test_handshake_rejects_wrong_secret():
    ch = _channel(FakeSession(FakeResponse(401, "Authentication failed.")), auth="bad")
    with pytest.raises(AuthError):
        ch.handshake(ch.connect(1.0), 1.0)


def test_handshake_accepts_reachable_server_without_agent():
    ch = _channel(FakeSession(FakeResponse(503, "No agent reachable")), auth="k")
    ch.handshake(ch.connect(1.0), 1.0)


def test_unreachable_server_keeps_session_out_of_active():
    s = FakeSession(raise_exc=requests.exceptions.ConnectionError("refused"))
    states = []
    cfg = SessionConfig(backoff_base_s=0.01, backoff_max_s=0.04, handshake_timeout_s=0.5)
    mgr = SessionManager(_channel(s, auth="k"), config=cfg, auth="k")
    mgr.subscribe_state(lambda old, new: states.append(new))
    mgr.start()
    try:
        deadline = time.monotonic() + 3.0
        while mgr.backoff.failures < 3 and time.monotonic() < deadline:
            time.sleep(0.005)
        assert mgr.backoff.failures >= 3
        assert SessionState.ACTIVE not in states
        assert isinstance(mgr.liveness.current_state().last_error, ChannelConnectError)
        assert mgr.liveness.current_state().ping_ok is False
    finally:
        mgr.stop(timeout=2.0)
