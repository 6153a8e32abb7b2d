from __future__ import annotations

import threading
import time

import pytest

from garage.core.config import SessionConfig
from garage.core.errors import (
    AuthError,
    ChannelClosedError,
    ChannelConnectError,
    HandshakeTimeoutError,
    NoAgentError,
)
from garage.interfaces.command_sink import CommandEvent
from garage.protocol import CommandKind, Response
from garage.runtime.backoff import BackoffPolicy
from garage.runtime.session_manager import SessionManager
from garage.runtime.state import SessionState
from garage.transport.base import CommandChannel, Connection


# ---------------- fakes ----------------

class FakeChannel(CommandChannel):
    """
    Scripted channel. connect_script / send_script items are consumed in order:
    an exception instance is raised, anything else is returned (None = default).
    """

    driver = "fake"

    def __init__(self, *, connect_script=None, send_script=None, handshake_error=None, handshake_blocks=False):
        self.connect_script = list(connect_script or [])
        self.send_script = list(send_script or [])
        self.handshake_error = handshake_error
        self.handshake_blocks = handshake_blocks

        self.connects = 0
        self.sent = []
        self.closed = []
        self.raised = []
        self._release = {}
        self.send_gate = None       # threading.Event; toggles wait on it when set
        self.connect_gate = None    # threading.Event; connect waits on it when set
        self.in_connect = threading.Event()
        self.in_send = threading.Event()

    def connect(self, timeout):
        self.connects += 1
        if self.connect_gate is not None:
            self.in_connect.set()
            self.connect_gate.wait(5.0)
        item = self.connect_script.pop(0) if self.connect_script else None
        if isinstance(item, BaseException):
            self.raised.append(item)
            raise item
        conn = Connection(peer="fake:1", handle=None)
        self._release[conn.conn_id] = threading.Event()
        return conn

    def handshake(self, conn, timeout):
        if self.handshake_blocks:
            self._release[conn.conn_id].wait(5.0)
        if self.handshake_error is not None:
            self.raised.append(self.handshake_error)
            raise self.handshake_error

    def send(self, conn, cmd):
        self.sent.append(cmd)
        if cmd.kind is CommandKind.TOGGLE and self.send_gate is not None:
            self.in_send.set()
            self.send_gate.wait(5.0)
        item = self.send_script.pop(0) if self.send_script else None
        if isinstance(item, BaseException):
            self.raised.append(item)
            raise item
        return item or Response.success()

    def close(self, conn):
        if conn.closed:
            return
        conn.closed = True
        self.closed.append(conn)
        self._release[conn.conn_id].set()

    def kinds(self):
        return [c.kind for c in self.sent]


class ListSink:
    def __init__(self):
        self.events: list[CommandEvent] = []

    def on_command(self, event):
        self.events.append(event)

    def close(self):
        pass


class RecordingBackoff(BackoffPolicy):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.delays = []

    def next_delay(self):
        d = super().next_delay()
        self.delays.append(d)
        return d


def fast_config(**overrides) -> SessionConfig:
    values = dict(
        connect_timeout_s=0.5,
        handshake_timeout_s=0.5,
        request_timeout_s=0.5,
        ping_interval_s=10.0,
        backoff_base_s=0.01,
        backoff_max_s=0.08,
        backoff_factor=2.0,
        stale_toggle_s=10.0,
    )
    values.update(overrides)
    return SessionConfig(**values)


def wait_until(pred, timeout=3.0, step=0.005):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if pred():
            return True
        time.sleep(step)
    return pred()


@pytest.fixture
def running():
    managers = []

    def _start(mgr: SessionManager) -> SessionManager:
        managers.append(mgr)
        mgr.start()
        return mgr

    yield _start
    for m in managers:
        m.stop(timeout=2.0)


# ---------------- lifecycle ----------------

def test_reaches_active_with_ping_ok(running):
    ch = FakeChannel()
    mgr = running(SessionManager(ch, config=fast_config(), auth="s3cret"))

    assert wait_until(lambda: mgr.state is SessionState.ACTIVE)
    live = mgr.liveness.current_state()
    assert live.ping_ok is True
    assert live.last_error is None
    assert mgr.session is not None and mgr.session.state is SessionState.ACTIVE


def test_periodic_ping_carries_auth(running):
    ch = FakeChannel()
    mgr = running(SessionManager(ch, config=fast_config(ping_interval_s=0.02), auth="s3cret"))

    assert wait_until(lambda: ch.kinds().count(CommandKind.PING) >= 3)
    assert all(c.auth == "s3cret" for c in ch.sent)
    assert ch.connects == 1
    assert mgr.state is SessionState.ACTIVE


def test_failures_cycle_states_with_strictly_increasing_backoff(running):
    # one send failure out of ACTIVE, then the reconnects keep failing
    ch = FakeChannel(
        connect_script=[None] + [ChannelConnectError(f"refused #{i}") for i in range(200)],
        send_script=[ChannelClosedError("reset by peer")],
    )
    backoff = RecordingBackoff(0.01, 1.0, 2.0)
    mgr = SessionManager(ch, config=fast_config(ping_interval_s=0.01), backoff=backoff)

    transitions = []
    mgr.subscribe_state(lambda old, new: transitions.append((old, new, mgr.liveness.current_state().ping_ok)))

    running(mgr)
    assert wait_until(lambda: len(backoff.delays) >= 3)
    mgr.stop(timeout=2.0)

    assert backoff.delays[:3] == [0.01, 0.02, 0.04]
    assert (SessionState.ACTIVE, SessionState.DISCONNECTED) in [(o, n) for o, n, _ in transitions]

    first_fail = next(i for i, (o, n, _) in enumerate(transitions) if (o, n) == (SessionState.ACTIVE, SessionState.DISCONNECTED))
    after = transitions[first_fail:]
    reconnects = [t for t in after if (t[0], t[1]) == (SessionState.DISCONNECTED, SessionState.CONNECTING)]
    assert len(reconnects) >= 2
    assert all(ping_ok is False for _, _, ping_ok in after)

    live = mgr.liveness.current_state()
    assert live.ping_ok is False
    assert live.last_error is ch.raised[-1]


def test_entering_active_resets_backoff(running):
    ch = FakeChannel(connect_script=[ChannelConnectError("a"), ChannelConnectError("b"), None])
    backoff = RecordingBackoff(0.01, 1.0, 2.0)
    mgr = running(SessionManager(ch, config=fast_config(), backoff=backoff))

    assert wait_until(lambda: mgr.state is SessionState.ACTIVE)
    assert backoff.delays == [0.01, 0.02]
    assert backoff.current == 0.01
    assert backoff.failures == 0


def test_handshake_timeout_force_closes_connection(running):
    ch = FakeChannel(handshake_blocks=True)
    mgr = running(SessionManager(ch, config=fast_config(handshake_timeout_s=0.05, backoff_base_s=5.0, backoff_max_s=5.0)))

    assert wait_until(lambda: len(ch.closed) >= 1)
    assert wait_until(lambda: mgr.liveness.current_state().last_error is not None)
    assert isinstance(mgr.liveness.current_state().last_error, HandshakeTimeoutError)
    assert ch.closed[0].closed is True
    assert mgr.state is SessionState.DISCONNECTED


def test_cancel_interrupts_blocked_connect(running):
    ch = FakeChannel()
    ch.connect_gate = threading.Event()
    mgr = running(SessionManager(ch, config=fast_config(connect_timeout_s=5.0)))

    assert ch.in_connect.wait(2.0)
    assert mgr.state is SessionState.CONNECTING
    t0 = time.monotonic()
    mgr.cancel()
    assert mgr.join(timeout=1.0) is True
    assert time.monotonic() - t0 < 1.0
    assert mgr.state is SessionState.DISCONNECTED

    # The connection that lands after cancel is not leaked.
    ch.connect_gate.set()
    assert wait_until(lambda: len(ch.closed) == 1)


def test_auth_error_is_terminal(running):
    ch = FakeChannel(handshake_error=AuthError("bad secret"))
    mgr = running(SessionManager(ch, config=fast_config()))

    assert mgr.join(timeout=2.0) is True
    assert ch.connects == 1
    assert mgr.state is SessionState.DISCONNECTED
    assert isinstance(mgr.liveness.current_state().last_error, AuthError)
    assert len(ch.closed) == 1


def test_rejected_ping_keeps_session_active(running):
    sink = ListSink()
    ch = FakeChannel(send_script=[NoAgentError()])
    mgr = running(SessionManager(ch, config=fast_config(ping_interval_s=0.02), cmd_sink=sink))

    assert wait_until(lambda: ch.kinds().count(CommandKind.PING) >= 3)
    assert ch.connects == 1
    assert mgr.state is SessionState.ACTIVE
    fails = [e for e in sink.events if e.kind == "fail"]
    assert fails and fails[0].payload["code"] == "no_agent"
    assert wait_until(lambda: mgr.liveness.current_state().ping_ok)


# ---------------- toggles ----------------

def test_toggle_dropped_when_not_active():
    mgr = SessionManager(FakeChannel(), config=fast_config())
    assert mgr.request_toggle() is False


def test_fresh_toggle_is_sent_once(running):
    sink = ListSink()
    ch = FakeChannel()
    mgr = running(SessionManager(ch, config=fast_config(), auth="k", cmd_sink=sink))
    assert wait_until(lambda: mgr.state is SessionState.ACTIVE)

    assert mgr.request_toggle() is True
    assert wait_until(lambda: CommandKind.TOGGLE in ch.kinds())
    time.sleep(0.05)
    assert ch.kinds().count(CommandKind.TOGGLE) == 1
    assert wait_until(lambda: any(e.name == "toggle" and e.kind == "ok" for e in sink.events))


def test_stale_toggle_is_discarded_without_send(running):
    sink = ListSink()
    ch = FakeChannel()
    mgr = running(SessionManager(ch, config=fast_config(stale_toggle_s=10.0), cmd_sink=sink))
    assert wait_until(lambda: mgr.state is SessionState.ACTIVE)

    assert mgr.request_toggle(issued_at=time.time() - 30.0) is True
    assert wait_until(lambda: any(e.kind == "dropped" for e in sink.events))
    assert CommandKind.TOGGLE not in ch.kinds()
    dropped = [e for e in sink.events if e.kind == "dropped"][0]
    assert dropped.payload["reason"] == "stale"


def test_toggle_dropped_while_another_is_waiting(running):
    ch = FakeChannel()
    ch.send_gate = threading.Event()
    mgr = running(SessionManager(ch, config=fast_config(request_timeout_s=5.0)))
    assert wait_until(lambda: mgr.state is SessionState.ACTIVE)

    assert mgr.request_toggle() is True
    assert ch.in_send.wait(2.0)            # first toggle in flight
    assert mgr.request_toggle() is True    # takes the free slot
    assert mgr.request_toggle() is False   # slot occupied

    ch.send_gate.set()
    assert wait_until(lambda: ch.kinds().count(CommandKind.TOGGLE) == 2)
    time.sleep(0.05)
    assert ch.kinds().count(CommandKind.TOGGLE) == 2


# ---------------- shutdown ----------------

def test_request_close_notifies_peer_and_exits(running):
    ch = FakeChannel()
    mgr = running(SessionManager(ch, config=fast_config()))
    seen = []
    mgr.subscribe_state(lambda old, new: seen.append(new))
    assert wait_until(lambda: mgr.state is SessionState.ACTIVE)

    mgr.request_close()
    assert mgr.join(timeout=2.0) is True
    assert ch.kinds()[-1] is CommandKind.CLOSE
    assert ch.closed and ch.closed[-1].closed
    assert seen[-2:] == [SessionState.CLOSING, SessionState.DISCONNECTED]


def test_close_notification_failure_still_releases_transport(running):
    ch = FakeChannel()
    mgr = running(SessionManager(ch, config=fast_config()))
    assert wait_until(lambda: mgr.state is SessionState.ACTIVE)

    ch.send_script.append(ChannelClosedError("gone"))
    mgr.request_close()
    assert mgr.join(timeout=2.0) is True
    assert ch.closed
    assert ch.connects == 1


def test_cancel_during_backoff_exits_promptly(running):
    ch = FakeChannel(connect_script=[ChannelConnectError("down")] * 5)
    mgr = running(SessionManager(ch, config=fast_config(backoff_base_s=5.0, backoff_max_s=5.0)))

    assert wait_until(lambda: ch.connects >= 1)
    t0 = time.monotonic()
    mgr.stop(timeout=2.0)
    assert mgr.join(timeout=0.1) is True
    assert time.monotonic() - t0 < 1.0
    assert ch.connects == 1


def test_unsubscribed_callback_is_not_called(running):
    ch = FakeChannel()
    mgr = SessionManager(ch, config=fast_config())
    calls = []
    unsubscribe = mgr.subscribe_state(lambda old, new: calls.append(new))
    unsubscribe()
    running(mgr)
    assert wait_until(lambda: mgr.state is SessionState.ACTIVE)
    assert calls == []
