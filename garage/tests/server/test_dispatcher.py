import time

import pytest

from garage.core.errors import AuthError, ChannelTimeoutError, NoAgentError
from garage.interfaces.command_sink import CommandEvent
from garage.protocol import Command, UnknownCommandError
from garage.protocol import json_codec
from garage.server.actuator_worker import ActuatorWorker
from garage.server.dispatcher import CommandDispatcher


class FakeTarget:
    def __init__(self, alive=True):
        self.alive = alive
        self.pings = 0
        self.toggles = []

    def ping(self):
        self.pings += 1
        return self.alive

    def toggle(self, issued_at):
        self.toggles.append(issued_at)


class CountingActuator:
    def __init__(self):
        self.count = 0
        self.closed = False

    def trigger(self):
        self.count += 1

    def close(self):
        self.closed = True


class ListSink:
    def __init__(self):
        self.events: list[CommandEvent] = []

    def on_command(self, event):
        self.events.append(event)

    def close(self):
        pass


def test_wrong_secret_on_ping_is_rejected_without_side_effect():
    target = FakeTarget()
    d = CommandDispatcher("s3cret", target)
    cmd = json_codec.decode_request(b'{"auth":"wrong","type":"ping"}')

    with pytest.raises(AuthError) as ei:
        d.handle(cmd)
    assert target.pings == 0
    resp = d.error_response(ei.value)
    assert resp.ok is False
    assert resp.code == "auth_failed"


def test_missing_secret_is_rejected():
    target = FakeTarget()
    with pytest.raises(AuthError):
        CommandDispatcher("s3cret", target).handle(Command.toggle(auth=None, issued_at=1.0))
    assert target.toggles == []


def test_correct_toggle_triggers_actuator_exactly_once():
    actuator = CountingActuator()
    worker = ActuatorWorker(actuator)
    worker.start()
    try:
        d = CommandDispatcher("s3cret", worker)
        cmd = json_codec.decode_request(b'{"auth":"s3cret","type":"toggle","ts":1700000000}')
        resp = d.handle(cmd)
        assert resp.ok is True

        deadline = time.monotonic() + 2.0
        while actuator.count < 1 and time.monotonic() < deadline:
            time.sleep(0.01)
        time.sleep(0.05)
        assert actuator.count == 1
    finally:
        worker.stop()
    assert actuator.closed


def test_toggle_passes_issued_at_to_target():
    target = FakeTarget()
    d = CommandDispatcher("k", target)
    assert d.handle(Command.toggle(auth="k", issued_at=123.0)).ok
    assert target.toggles == [123.0]


def test_ping_ok_and_no_agent():
    assert CommandDispatcher("k", FakeTarget()).handle(Command.ping(auth="k")).ok

    d = CommandDispatcher("k", FakeTarget(alive=False))
    with pytest.raises(NoAgentError) as ei:
        d.handle(Command.ping(auth="k"))
    resp = d.error_response(ei.value)
    assert (resp.ok, resp.code, resp.message) == (False, "no_agent", "No agent reachable")


def test_close_is_acknowledged():
    resp = CommandDispatcher("k", FakeTarget()).handle(Command.close(auth="k"))
    assert resp.ok and resp.message == "closing"


def test_unknown_kind_is_a_protocol_error():
    d = CommandDispatcher("k", FakeTarget())
    with pytest.raises(UnknownCommandError):
        d.handle(Command("reboot", auth="k"))
    assert d.error_response(UnknownCommandError("reboot")).code == "protocol_error"


def test_error_response_for_unexpected_and_typed_errors():
    assert CommandDispatcher.error_response(RuntimeError("boom")).code == "internal_error"
    assert CommandDispatcher.error_response(ChannelTimeoutError("slow")).code == "timeout"


def test_sink_sees_received_and_rejected_commands():
    sink = ListSink()
    d = CommandDispatcher("k", FakeTarget(), cmd_sink=sink)
    d.handle(Command.toggle(auth="k", issued_at=1.0))
    with pytest.raises(AuthError):
        d.handle(Command.ping(auth="nope"))
    kinds = [(e.name, e.kind) for e in sink.events]
    assert kinds == [("toggle", "recv"), ("toggle", "ok"), ("ping", "fail")]


def test_empty_secret_not_allowed():
    with pytest.raises(ValueError):
        CommandDispatcher("", FakeTarget())
