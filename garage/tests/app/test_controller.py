from __future__ import annotations

import pytest

from garage.app.controller import CONNECTING_PROMPT, IDLE_PROMPT, RemoteController
from garage.core.errors import ChannelConnectError
from garage.runtime.debounce import TouchDebounce
from garage.runtime.liveness import LivenessTracker


class FakeSession:
    def __init__(self, *, join_ok=True):
        self.liveness = LivenessTracker()
        self.toggles = 0
        self.started = False
        self.close_requested = False
        self.stopped = False
        self._join_ok = join_ok

    def start(self):
        self.started = True

    def request_toggle(self, issued_at=None):
        self.toggles += 1
        return True

    def request_close(self):
        self.close_requested = True

    def join(self, timeout=None):
        return self._join_ok

    def stop(self, timeout=None):
        self.stopped = True

    def status(self):
        return "status"


@pytest.mark.parametrize(
    "touches, expected",
    [
        ([0.0], 1),
        ([0.0, 0.3], 1),
        ([0.0, 1.0], 1),        # exactly at the window edge is still inside
        ([0.0, 1.01], 2),
        ([0.0, 0.5, 0.9, 1.2], 2),
        ([0.0, 0.9, 1.8, 2.7], 2),
    ],
)
def test_touches_inside_window_never_reach_session(touches, expected):
    session = FakeSession()
    ctl = RemoteController(session, debounce=TouchDebounce(1.0))
    results = [ctl.touch_down(now=t) for t in touches]
    assert session.toggles == expected
    assert results[0] is True
    assert sum(results) == expected


def test_display_text_tracks_liveness():
    session = FakeSession()
    ctl = RemoteController(session)
    assert ctl.display_text() == CONNECTING_PROMPT

    session.liveness.mark_ok()
    assert ctl.display_text() == IDLE_PROMPT

    session.liveness.mark_failed(ChannelConnectError("Could not connect (json)."))
    assert ctl.display_text() == "Could not connect (json)."


def test_feedback_level_fades_after_touch():
    ctl = RemoteController(FakeSession())
    assert ctl.feedback_level(now=0.0) == 0.0

    ctl.touch_down(now=10.0)
    assert ctl.feedback_level(now=10.0) == pytest.approx(0.5)
    assert ctl.feedback_level(now=10.5) == pytest.approx(0.25)
    assert ctl.feedback_level(now=12.0) == 0.0


def test_context_manager_closes_cleanly():
    session = FakeSession()
    with RemoteController(session) as ctl:
        assert session.started
        assert ctl.status() == "status"
    assert session.close_requested
    assert not session.stopped


def test_stop_cancels_when_close_times_out():
    session = FakeSession(join_ok=False)
    RemoteController(session).stop(timeout=0.1)
    assert session.close_requested
    assert session.stopped
