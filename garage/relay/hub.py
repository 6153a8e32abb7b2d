# garage/relay/hub.py
from __future__ import annotations

import logging
import queue
import threading
import time
from contextlib import contextmanager
from typing import Callable, Iterator, List, Optional

from garage.core.errors import NoAgentError
from garage.protocol import AgentEvent

from .registry import RelayRegistry

EventCallback = Callable[[AgentEvent], None]


class RelayHub:
    """
    Fan-out point between the command server and the connected agents.

    Serves as the server's ToggleTarget: ping() is true while at least one agent
    is connected and toggle() queues the timestamp for every agent. Delivery is
    non-blocking; a full agent queue drops the notification for that agent only.
    """

    def __init__(
        self,
        registry: Optional[RelayRegistry] = None,
        *,
        clock: Callable[[], float] = time.time,
        logger: Optional[logging.Logger] = None,
    ):
        self.registry = registry or RelayRegistry()
        self._clock = clock
        self._log = logger or logging.getLogger(__name__)

        self._last_event: Optional[AgentEvent] = None
        self._event_cbs: List[EventCallback] = []
        self._event_lock = threading.Lock()

    # ---------------- Agents ----------------
    def register_agent(self, agent_id: str) -> "queue.Queue[float]":
        q = self.registry.register(agent_id)
        self._log.info("AGENT_REGISTERED agent=%s agents=%d", agent_id, len(self.registry))
        return q

    def unregister_agent(self, agent_id: str) -> None:
        if self.registry.unregister(agent_id):
            self._log.info("AGENT_UNREGISTERED agent=%s agents=%d", agent_id, len(self.registry))

    @contextmanager
    def agent_session(self, agent_id: str) -> Iterator["queue.Queue[float]"]:
        q = self.register_agent(agent_id)
        try:
            yield q
        finally:
            self.unregister_agent(agent_id)

    # ---------------- ToggleTarget ----------------
    def ping(self) -> bool:
        return len(self.registry) > 0

    def toggle(self, issued_at: float) -> None:
        self.broadcast_toggle(issued_at)

    def broadcast_toggle(self, timestamp: float) -> int:
        """Queue timestamp for every agent; returns how many accepted it."""
        targets = self.registry.snapshot()
        if not targets:
            raise NoAgentError()

        accepted = 0
        for agent_id, q in targets.items():
            try:
                q.put_nowait(timestamp)
                accepted += 1
            except queue.Full:
                self._log.warning("RELAY_NOTIFY_DROPPED agent=%s ts=%.3f", agent_id, timestamp)
        self._log.info("RELAY_TOGGLE ts=%.3f accepted=%d/%d", timestamp, accepted, len(targets))
        return accepted

    # ---------------- Agent events ----------------
    def record_event(self, agent_id: str, timestamp: float) -> AgentEvent:
        event = AgentEvent(agent_id=agent_id, timestamp=float(timestamp), received_at=self._clock())
        with self._event_lock:
            self._last_event = event
            cbs = list(self._event_cbs)
        self._log.debug("AGENT_EVENT agent=%s ts=%.3f", agent_id, event.timestamp)
        for cb in cbs:
            try:
                cb(event)
            except Exception:
                self._log.exception("EVENT_CALLBACK_ERROR")
        return event

    def last_event(self) -> Optional[AgentEvent]:
        with self._event_lock:
            return self._last_event

    def subscribe_events(self, cb: EventCallback) -> Callable[[], None]:
        with self._event_lock:
            self._event_cbs.append(cb)

        def _unsubscribe() -> None:
            with self._event_lock:
                if cb in self._event_cbs:
                    self._event_cbs.remove(cb)

        return _unsubscribe
