# garage/relay/registry.py
from __future__ import annotations

import queue
import threading
from contextlib import contextmanager
from typing import Dict, Iterator


class RelayRegistry:
    """
    Live agent connections -> bounded notify queues.

    An entry exists exactly as long as its agent connection; use session() so
    removal happens on every exit path. All access goes through one lock that is
    never held while doing I/O.
    """

    def __init__(self, notify_capacity: int = 6):
        if notify_capacity < 1:
            raise ValueError(f"notify_capacity must be >= 1, got {notify_capacity}")
        self.notify_capacity = int(notify_capacity)
        self._lock = threading.Lock()
        self._queues: Dict[str, "queue.Queue[float]"] = {}

    def register(self, agent_id: str) -> "queue.Queue[float]":
        q: "queue.Queue[float]" = queue.Queue(maxsize=self.notify_capacity)
        with self._lock:
            if agent_id in self._queues:
                raise KeyError(f"agent {agent_id!r} already registered")
            self._queues[agent_id] = q
        return q

    def unregister(self, agent_id: str) -> bool:
        with self._lock:
            return self._queues.pop(agent_id, None) is not None

    def snapshot(self) -> Dict[str, "queue.Queue[float]"]:
        with self._lock:
            return dict(self._queues)

    def __len__(self) -> int:
        with self._lock:
            return len(self._queues)

    def __contains__(self, agent_id: object) -> bool:
        with self._lock:
            return agent_id in self._queues

    @contextmanager
    def session(self, agent_id: str) -> Iterator["queue.Queue[float]"]:
        q = self.register(agent_id)
        try:
            yield q
        finally:
            self.unregister(agent_id)
