# garage/runtime/liveness.py
from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class LivenessState:
    """
    A snapshot of link health, safe to share across threads.
    """
    ping_ok: bool
    last_error: Optional[BaseException] = None
    updated_at: Optional[float] = None

    @property
    def last_error_message(self) -> Optional[str]:
        if self.last_error is None:
            return None
        return getattr(self.last_error, "message", None) or str(self.last_error) or type(self.last_error).__name__


class LivenessTracker:
    """
    Outcome of the most recent ping. Written by the owning session thread,
    read by the UI path; the lock is never held across I/O.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._state = LivenessState(ping_ok=False)

    def current_state(self) -> LivenessState:
        with self._lock:
            return self._state

    def mark_ok(self) -> None:
        with self._lock:
            self._state = LivenessState(ping_ok=True, last_error=None, updated_at=time.monotonic())

    def mark_failed(self, error: BaseException) -> None:
        with self._lock:
            self._state = LivenessState(ping_ok=False, last_error=error, updated_at=time.monotonic())
