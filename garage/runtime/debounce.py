# garage/runtime/debounce.py
from __future__ import annotations

import threading
import time
from typing import Callable, Optional


class TouchDebounce:
    """
    UI-level gate: a touch-down is honored only if the previously honored one
    is more than window_s old. Rejected touches are dropped, not queued.
    """

    def __init__(self, window_s: float = 1.0, *, clock: Callable[[], float] = time.monotonic):
        self.window_s = float(window_s)
        self._clock = clock
        self._lock = threading.Lock()
        self._last_fire_at: Optional[float] = None

    @property
    def last_fire_at(self) -> Optional[float]:
        return self._last_fire_at

    def accept(self, now: Optional[float] = None) -> bool:
        now = self._clock() if now is None else now
        with self._lock:
            if self._last_fire_at is not None and now - self._last_fire_at <= self.window_s:
                return False
            self._last_fire_at = now
            return True


class StalenessGate:
    """
    Send-level gate: a toggle is sent only if it was issued at most max_age_s ago.
    Guards against a queued toggle firing after a long reconnect stall.
    """

    def __init__(self, max_age_s: float, *, clock: Callable[[], float] = time.time):
        self.max_age_s = float(max_age_s)
        self._clock = clock

    def is_fresh(self, issued_at: float, now: Optional[float] = None) -> bool:
        now = self._clock() if now is None else now
        return (now - issued_at) <= self.max_age_s
