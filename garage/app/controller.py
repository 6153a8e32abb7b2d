# garage/app/controller.py
from __future__ import annotations

import logging
import time
from typing import Callable, Optional

from garage.runtime.debounce import TouchDebounce
from garage.runtime.session_manager import SessionManager
from garage.runtime.state import SessionStatus

TITLE = "Garage door opener"
IDLE_PROMPT = "Tap to toggle garage door"
CONNECTING_PROMPT = "Connecting..."

_FLASH_LEVEL = 0.5
_FLASH_DECAY_PER_S = 0.5


class RemoteController:
    """
    UI-facing facade over a SessionManager.

    Everything here is called from the UI thread and never blocks on I/O:
    touch_down() only debounces and hands off, display_text() only reads
    the liveness snapshot.
    """

    def __init__(
        self,
        session: SessionManager,
        *,
        debounce: Optional[TouchDebounce] = None,
        clock: Callable[[], float] = time.monotonic,
        logger: Optional[logging.Logger] = None,
    ):
        self._session = session
        self._debounce = debounce or TouchDebounce(clock=clock)
        self._clock = clock
        self._log = logger or logging.getLogger(__name__)
        self._flash_at: Optional[float] = None

    @property
    def session(self) -> SessionManager:
        return self._session

    def start(self) -> None:
        self._session.start()

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        """Clean close: tell the peer, then wait for the session thread."""
        self._session.request_close()
        if not self._session.join(timeout):
            self._log.warning("SESSION_CLOSE_TIMEOUT timeout_s=%s action=cancel", timeout)
            self._session.stop(timeout)

    def __enter__(self) -> "RemoteController":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()

    def touch_down(self, now: Optional[float] = None) -> bool:
        """
        A touch began. Returns True if it was turned into a toggle request.
        Touches inside the debounce window, or while the link is not ready, are dropped.
        """
        now = self._clock() if now is None else now
        if not self._debounce.accept(now):
            self._log.debug("TOUCH_DEBOUNCED")
            return False
        self._flash_at = now
        return self._session.request_toggle()

    def display_text(self) -> str:
        live = self._session.liveness.current_state()
        if live.ping_ok:
            return IDLE_PROMPT
        return live.last_error_message or CONNECTING_PROMPT

    def feedback_level(self, now: Optional[float] = None) -> float:
        """Brightness of the tap flash: 0.5 right after an accepted touch, fading to 0 in one second."""
        if self._flash_at is None:
            return 0.0
        now = self._clock() if now is None else now
        return max(0.0, _FLASH_LEVEL - (now - self._flash_at) * _FLASH_DECAY_PER_S)

    def status(self) -> SessionStatus:
        return self._session.status()
