# garage/runtime/state.py
from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


class SessionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    HANDSHAKING = "handshaking"
    ACTIVE = "active"
    CLOSING = "closing"


@dataclass
class Session:
    """
    One logical connection, owned by the SessionManager that created it.
    Replaced on every reconnect.
    """
    session_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    state: SessionState = SessionState.CONNECTING
    created_at: float = field(default_factory=time.monotonic)
    last_activity: float = field(default_factory=time.monotonic)

    def touch(self) -> None:
        self.last_activity = time.monotonic()


@dataclass(frozen=True)
class SessionStatus:
    """
    A snapshot of the manager's session, safe to share across threads.
    """
    state: SessionState
    session_id: Optional[str]
    ping_ok: bool
    last_error: Optional[str] = None
    reconnects: int = 0
    next_backoff_s: Optional[float] = None
