# garage/protocol/messages.py
from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from .errors import UnknownCommandError


class CommandKind(str, Enum):
    PING = "ping"
    TOGGLE = "toggle"
    CLOSE = "close"

    @classmethod
    def parse(cls, value: object) -> "CommandKind":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise UnknownCommandError(value) from None


@dataclass(frozen=True)
class Command:
    """
    One request from controller to server. Consumed exactly once by a channel send.

    issued_at is unix seconds so it survives the wire.
    """
    kind: CommandKind
    issued_at: float = field(default_factory=time.time)
    auth: Optional[str] = None

    @classmethod
    def ping(cls, auth: Optional[str] = None) -> "Command":
        return cls(CommandKind.PING, auth=auth)

    @classmethod
    def toggle(cls, auth: Optional[str] = None, issued_at: Optional[float] = None) -> "Command":
        if issued_at is None:
            return cls(CommandKind.TOGGLE, auth=auth)
        return cls(CommandKind.TOGGLE, issued_at=float(issued_at), auth=auth)

    @classmethod
    def close(cls, auth: Optional[str] = None) -> "Command":
        return cls(CommandKind.CLOSE, auth=auth)

    def age(self, now: float) -> float:
        return now - self.issued_at


@dataclass(frozen=True)
class Response:
    ok: bool
    message: str = ""
    code: Optional[str] = None  # machine-readable error code when not ok

    @classmethod
    def success(cls, message: str = "OK") -> "Response":
        return cls(ok=True, message=message)

    @classmethod
    def failure(cls, message: str, code: Optional[str] = None) -> "Response":
        return cls(ok=False, message=message, code=code)


@dataclass(frozen=True)
class AgentEvent:
    """A physical-side event reported by an agent, tagged with the agent's own timestamp."""
    agent_id: str
    timestamp: float
    received_at: float = field(default_factory=time.time)
