# garage/interfaces/command_sink.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Optional, Protocol


@dataclass(frozen=True, slots=True)
class CommandEvent:
    """One step in the life of a command on either end of the link."""
    name: str                           # ping | toggle | close
    kind: str                           # send | recv | ok | fail | dropped
    payload: Optional[Mapping[str, Any]] = None
    session_id: Optional[str] = None    # controller side only
    ts_utc: Optional[str] = None


class CommandSink(Protocol):
    def on_command(self, event: CommandEvent) -> None: ...
    def close(self) -> None: ...
