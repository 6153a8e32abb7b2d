# garage/interfaces/toggle_target.py
from typing import Protocol


class ToggleTarget(Protocol):
    """
    Whatever a command server hands accepted commands to:
    a local actuator worker, or the relay hub fanning out to agents.
    """
    def ping(self) -> bool: ...
    def toggle(self, issued_at: float) -> None: ...
