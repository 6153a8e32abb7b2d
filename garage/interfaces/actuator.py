# garage/interfaces/actuator.py
from typing import Protocol


class Actuator(Protocol):
    """Runs the physical trigger sequence once. May block for the pulse duration."""
    def trigger(self) -> None: ...
    def close(self) -> None: ...
