# garage/app/sinks.py
from __future__ import annotations

import logging
from typing import Iterable, List, Optional

from garage.interfaces.command_sink import CommandEvent, CommandSink


class FanoutCommandSink(CommandSink):
    """Forwards every command event to each child sink; one failing child does not starve the rest."""

    def __init__(self, sinks: Iterable[CommandSink], *, logger: Optional[logging.Logger] = None):
        self._sinks: List[CommandSink] = list(sinks)
        self._log = logger or logging.getLogger(__name__)

    def on_command(self, event: CommandEvent) -> None:
        for s in self._sinks:
            try:
                s.on_command(event)
            except Exception:
                self._log.exception("SINK_ON_COMMAND_ERROR sink=%s", type(s).__name__)

    def close(self) -> None:
        for s in self._sinks:
            try:
                s.close()
            except Exception:
                self._log.exception("SINK_CLOSE_ERROR sink=%s", type(s).__name__)
