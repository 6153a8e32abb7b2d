# garage/core/recording/command_trace.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from garage.core.recording.async_writer import JsonLinesWriter
from garage.interfaces.command_sink import CommandEvent, CommandSink


def _record(event: CommandEvent) -> Dict[str, Any]:
    out: Dict[str, Any] = {
        "ts_utc": event.ts_utc or datetime.now(timezone.utc).isoformat(),
        "name": event.name,
        "kind": event.kind,
    }
    if event.session_id is not None:
        out["session_id"] = event.session_id
    if event.payload:
        out["payload"] = dict(event.payload)
    return out


@dataclass
class CommandTraceLogger(CommandSink):
    """
    Command trail of one process: a debug log line per event, plus a JSON-lines
    file when file_path is given (failures are logged at warning level).
    """
    logger: logging.Logger
    file_path: Optional[Path] = None
    flush_interval_s: float = 0.5
    _file: Optional[JsonLinesWriter] = field(default=None, init=False, repr=False)

    def __post_init__(self) -> None:
        if self.file_path is not None:
            self._file = JsonLinesWriter(Path(self.file_path), flush_interval=self.flush_interval_s, logger=self.logger)

    def on_command(self, event: CommandEvent) -> None:
        level = logging.WARNING if event.kind == "fail" else logging.DEBUG
        self.logger.log(level, "CMD %s %s session=%s payload=%s", event.name, event.kind, event.session_id or "-", event.payload)
        if self._file is not None:
            self._file.put(_record(event))

    def close(self) -> None:
        if self._file is not None:
            self._file.close()
            self._file = None
