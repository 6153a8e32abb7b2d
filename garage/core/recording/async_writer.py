# garage/core/recording/async_writer.py
from __future__ import annotations

import json
import logging
import threading
import time
from pathlib import Path
from queue import Empty, Queue
from typing import Any, Callable, List, Mapping, Optional

LineWriter = Callable[[Path, List[str]], None]


def append_lines(path: Path, lines: List[str]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "a", encoding="utf-8") as f:
        f.writelines(line + "\n" for line in lines)


class JsonLinesWriter:
    """
    Appends JSON records to a file from a background thread.

    put() serializes and enqueues, so the caller (a session or handler thread)
    never waits on the disk. Records are written in batches at most every
    flush_interval seconds; close() drains whatever is left.
    """

    def __init__(
        self,
        path: Path,
        *,
        flush_interval: float = 0.5,
        write_lines: LineWriter = append_lines,
        logger: Optional[logging.Logger] = None,
    ):
        self.path = Path(path)
        self.flush_interval = float(flush_interval)
        self._write_lines = write_lines
        self._log = logger or logging.getLogger(__name__)

        self._pending: "Queue[str]" = Queue()
        self._closed = threading.Event()
        self.records_written = 0

        self._thread = threading.Thread(target=self._drain, name="JsonLinesWriter", daemon=True)
        self._thread.start()

    def put(self, record: Mapping[str, Any]) -> None:
        if self._closed.is_set():
            return
        self._pending.put(json.dumps(dict(record), ensure_ascii=False, default=str))

    def close(self) -> None:
        if self._closed.is_set():
            return
        self._closed.set()
        self._thread.join()

    def _drain(self) -> None:
        batch: List[str] = []
        due = time.monotonic() + self.flush_interval

        while not (self._closed.is_set() and self._pending.empty()):
            try:
                batch.append(self._pending.get(timeout=0.1))
            except Empty:
                pass

            if batch and (self._closed.is_set() or time.monotonic() >= due):
                self._flush(batch)
                batch = []
                due = time.monotonic() + self.flush_interval

        if batch:
            self._flush(batch)

    def _flush(self, batch: List[str]) -> None:
        try:
            self._write_lines(self.path, batch)
        except Exception:
            self._log.exception("TRACE_FLUSH_FAILED path=%s records=%d", self.path, len(batch))
            return
        self.records_written += len(batch)
