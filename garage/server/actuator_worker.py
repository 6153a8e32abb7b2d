# garage/server/actuator_worker.py
from __future__ import annotations

import logging
import queue
import threading
from typing import Optional

from garage.interfaces.actuator import Actuator
from garage.interfaces.command_sink import CommandEvent, CommandSink


class ActuatorWorker(threading.Thread):
    """
    Owns the actuator and pulses it once per accepted toggle, off the request path.

    Acts as the ToggleTarget of a directly attached server. At most queue_size
    toggles wait; further ones are dropped and reported to cmd_sink.
    """

    def __init__(
        self,
        actuator: Actuator,
        *,
        queue_size: int = 3,
        cmd_sink: Optional[CommandSink] = None,
        logger: Optional[logging.Logger] = None,
    ):
        super().__init__(name="ActuatorWorker", daemon=True)
        self.actuator = actuator
        self._cmd_sink = cmd_sink
        self._log = logger or logging.getLogger(__name__)
        self._pending: "queue.Queue[float]" = queue.Queue(maxsize=queue_size)
        self._stop_event = threading.Event()
        self.triggered = 0

    # ---- ToggleTarget ----
    def ping(self) -> bool:
        return self.is_alive() and not self._stop_event.is_set()

    def toggle(self, issued_at: float) -> None:
        try:
            self._pending.put_nowait(issued_at)
        except queue.Full:
            self._log.warning("ACTUATOR_QUEUE_FULL dropped issued_at=%.3f", issued_at)
            if self._cmd_sink is not None:
                try:
                    self._cmd_sink.on_command(
                        CommandEvent(name="toggle", kind="dropped", payload={"reason": "actuator_busy"})
                    )
                except Exception:
                    self._log.exception("CMD_SINK_ERROR")

    # ---- thread ----
    def run(self) -> None:
        while not self._stop_event.is_set():
            try:
                issued_at = self._pending.get(timeout=0.1)
            except queue.Empty:
                continue
            try:
                self.actuator.trigger()
                self.triggered += 1
            except Exception:
                self._log.exception("ACTUATOR_TRIGGER_FAILED issued_at=%.3f", issued_at)
                self._stop_event.wait(0.01)

    def stop(self, timeout: Optional[float] = 2.0) -> None:
        self._stop_event.set()
        if self.is_alive() and self is not threading.current_thread():
            self.join(timeout=timeout)
        try:
            self.actuator.close()
        except Exception:
            self._log.exception("ACTUATOR_CLOSE_FAILED")
