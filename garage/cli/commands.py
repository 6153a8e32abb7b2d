# garage/cli/commands.py
from __future__ import annotations

import argparse
import logging
import signal
import threading
import time
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Callable, Optional

from garage.app.controller import TITLE
from garage.app.runner import start_agent, start_controller, start_relay, start_server
from garage.core.config import GarageConfig
from garage.interfaces.command_sink import CommandEvent, CommandSink
from garage.runtime.state import SessionState, SessionStatus

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


# ---------------- Logging ----------------

def configure_file_logging(log_path: Path, *, max_bytes: int = 1_000_000, backups: int = 3) -> None:
    """
    Size-rotated application log at INFO and above. Calling it again for the
    same file is a no-op.
    """
    root = logging.getLogger()
    target = log_path.resolve()
    if any(isinstance(h, RotatingFileHandler) and Path(h.baseFilename) == target for h in root.handlers):
        return

    log_path.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(log_path, maxBytes=max_bytes, backupCount=backups, encoding="utf-8", delay=True)
    handler.setLevel(logging.INFO)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(handler)
    root.setLevel(min(root.level or logging.WARNING, logging.INFO))


def configure_console_logging(verbose: bool = False) -> None:
    """Warnings on stderr by default; everything with --verbose."""
    root = logging.getLogger()
    level = logging.DEBUG if verbose else logging.WARNING
    for h in root.handlers:
        if type(h) is logging.StreamHandler:
            h.setLevel(level)
            break
    else:
        ch = logging.StreamHandler()
        ch.setLevel(level)
        ch.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(ch)

    if verbose:
        root.setLevel(logging.DEBUG)


# ---------------- Helpers ----------------

def wait_for_interrupt(stop_event: Optional[threading.Event] = None) -> None:
    """Block until Ctrl+C / SIGTERM (or stop_event is set)."""
    stop_event = stop_event or threading.Event()

    def _on_signal(signum, frame) -> None:
        stop_event.set()

    if threading.current_thread() is threading.main_thread():
        signal.signal(signal.SIGTERM, _on_signal)
    try:
        while not stop_event.wait(0.2):
            pass
    except KeyboardInterrupt:
        stop_event.set()


def print_status(st: SessionStatus) -> None:
    print(f"Link:      state={st.state.value} session={st.session_id or '-'} ping_ok={st.ping_ok}")
    print(f"Reconnect: count={st.reconnects} next_backoff_s={st.next_backoff_s}")
    if st.last_error:
        print(f"Last err:  {st.last_error}")


class ToggleWatcher(CommandSink):
    """Waits for the outcome (ok / fail / dropped) of the next toggle."""

    def __init__(self) -> None:
        self._done = threading.Event()
        self.outcome: Optional[CommandEvent] = None

    def on_command(self, event: CommandEvent) -> None:
        if event.name == "toggle" and event.kind in ("ok", "fail", "dropped"):
            self.outcome = event
            self._done.set()

    def wait(self, timeout: float) -> Optional[CommandEvent]:
        self._done.wait(timeout)
        return self.outcome

    def close(self) -> None:
        return None


def _wait_active(run, timeout: float) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if run.session.state is SessionState.ACTIVE:
            return True
        time.sleep(0.05)
    return run.session.state is SessionState.ACTIVE


# ---------------- Commands ----------------

def cmd_controller(
    args: argparse.Namespace,
    cfg: GarageConfig,
    *,
    input_fn: Callable[[str], str] = input,
) -> int:
    watcher = ToggleWatcher()
    run = start_controller(cfg, trace_path=args.trace, observers=[watcher])
    try:
        if args.toggle:
            return _toggle_once(run, watcher, cfg, wait_s=args.wait_s)
        return _controller_shell(run, input_fn)
    finally:
        run.stop()


def _toggle_once(run, watcher: ToggleWatcher, cfg: GarageConfig, *, wait_s: float) -> int:
    if not _wait_active(run, wait_s):
        print(f"ERROR: {run.controller.display_text()}")
        return 1
    if not run.controller.touch_down():
        print("ERROR: toggle was not accepted")
        return 1

    outcome = watcher.wait(cfg.session.request_timeout_s + 1.0)
    if outcome is None:
        print("ERROR: no reply to toggle")
        return 1
    if outcome.kind != "ok":
        payload = outcome.payload or {}
        print(f"ERROR: toggle {outcome.kind}: {payload.get('error') or payload.get('reason')}")
        return 1
    print("Toggled.")
    return 0


def _controller_shell(run, input_fn: Callable[[str], str]) -> int:
    controller = run.controller

    def _on_state(old: SessionState, new: SessionState) -> None:
        print(f"[link] {old.value} -> {new.value}: {controller.display_text()}")

    unsubscribe = run.session.subscribe_state(_on_state)
    print(TITLE)
    print("Commands: <enter>/t = toggle, s = status, q = quit")
    try:
        while True:
            try:
                line = input_fn("> ").strip().lower()
            except (EOFError, KeyboardInterrupt):
                print()
                return 0

            if line in ("", "t", "toggle"):
                accepted = controller.touch_down()
                print("toggle sent" if accepted else f"toggle dropped: {controller.display_text()}")
            elif line in ("s", "status"):
                print(controller.display_text())
                print_status(controller.status())
            elif line in ("q", "quit", "exit"):
                return 0
            else:
                print(f"unknown command {line!r}")
    finally:
        unsubscribe()


def cmd_server(args: argparse.Namespace, cfg: GarageConfig) -> int:
    run = start_server(cfg, trace_path=args.trace)
    print(f"Serving {cfg.endpoint.driver} on {cfg.endpoint.listen_host}:{run.listener.port} (actuator={cfg.actuator.driver})")
    try:
        wait_for_interrupt()
    finally:
        run.stop()
    return 0


def cmd_relay(args: argparse.Namespace, cfg: GarageConfig) -> int:
    run = start_relay(cfg, trace_path=args.trace)
    print(
        f"Relaying {cfg.endpoint.driver} on {cfg.endpoint.listen_host}:{run.listener.port}, "
        f"agents on {cfg.relay.agent_host}:{run.agents.port}"
    )
    try:
        wait_for_interrupt()
    finally:
        run.stop()
    return 0


def cmd_agent(args: argparse.Namespace, cfg: GarageConfig) -> int:
    run = start_agent(cfg)
    print(f"Agent dialing {cfg.endpoint.host}:{cfg.relay.agent_port} (actuator={cfg.actuator.driver})")
    try:
        wait_for_interrupt()
    finally:
        run.stop()
    return 0
