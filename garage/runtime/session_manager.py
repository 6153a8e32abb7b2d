# garage/runtime/session_manager.py
from __future__ import annotations

import logging
import queue
import threading
import time
from concurrent.futures import Future, TimeoutError as FutureTimeout, wait
from typing import Callable, List, Optional

from garage.core.config import SessionConfig
from garage.core.errors import (
    AuthError,
    CommandRejectedError,
    GarageError,
    HandshakeTimeoutError,
)
from garage.interfaces.command_sink import CommandEvent, CommandSink
from garage.protocol import Command, Response
from garage.runtime.backoff import BackoffPolicy
from garage.runtime.debounce import StalenessGate
from garage.runtime.liveness import LivenessTracker
from garage.runtime.state import Session, SessionState, SessionStatus
from garage.transport.base import CommandChannel, Connection

StateCallback = Callable[[SessionState, SessionState], None]  # (old, new)

_TICK_S = 0.05


class SessionManager:
    """
    Owns one logical connection over a CommandChannel and keeps it alive.

    DISCONNECTED -> CONNECTING -> HANDSHAKING -> ACTIVE, and back to DISCONNECTED
    on any failure, after a backoff sleep. While ACTIVE it services, one command
    at a time: a close request, the toggle slot, and the periodic ping.

    run() returns on cancel() / stop event, after request_close() has been
    honored, or on an AuthError. It never returns because of a transient
    network error.
    """

    def __init__(
        self,
        channel: CommandChannel,
        *,
        config: SessionConfig,
        auth: Optional[str] = None,
        liveness: Optional[LivenessTracker] = None,
        backoff: Optional[BackoffPolicy] = None,
        cmd_sink: Optional[CommandSink] = None,
        clock: Callable[[], float] = time.time,
        logger: Optional[logging.Logger] = None,
    ):
        self._channel = channel
        self._cfg = config
        self._auth = auth
        self._liveness = liveness or LivenessTracker()
        self._backoff = backoff or BackoffPolicy(
            config.backoff_base_s, config.backoff_max_s, config.backoff_factor
        )
        self._staleness = StalenessGate(config.stale_toggle_s, clock=clock)
        self._cmd_sink = cmd_sink
        self._clock = clock
        self._log = logger or logging.getLogger(__name__)

        self._lock = threading.RLock()
        self._state = SessionState.DISCONNECTED
        self._session: Optional[Session] = None
        self._conn: Optional[Connection] = None
        self._reconnects = 0

        # Size-1 slot: a toggle is accepted only if the session can take it right away.
        self._toggles: "queue.Queue[Command]" = queue.Queue(maxsize=1)
        self._stop_event = threading.Event()
        self._close_requested = threading.Event()
        self._thread: Optional[threading.Thread] = None

        self._state_cbs: List[StateCallback] = []

    # ---------------- Read side ----------------
    @property
    def state(self) -> SessionState:
        with self._lock:
            return self._state

    @property
    def session(self) -> Optional[Session]:
        with self._lock:
            return self._session

    @property
    def liveness(self) -> LivenessTracker:
        return self._liveness

    @property
    def backoff(self) -> BackoffPolicy:
        return self._backoff

    def status(self) -> SessionStatus:
        live = self._liveness.current_state()
        with self._lock:
            return SessionStatus(
                state=self._state,
                session_id=self._session.session_id if self._session else None,
                ping_ok=live.ping_ok,
                last_error=live.last_error_message,
                reconnects=self._reconnects,
                next_backoff_s=self._backoff.current,
            )

    def subscribe_state(self, cb: StateCallback) -> Callable[[], None]:
        with self._lock:
            self._state_cbs.append(cb)

        def _unsubscribe() -> None:
            with self._lock:
                if cb in self._state_cbs:
                    self._state_cbs.remove(cb)

        return _unsubscribe

    # ---------------- Control side (any thread, never blocks) ----------------
    def request_toggle(self, issued_at: Optional[float] = None) -> bool:
        """
        Hand a toggle to the session. Dropped (returns False) when the session is
        not ACTIVE or another toggle is still waiting to be sent.
        """
        if self.state is not SessionState.ACTIVE:
            self._log.info("TOGGLE_DROPPED reason=not_active state=%s", self.state.value)
            self._emit("toggle", "dropped", {"reason": "not_active"})
            return False

        cmd = Command.toggle(auth=self._auth, issued_at=self._clock() if issued_at is None else issued_at)
        try:
            self._toggles.put_nowait(cmd)
        except queue.Full:
            self._log.info("TOGGLE_DROPPED reason=busy")
            self._emit("toggle", "dropped", {"reason": "busy"})
            return False
        return True

    def request_close(self) -> None:
        """Clean shutdown: notify the peer, release the transport, exit run()."""
        self._log.info("SESSION_CLOSE_REQUESTED")
        self._close_requested.set()

    def cancel(self) -> None:
        """Abrupt shutdown: unblock any in-flight I/O and exit without further retries."""
        self._stop_event.set()
        with self._lock:
            conn = self._conn
        if conn is not None:
            try:
                self._channel.close(conn)
            except Exception:
                self._log.exception("SESSION_CANCEL_CLOSE_FAILED")

    def start(self) -> threading.Thread:
        with self._lock:
            if self._thread is not None and self._thread.is_alive():
                return self._thread
            self._thread = threading.Thread(target=self.run, name="SessionManager", daemon=True)
            self._thread.start()
            return self._thread

    def join(self, timeout: Optional[float] = None) -> bool:
        """Wait for the session thread; True once it has exited."""
        with self._lock:
            thread = self._thread
        if thread is None or thread is threading.current_thread():
            return True
        thread.join(timeout=timeout)
        return not thread.is_alive()

    def stop(self, timeout: Optional[float] = None) -> None:
        self.cancel()
        with self._lock:
            thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=timeout)

    # ---------------- Main loop ----------------
    def run(self, stop_event: Optional[threading.Event] = None) -> None:
        if stop_event is not None:
            self._stop_event = stop_event

        self._log.info("SESSION_MANAGER_START driver=%s", self._channel.driver)
        try:
            while not self._should_exit():
                try:
                    self._run_session()
                    return
                except AuthError as e:
                    self._fail(e)
                    self._log.error("SESSION_AUTH_FAILED msg=%s (not retrying)", e.message)
                    return
                except GarageError as e:
                    self._fail(e)
                    if self._stopping():
                        return
                except Exception as e:
                    self._log.exception("SESSION_UNEXPECTED_ERROR")
                    self._fail(e)
                    if self._stopping():
                        return

                delay = self._backoff.next_delay()
                with self._lock:
                    self._reconnects += 1
                self._log.info(
                    "SESSION_RETRY delay_s=%.3f failures=%d next_delay_s=%.3f",
                    delay,
                    self._backoff.failures,
                    self._backoff.current,
                )
                if self._wait(delay):
                    return
        finally:
            self._release_connection()
            self._set_state(SessionState.DISCONNECTED)
            self._log.info("SESSION_MANAGER_EXIT")

    def _run_session(self) -> None:
        session = Session()
        with self._lock:
            self._session = session
        self._set_state(SessionState.CONNECTING)

        conn = self._connect()
        if conn is None:
            return
        with self._lock:
            self._conn = conn
        if self._stopping():
            return
        self._log.info("SESSION_CONNECTED session=%s peer=%s", session.session_id, conn.peer)

        self._set_state(SessionState.HANDSHAKING)
        self._handshake(conn)

        self._backoff.reset()
        self._liveness.mark_ok()
        self._set_state(SessionState.ACTIVE)
        self._log.info("SESSION_ACTIVE session=%s", session.session_id)

        self._active_loop(conn)

    def _connect(self) -> Optional[Connection]:
        """
        Run channel.connect on a helper thread so cancel() is honored within a tick.

        Returns None if stopped first; a connection that lands afterwards is closed.
        """
        fut: Future = Future()

        def _run() -> None:
            try:
                fut.set_result(self._channel.connect(self._cfg.connect_timeout_s))
            except BaseException as e:
                fut.set_exception(e)

        threading.Thread(target=_run, name="SessionConnect", daemon=True).start()
        while not self._stopping():
            if wait([fut], timeout=_TICK_S).done:
                return fut.result()

        def _close_late(f: Future) -> None:
            if f.exception() is None:
                self._log.info("SESSION_LATE_CONNECTION_CLOSED peer=%s", f.result().peer)
                self._channel.close(f.result())

        fut.add_done_callback(_close_late)
        self._log.info("SESSION_CONNECT_ABANDONED")
        return None

    def _handshake(self, conn: Connection) -> None:
        """Race the channel handshake against a timer; force-close on timeout."""
        timeout = self._cfg.handshake_timeout_s
        fut: Future = Future()

        def _run() -> None:
            try:
                self._channel.handshake(conn, timeout)
                fut.set_result(None)
            except BaseException as e:
                fut.set_exception(e)

        threading.Thread(target=_run, name="SessionHandshake", daemon=True).start()
        try:
            fut.result(timeout=timeout)
        except FutureTimeout:
            self._release_connection()
            raise HandshakeTimeoutError(
                f"Handshake did not complete within {timeout}s.",
                details={"peer": conn.peer},
            ) from None

    def _active_loop(self, conn: Connection) -> None:
        interval = self._cfg.ping_interval_s
        next_ping = time.monotonic() + interval

        while True:
            if self._stopping():
                return
            if self._close_requested.is_set():
                self._close_gracefully(conn)
                return

            wait_s = min(max(0.0, next_ping - time.monotonic()), _TICK_S)
            try:
                cmd = self._toggles.get(timeout=wait_s)
            except queue.Empty:
                cmd = None

            if cmd is not None:
                self._send_toggle(conn, cmd)
                continue

            if time.monotonic() >= next_ping:
                self._round_trip(conn, Command.ping(auth=self._auth))
                next_ping = time.monotonic() + interval

    def _send_toggle(self, conn: Connection, cmd: Command) -> None:
        now = self._clock()
        if not self._staleness.is_fresh(cmd.issued_at, now):
            self._log.warning("TOGGLE_STALE_DROPPED age_s=%.1f max_age_s=%.1f", cmd.age(now), self._staleness.max_age_s)
            self._emit("toggle", "dropped", {"reason": "stale", "age_s": cmd.age(now)})
            return
        self._log.info("TOGGLE_SEND issued_at=%.3f", cmd.issued_at)
        self._round_trip(conn, cmd)

    def _round_trip(self, conn: Connection, cmd: Command) -> Optional[Response]:
        name = cmd.kind.value
        self._emit(name, "send")
        t0 = time.perf_counter()
        try:
            resp = self._channel.send(conn, cmd)
        except CommandRejectedError as e:
            # The peer answered; the link itself is fine.
            self._touch()
            self._liveness.mark_failed(e)
            self._log.warning("COMMAND_REJECTED kind=%s code=%s msg=%s", name, e.code, e.message)
            self._emit(name, "fail", {"code": e.code, "error": e.message})
            return None
        except GarageError as e:
            self._emit(name, "fail", {"code": e.code, "error": e.message})
            raise

        self._touch()
        self._liveness.mark_ok()
        self._emit(name, "ok", {"rtt_ms": (time.perf_counter() - t0) * 1000.0})
        return resp

    def _close_gracefully(self, conn: Connection) -> None:
        self._set_state(SessionState.CLOSING)
        try:
            self._channel.send(conn, Command.close(auth=self._auth))
        except GarageError as e:
            self._log.info("CLOSE_NOTIFY_FAILED code=%s msg=%s", e.code, e.message)
        finally:
            self._release_connection()
        self._log.info("SESSION_CLOSED")

    # ---------------- Helpers ----------------
    def _fail(self, err: BaseException) -> None:
        self._liveness.mark_failed(err)
        self._release_connection()
        self._set_state(SessionState.DISCONNECTED)
        self._log.warning(
            "SESSION_FAILED code=%s msg=%s",
            getattr(err, "code", type(err).__name__),
            getattr(err, "message", str(err)),
        )

    def _release_connection(self) -> None:
        with self._lock:
            conn, self._conn = self._conn, None
        if conn is None:
            return
        try:
            self._channel.close(conn)
        except Exception:
            self._log.exception("CHANNEL_CLOSE_FAILED")

    def _set_state(self, new: SessionState) -> None:
        with self._lock:
            old = self._state
            if old is new:
                return
            self._state = new
            if self._session is not None:
                self._session.state = new
            cbs = list(self._state_cbs)

        self._log.debug("SESSION_STATE %s -> %s", old.value, new.value)
        for cb in cbs:
            try:
                cb(old, new)
            except Exception:
                self._log.exception("STATE_CALLBACK_ERROR")

    def _touch(self) -> None:
        with self._lock:
            if self._session is not None:
                self._session.touch()

    def _stopping(self) -> bool:
        return self._stop_event.is_set()

    def _should_exit(self) -> bool:
        return self._stopping() or self._close_requested.is_set()

    def _wait(self, delay: float) -> bool:
        """Sleep for delay; True if stop or close was requested meanwhile."""
        deadline = time.monotonic() + delay
        while True:
            if self._should_exit():
                return True
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            self._stop_event.wait(min(remaining, _TICK_S))

    def _emit(self, name: str, kind: str, payload: Optional[dict] = None) -> None:
        if self._cmd_sink is None:
            return
        with self._lock:
            session_id = self._session.session_id if self._session else None
        try:
            self._cmd_sink.on_command(CommandEvent(name=name, kind=kind, payload=payload, session_id=session_id))
        except Exception:
            self._log.exception("CMD_SINK_ERROR")
