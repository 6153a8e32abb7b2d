# garage/server/dispatcher.py
from __future__ import annotations

import hmac
import logging
from typing import Optional

from garage.core.errors import AuthError, GarageError, NoAgentError
from garage.interfaces.command_sink import CommandEvent, CommandSink
from garage.interfaces.toggle_target import ToggleTarget
from garage.protocol import Command, CommandKind, ProtocolError, Response, UnknownCommandError


class CommandDispatcher:
    """
    Server-side command handling, independent of the wire encoding.

    handle() returns the ok Response or raises:
      - AuthError when the credential does not match (nothing else runs)
      - NoAgentError when a ping finds nothing to deliver to
      - UnknownCommandError for anything that is not ping/toggle/close
    The serving loop turns errors into failure responses via error_response().
    """

    def __init__(
        self,
        secret: str,
        target: ToggleTarget,
        *,
        cmd_sink: Optional[CommandSink] = None,
        logger: Optional[logging.Logger] = None,
    ):
        if not secret:
            raise ValueError("secret must be non-empty")
        self._secret = secret.encode("utf-8")
        self._target = target
        self._cmd_sink = cmd_sink
        self._log = logger or logging.getLogger(__name__)

    @property
    def target(self) -> ToggleTarget:
        return self._target

    def authorized(self, auth: Optional[str]) -> bool:
        return hmac.compare_digest((auth or "").encode("utf-8"), self._secret)

    def handle(self, cmd: Command) -> Response:
        if not self.authorized(cmd.auth):
            self._log.warning("AUTH_REJECTED kind=%s", getattr(cmd.kind, "value", cmd.kind))
            self._emit(cmd, "fail", {"code": AuthError.code})
            raise AuthError("Authentication failed.")

        self._emit(cmd, "recv")
        kind = cmd.kind
        if kind is CommandKind.PING:
            if not self._target.ping():
                self._emit(cmd, "fail", {"code": NoAgentError.code})
                raise NoAgentError()
            return Response.success()

        if kind is CommandKind.TOGGLE:
            self._target.toggle(cmd.issued_at)
            self._log.info("TOGGLE_ACCEPTED issued_at=%.3f", cmd.issued_at)
            self._emit(cmd, "ok")
            return Response.success()

        if kind is CommandKind.CLOSE:
            self._log.info("CLOSE_RECEIVED")
            return Response.success("closing")

        raise UnknownCommandError(kind)

    @staticmethod
    def error_response(exc: BaseException) -> Response:
        if isinstance(exc, GarageError):
            return Response.failure(exc.message, exc.code)
        if isinstance(exc, ProtocolError):
            return Response.failure(str(exc), "protocol_error")
        return Response.failure("Internal server error.", "internal_error")

    def _emit(self, cmd: Command, kind: str, payload: Optional[dict] = None) -> None:
        if self._cmd_sink is None:
            return
        name = getattr(cmd.kind, "value", str(cmd.kind))
        try:
            self._cmd_sink.on_command(CommandEvent(name=name, kind=kind, payload=payload))
        except Exception:
            self._log.exception("CMD_SINK_ERROR")
