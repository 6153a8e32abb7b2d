# garage/server/http_app.py
"""
HTTP(S) server side of the command link (Flask).

  GET  /api/ping    -> 200 "OK" | 401 | 503 "No agent reachable"
  POST /api/toggle  -> 200 "OK" | 401 | 503 ; optional JSON body {"ts": unix_seconds}

The shared secret travels in the x-auth header.
"""
from __future__ import annotations

import logging
import ssl
import threading
import time
from typing import Optional

from flask import Flask, Response as FlaskResponse, request
from werkzeug.serving import BaseWSGIServer, make_server

from garage.core.errors import AuthError, GarageError, NoAgentError
from garage.protocol import Command, CommandKind, ProtocolError
from garage.transport.http_channel import AUTH_HEADER

from .dispatcher import CommandDispatcher


def _text(body: str, status: int) -> FlaskResponse:
    return FlaskResponse(body, status=status, mimetype="text/plain")


def create_app(dispatcher: CommandDispatcher, *, logger: Optional[logging.Logger] = None) -> Flask:
    log = logger or logging.getLogger(__name__)
    app = Flask(__name__)

    def _dispatch(cmd: Command) -> FlaskResponse:
        try:
            resp = dispatcher.handle(cmd)
        except AuthError as e:
            return _text(e.message, 401)
        except NoAgentError as e:
            return _text(e.message, 503)
        except GarageError as e:
            log.warning("HTTP_COMMAND_FAILED kind=%s code=%s msg=%s", cmd.kind.value, e.code, e.message)
            return _text(e.message, 409)
        return _text(resp.message, 200)

    @app.get("/api/ping")
    def ping():
        return _dispatch(Command(CommandKind.PING, issued_at=time.time(), auth=request.headers.get(AUTH_HEADER)))

    @app.post("/api/toggle")
    def toggle():
        body = request.get_json(silent=True) or {}
        issued_at = time.time()
        if "ts" in body:
            try:
                issued_at = float(body["ts"])
            except (TypeError, ValueError):
                return _text(f"invalid 'ts': {body['ts']!r}", 400)
        return _dispatch(Command(CommandKind.TOGGLE, issued_at=issued_at, auth=request.headers.get(AUTH_HEADER)))

    @app.errorhandler(ProtocolError)
    def protocol_error(e):
        return _text(str(e), 400)

    return app


class HttpCommandServer:
    """werkzeug server around create_app(), with a shutdown handle."""

    def __init__(
        self,
        host: str,
        port: int,
        dispatcher: CommandDispatcher,
        *,
        ssl_context: Optional[ssl.SSLContext] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self._log = logger or logging.getLogger(__name__)
        self.app = create_app(dispatcher, logger=self._log)
        self._server: BaseWSGIServer = make_server(host, int(port), self.app, threaded=True, ssl_context=ssl_context)
        self._thread: Optional[threading.Thread] = None

    @property
    def port(self) -> int:
        return self._server.server_port

    def start(self) -> threading.Thread:
        self._thread = threading.Thread(target=self._server.serve_forever, name=f"HttpCommandServer:{self.port}", daemon=True)
        self._thread.start()
        self._log.info("HTTP_SERVER_LISTENING port=%d", self.port)
        return self._thread

    def stop(self) -> None:
        if self._thread is not None:
            self._server.shutdown()
            self._thread.join(timeout=2.0)
            self._thread = None
        self._server.server_close()
