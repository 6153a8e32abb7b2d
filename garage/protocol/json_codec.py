# garage/protocol/json_codec.py
"""
Newline-delimited JSON messages.

Commands:  {"auth": str, "type": "ping"|"toggle"|"close", "ts": float}
Responses: {"ok": bool, "message": str, "code"?: str}
Agent stream: {"type": "hello"|"toggle"|"event", ...}
"""
from __future__ import annotations

import json
import time
from typing import Any, Dict, Optional

from .errors import DecodeError
from .messages import Command, CommandKind, Response

AGENT_MESSAGE_TYPES = ("hello", "toggle", "event")


def _dumps(obj: Dict[str, Any]) -> bytes:
    return json.dumps(obj, separators=(",", ":")).encode("utf-8") + b"\n"


def _loads(line: bytes) -> Dict[str, Any]:
    try:
        obj = json.loads(line.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as e:
        raise DecodeError(f"invalid JSON message: {e}") from None
    if not isinstance(obj, dict):
        raise DecodeError(f"JSON message must be an object, got {type(obj).__name__}")
    return obj


def encode_request(cmd: Command) -> bytes:
    return _dumps({"auth": cmd.auth or "", "type": cmd.kind.value, "ts": cmd.issued_at})


def decode_request(line: bytes, *, received_at: Optional[float] = None) -> Command:
    obj = _loads(line)
    if "type" not in obj:
        raise DecodeError("request is missing 'type'")
    kind = CommandKind.parse(obj["type"])

    ts = obj.get("ts")
    if ts is None:
        issued_at = received_at if received_at is not None else time.time()
    else:
        try:
            issued_at = float(ts)
        except (TypeError, ValueError):
            raise DecodeError(f"invalid 'ts': {ts!r}") from None

    auth = obj.get("auth")
    return Command(kind, issued_at=issued_at, auth=str(auth) if auth else None)


def encode_response(resp: Response) -> bytes:
    out: Dict[str, Any] = {"ok": resp.ok, "message": resp.message}
    if resp.code:
        out["code"] = resp.code
    return _dumps(out)


def decode_response(line: bytes) -> Response:
    obj = _loads(line)
    ok = obj.get("ok")
    if not isinstance(ok, bool):
        raise DecodeError("response is missing boolean 'ok'")
    code = obj.get("code")
    return Response(ok=ok, message=str(obj.get("message", "")), code=str(code) if code else None)


def encode_agent_message(msg_type: str, **fields: Any) -> bytes:
    if msg_type not in AGENT_MESSAGE_TYPES:
        raise ValueError(f"unknown agent message type {msg_type!r}")
    return _dumps({"type": msg_type, **fields})


def decode_agent_message(line: bytes) -> Dict[str, Any]:
    obj = _loads(line)
    if obj.get("type") not in AGENT_MESSAGE_TYPES:
        raise DecodeError(f"unknown agent message type {obj.get('type')!r}")
    if "ts" in obj:
        try:
            obj["ts"] = float(obj["ts"])
        except (TypeError, ValueError):
            raise DecodeError(f"invalid 'ts': {obj['ts']!r}") from None
    return obj
