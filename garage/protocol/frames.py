# garage/protocol/frames.py
"""
Fixed-size binary frames.

Every frame is exactly FRAME_SIZE bytes:
  byte 0      command / response code
  bytes 1..   NUL-padded text; the shared secret on requests,
              "code|message" on failure responses.
"""
from __future__ import annotations

from enum import IntEnum

from .errors import DecodeError, UnknownCommandError
from .messages import Command, CommandKind, Response

FRAME_SIZE = 100
TEXT_SIZE = FRAME_SIZE - 1


class FrameCode(IntEnum):
    PING = 100
    CLOSE = 101
    TOGGLE = 150
    OK = 200
    FAIL = 500

    @property
    def wire(self) -> int:
        # FAIL does not fit in one byte; it travels truncated (500 & 0xFF == 244)
        return int(self) & 0xFF


_REQ_CODES = {
    CommandKind.PING: FrameCode.PING,
    CommandKind.CLOSE: FrameCode.CLOSE,
    CommandKind.TOGGLE: FrameCode.TOGGLE,
}
_REQ_KINDS = {code.wire: kind for kind, code in _REQ_CODES.items()}


def _pack(code: FrameCode, text: str = "") -> bytes:
    raw = text.encode("utf-8")
    if len(raw) > TEXT_SIZE:
        raise ValueError(f"frame text too long: {len(raw)} > {TEXT_SIZE}")
    return bytes([code.wire]) + raw + b"\x00" * (TEXT_SIZE - len(raw))


def _unpack(frame: bytes) -> tuple[int, str]:
    if len(frame) != FRAME_SIZE:
        raise DecodeError(f"frame must be {FRAME_SIZE} bytes, got {len(frame)}")
    text = frame[1:].rstrip(b"\x00")
    try:
        return frame[0], text.decode("utf-8")
    except UnicodeDecodeError as e:
        raise DecodeError(f"frame text is not utf-8: {e}") from None


def encode_request(cmd: Command) -> bytes:
    return _pack(_REQ_CODES[cmd.kind], cmd.auth or "")


def decode_request(frame: bytes, *, received_at: float) -> Command:
    """Frames carry no timestamp; the receive time stands in for issued_at."""
    code, text = _unpack(frame)
    kind = _REQ_KINDS.get(code)
    if kind is None:
        raise UnknownCommandError(code)
    return Command(kind, issued_at=received_at, auth=text or None)


def encode_response(resp: Response) -> bytes:
    if resp.ok:
        return _pack(FrameCode.OK)
    text = f"{resp.code or ''}|{resp.message}"
    text = text.encode("utf-8")[:TEXT_SIZE].decode("utf-8", "ignore")
    return _pack(FrameCode.FAIL, text)


def decode_response(frame: bytes) -> Response:
    code, text = _unpack(frame)
    if code == FrameCode.OK.wire:
        return Response.success()
    if code == FrameCode.FAIL.wire:
        err_code, sep, message = text.partition("|")
        if not sep:
            return Response.failure(text or "command failed")
        return Response.failure(message or "command failed", err_code or None)
    raise DecodeError(f"unexpected response code {code}")
