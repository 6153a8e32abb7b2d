# garage/protocol/errors.py

class ProtocolError(Exception):
    """Base for wire-level failures (framing/parse/command semantics)."""


class DecodeError(ProtocolError):
    """Bytes on the wire do not form a valid frame / message."""


class UnknownCommandError(ProtocolError):
    def __init__(self, kind: object):
        super().__init__(f"unknown command kind: {kind!r}")
        self.kind = kind
