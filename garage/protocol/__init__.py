# garage/protocol/__init__.py

from .errors import DecodeError, ProtocolError, UnknownCommandError
from .messages import AgentEvent, Command, CommandKind, Response

__all__ = [
    "Command", "CommandKind", "Response", "AgentEvent",
    "ProtocolError", "DecodeError", "UnknownCommandError"]
