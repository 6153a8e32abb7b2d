# garage/core/errors.py
from __future__ import annotations


class GarageError(Exception):
    """
    Base class for all expected operational errors in the garage link.
    """

    #: Stable machine-readable identifier (wire error codes, CLI exit mapping, UI).
    code: str = "unknown"

    #: Whether the session manager should reconnect after this error.
    transient: bool = True

    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        details: dict | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.hint = hint
        self.details = details or {}

    def __str__(self) -> str:
        return self.message


# ---------------------------------------------------------------------------
# Configuration errors (nothing opened yet)
# ---------------------------------------------------------------------------

class ConfigError(GarageError):
    """
    Configuration is missing, malformed or inconsistent.

    Examples:
      - YAML file not found / not a mapping
      - unknown channel driver key
      - backoff base larger than max
    """
    code = "config_error"
    transient = False


# ---------------------------------------------------------------------------
# Connection lifecycle errors
# ---------------------------------------------------------------------------

class ChannelConnectError(GarageError):
    """
    Transport-level connect failed (refused, reset, unreachable host).
    """
    code = "connect_error"


class ChannelTimeoutError(GarageError):
    """
    A connect, handshake or round trip did not finish in time.
    """
    code = "timeout"


class HandshakeTimeoutError(ChannelTimeoutError):
    """
    The protocol handshake did not complete within its deadline.
    The half-open connection has been force-closed.
    """
    code = "handshake_timeout"


class ChannelClosedError(GarageError):
    """
    The peer closed the connection (EOF) or the transport is no longer usable.
    """
    code = "channel_closed"


class AuthError(GarageError):
    """
    The presented credential was rejected.

    Terminal for the attempt: retrying without a credential change is useless.
    """
    code = "auth_failed"
    transient = False


# ---------------------------------------------------------------------------
# Protocol / command errors
# ---------------------------------------------------------------------------

class ProtocolDecodeError(GarageError):
    """
    Malformed frame / JSON / HTTP body. The current connection is dropped.
    """
    code = "protocol_error"


class CommandRejectedError(GarageError):
    """
    The peer answered, but with a not-ok response.
    The connection itself is healthy.
    """
    code = "command_rejected"


class NoAgentError(CommandRejectedError):
    """
    The relay has no registered agent to deliver to.

    Distinguished from network failures so the controller can show it as-is.
    """
    code = "no_agent"

    def __init__(self, message: str = "No agent reachable", **kwargs):
        super().__init__(message, **kwargs)


# ---------------------------------------------------------------------------
# Physical side
# ---------------------------------------------------------------------------

class ActuatorError(GarageError):
    """
    The actuator could not be opened or failed while pulsing its output.
    """
    code = "actuator_error"
    transient = False


_BY_CODE = {
    cls.code: cls
    for cls in (
        ConfigError,
        ChannelConnectError,
        ChannelTimeoutError,
        HandshakeTimeoutError,
        ChannelClosedError,
        AuthError,
        ProtocolDecodeError,
        CommandRejectedError,
        NoAgentError,
    )
}


def error_for_code(code: str | None, message: str) -> GarageError:
    """Rebuild a typed error from a wire error code (unknown codes → CommandRejectedError)."""
    cls = _BY_CODE.get(code or "", CommandRejectedError)
    return cls(message)
