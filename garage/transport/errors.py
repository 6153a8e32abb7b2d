# garage/transport/errors.py
from __future__ import annotations


class TransportError(Exception):
    """Base class for transport-layer failures."""


class TransportOpenError(TransportError):
    pass


class TransportIOError(TransportError):
    pass


class TransportTimeout(TransportError):
    pass


class TransportClosed(TransportIOError):
    """The peer closed the stream (EOF)."""


class TransportAuthError(TransportError):
    """TLS peer verification failed."""
