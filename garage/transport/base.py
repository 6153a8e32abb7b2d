# garage/transport/base.py
from __future__ import annotations

import itertools
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Iterator

from garage.core.errors import (
    AuthError,
    ChannelClosedError,
    ChannelConnectError,
    ChannelTimeoutError,
    GarageError,
    ProtocolDecodeError,
    error_for_code,
)
from garage.protocol import Command, ProtocolError, Response

from .errors import (
    TransportAuthError,
    TransportClosed,
    TransportError,
    TransportIOError,
    TransportOpenError,
    TransportTimeout,
)

_conn_ids = itertools.count(1)


@dataclass
class Connection:
    """
    Handle returned by CommandChannel.connect().

    `handle` is whatever the concrete channel needs (socket wrapper, HTTP session).
    """
    peer: str
    handle: Any
    conn_id: int = field(default_factory=lambda: next(_conn_ids))
    created_at: float = field(default_factory=time.monotonic)
    closed: bool = False


class CommandChannel(ABC):
    """
    One wire encoding of the command link.

    Contract:
      - connect(timeout) opens the transport; raises ChannelConnectError / ChannelTimeoutError.
      - handshake(conn, timeout) authenticates / negotiates; may be a no-op.
      - send(conn, cmd) is synchronous with a single outstanding request per connection.
        Returns the ok Response; not-ok responses are raised as typed GarageErrors.
      - close(conn) is idempotent and best-effort.
    """

    driver: str = "base"

    @abstractmethod
    def connect(self, timeout: float) -> Connection: ...

    def handshake(self, conn: Connection, timeout: float) -> None:
        return None

    @abstractmethod
    def send(self, conn: Connection, cmd: Command) -> Response: ...

    @abstractmethod
    def close(self, conn: Connection) -> None: ...

    @contextmanager
    def translated_errors(self, op: str) -> Iterator[None]:
        """Translate transport/protocol exceptions into the GarageError taxonomy."""
        details = {"driver": self.driver, "op": op}
        try:
            yield
        except GarageError:
            raise
        except TransportTimeout as e:
            raise ChannelTimeoutError(f"{op} timed out.", hint=str(e), details=details) from None
        except TransportAuthError as e:
            raise AuthError(f"{op} rejected the peer credentials.", hint=str(e), details=details) from None
        except TransportOpenError as e:
            raise ChannelConnectError(f"Could not connect ({self.driver}).", hint=str(e), details=details) from None
        except (TransportClosed, TransportIOError) as e:
            raise ChannelClosedError(f"Connection lost during {op}.", hint=str(e), details=details) from None
        except TransportError as e:
            raise ChannelClosedError(f"Transport error during {op}.", hint=str(e), details=details) from None
        except ProtocolError as e:
            raise ProtocolDecodeError(f"Malformed reply during {op}.", hint=str(e), details=details) from None

    @staticmethod
    def require_ok(resp: Response) -> Response:
        if resp.ok:
            return resp
        raise error_for_code(resp.code, resp.message or "command failed")
