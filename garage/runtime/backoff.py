# garage/runtime/backoff.py
from __future__ import annotations


class BackoffPolicy:
    """
    Reconnect delay after consecutive failures.

    next_delay() returns the delay to wait now and advances the internal state;
    it never sleeps itself. The sequence is base, base*factor, ... capped at max_delay,
    and reset() puts it back to base after any successful connect.
    """

    def __init__(self, base: float, max_delay: float, factor: float = 2.0):
        if base <= 0:
            raise ValueError(f"base must be > 0, got {base}")
        if max_delay < base:
            raise ValueError(f"max_delay ({max_delay}) must be >= base ({base})")
        if factor < 1.0:
            raise ValueError(f"factor must be >= 1, got {factor}")
        self.base = float(base)
        self.max_delay = float(max_delay)
        self.factor = float(factor)
        self._current = self.base
        self._failures = 0

    @property
    def current(self) -> float:
        """The delay the next failure will wait."""
        return self._current

    @property
    def failures(self) -> int:
        return self._failures

    def next_delay(self) -> float:
        delay = self._current
        self._failures += 1
        self._current = min(self._current * self.factor, self.max_delay)
        return delay

    def reset(self) -> None:
        self._current = self.base
        self._failures = 0

    def __repr__(self) -> str:
        return (
            f"BackoffPolicy(base={self.base}, max_delay={self.max_delay}, "
            f"factor={self.factor}, current={self._current}, failures={self._failures})"
        )
