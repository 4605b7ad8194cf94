"""Wall-clock and identifier sources shared by every service.

Services never call ``time.time()`` or ``uuid`` directly; they receive a
:class:`Clock` and an :class:`IdGenerator` from the composition root so tests
can drive time by hand.
"""

from __future__ import annotations

import time
import uuid
from typing import Protocol

MS_PER_SECOND = 1000
MS_PER_MINUTE = 60 * MS_PER_SECOND
MS_PER_HOUR = 60 * MS_PER_MINUTE
MS_PER_DAY = 24 * MS_PER_HOUR


class Clock(Protocol):
    """Source of the current time in integer epoch milliseconds (UTC)."""

    def now_ms(self) -> int: ...


class SystemClock:
    """Clock backed by the process wall clock."""

    def now_ms(self) -> int:
        return int(time.time() * MS_PER_SECOND)


class ManualClock:
    """Clock that only moves when told to. Used by tests and replay tools."""

    def __init__(self, start_ms: int = 1_700_000_000_000) -> None:
        self._now = start_ms

    def now_ms(self) -> int:
        return self._now

    def advance(self, ms: int) -> int:
        """Move time forward by ``ms`` milliseconds and return the new time."""
        if ms < 0:
            raise ValueError("ManualClock cannot move backwards")
        self._now += ms
        return self._now

    def set(self, now_ms: int) -> None:
        self._now = now_ms


class IdGenerator:
    """Issues globally unique identifiers (32-char lowercase hex, uuid4)."""

    def new_id(self) -> str:
        return uuid.uuid4().hex


class SequentialIdGenerator(IdGenerator):
    """Deterministic ids (``prefix-1``, ``prefix-2`` ...) for tests."""

    def __init__(self, prefix: str = "id") -> None:
        self._prefix = prefix
        self._counter = 0

    def new_id(self) -> str:
        self._counter += 1
        return f"{self._prefix}-{self._counter}"
