"""
Id generation and clocks.

Services never build ids or read the wall clock directly; they receive an
IdGenerator and a clock so tests can assert on deterministic ids and ordering.
"""

import secrets
import string
import time
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

Clock = Callable[[], datetime]

_ALPHABET = string.ascii_lowercase + string.digits


def utc_now() -> datetime:
    """Default clock: timezone-aware UTC now."""
    return datetime.now(timezone.utc)


class IdGenerator:
    """Base id generator. Subclasses implement new_id(prefix)."""

    def new_id(self, prefix: str) -> str:
        raise NotImplementedError


class RandomIdGenerator(IdGenerator):
    """
    Produces ids like ``appt-1710493200000-k3f9x2``.

    Millisecond timestamp plus a short random suffix, which keeps ids roughly
    sortable by creation time in the snapshot file.
    """

    def __init__(self, suffix_length: int = 6):
        self.suffix_length = suffix_length

    def new_id(self, prefix: str) -> str:
        millis = int(time.time() * 1000)
        suffix = "".join(secrets.choice(_ALPHABET) for _ in range(self.suffix_length))
        return f"{prefix}-{millis}-{suffix}"


class SequentialIdGenerator(IdGenerator):
    """Deterministic per-prefix counter: ``msg-0001``, ``msg-0002``..."""

    def __init__(self):
        self._counters: dict[str, int] = {}

    def new_id(self, prefix: str) -> str:
        self._counters[prefix] = self._counters.get(prefix, 0) + 1
        return f"{prefix}-{self._counters[prefix]:04d}"


class FrozenClock:
    """
    Manually advanced clock for tests.

    Each call returns the current instant and then advances by ``step`` so
    successive records get strictly increasing timestamps unless step is zero.
    """

    def __init__(self, start: Optional[datetime] = None, step: timedelta = timedelta(seconds=1)):
        self.current = start or datetime(2024, 3, 1, 8, 0, tzinfo=timezone.utc)
        self.step = step

    def __call__(self) -> datetime:
        value = self.current
        self.current = self.current + self.step
        return value

    def advance(self, delta: timedelta) -> None:
        self.current = self.current + delta
