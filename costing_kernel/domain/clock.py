"""
Clock -- Deterministic time abstraction.

Responsibility:
    Provides an injectable clock so services never call ``datetime.now()``
    or ``time.monotonic()`` directly.  The recalculation time budget and
    the timing figures on every summary are measured through it.

Architecture position:
    Kernel > Domain -- pure, zero I/O except SystemClock.

Failure modes:
    (none)
"""

import time
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone


class Clock(ABC):
    """
    Abstract clock interface.

    Contract:
        Services that need the current time receive a Clock via
        constructor injection.

    Guarantees:
        - ``now()`` returns a timezone-aware UTC ``datetime``.
        - ``monotonic()`` returns seconds from an arbitrary origin that
          never goes backwards.
    """

    @abstractmethod
    def now(self) -> datetime:
        """Get the current UTC time."""
        ...

    @abstractmethod
    def monotonic(self) -> float:
        """Seconds for measuring elapsed time."""
        ...


class SystemClock(Clock):
    """Production clock backed by the system time."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def monotonic(self) -> float:
        return time.monotonic()


class DeterministicClock(Clock):
    """
    Test clock with controlled time.

    ``now()`` and ``monotonic()`` return the same values until ``advance()``
    is called.  ``auto_advance`` moves the clock forward by that many seconds
    after every ``monotonic()`` read, which lets a test drive a time budget
    past its limit without sleeping.
    """

    def __init__(
        self,
        fixed_time: datetime | None = None,
        auto_advance: float = 0.0,
    ):
        self._fixed_time = fixed_time or datetime(
            2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc
        )
        self._elapsed = 0.0
        self._auto_advance = auto_advance

    def now(self) -> datetime:
        return self._fixed_time + timedelta(seconds=self._elapsed)

    def monotonic(self) -> float:
        value = self._elapsed
        self._elapsed += self._auto_advance
        return value

    def advance(self, seconds: float = 1) -> None:
        """Advance the clock by the specified seconds."""
        self._elapsed += seconds
