"""Deterministic clocks for testing.

:class:`FakeClock` satisfies :class:`~deckhand._clock.ClockPort`;
:class:`FakeWallClock` is a callable usable wherever a
:data:`~deckhand._clock.WallClock` is expected.  Neither depends on
real time.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta


@dataclass
class FakeClock:
    """Test double for ClockPort.

    Example::

        clock = FakeClock(42.0)
        assert clock.now() == 42.0
        clock.advance(3600)
        assert clock.now() == 3642.0
    """

    _time: float = 0.0

    def now(self) -> float:
        """Return the manually set time value."""
        return self._time

    def advance(self, seconds: float) -> None:
        """Move time forward by *seconds*."""
        self._time += seconds


@dataclass
class FakeWallClock:
    """Advanceable UTC wall clock; call it to read the time."""

    current: datetime = field(default_factory=lambda: datetime(2026, 1, 15, 12, 0, tzinfo=UTC))

    def __call__(self) -> datetime:
        return self.current

    def advance(self, seconds: float = 0.0, **kwargs: float) -> None:
        """Move time forward; keyword arguments go to ``timedelta``."""
        self.current += timedelta(seconds=seconds, **kwargs)
