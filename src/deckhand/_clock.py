"""Clock ports.

Two notions of time are used in deckhand:

* **Monotonic time** (:class:`ClockPort`) drives simulator ticks and
  battery decay.  Only differences between two ``now()`` calls are
  meaningful, which keeps decay immune to NTP steps.
* **Wall-clock time** (:data:`WallClock`) stamps tokens, audit entries
  and wire messages.  Token deadlines are absolute UTC instants, so
  the coordinator compares aware ``datetime`` values.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Protocol, runtime_checkable

type WallClock = Callable[[], datetime]
"""Zero-argument callable returning an aware UTC ``datetime``."""


def utc_now() -> datetime:
    """Default :data:`WallClock`: the current time in UTC."""
    return datetime.now(UTC)


@runtime_checkable
class ClockPort(Protocol):
    """Monotonic clock used by simulator loops.

    Tests inject :class:`deckhand.testing.FakeClock` to make battery
    decay deterministic.
    """

    def now(self) -> float:
        """Return monotonic time in seconds from an arbitrary epoch."""
        ...


class SystemClock:
    """Production clock wrapping ``time.monotonic()``."""

    def now(self) -> float:
        """Return monotonic time in seconds."""
        return time.monotonic()
