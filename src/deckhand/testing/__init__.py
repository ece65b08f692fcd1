"""Public test-support utilities for deckhand.

Re-exports test doubles and factories so that test suites can import
everything from a single ``deckhand.testing`` namespace instead of
reaching into private modules.

Provided symbols:

- :class:`ServiceHarness` — runs ProvisioningService on test doubles.
- :class:`MockMqttClient` — in-memory MQTT double that records calls.
- :class:`LoopbackMqttClient` — in-process broker for end-to-end flows.
- :class:`NullMqttClient` — silent no-op MQTT adapter.
- :class:`FakeClock` — deterministic monotonic clock.
- :class:`FakeWallClock` — deterministic, advanceable UTC wall clock.
- :func:`make_settings` — factory for ``Settings`` without ``.env`` files.
"""

from deckhand._mqtt import LoopbackMqttClient, MockMqttClient, NullMqttClient
from deckhand.testing._clock import FakeClock, FakeWallClock
from deckhand.testing._harness import ServiceHarness
from deckhand.testing._settings import make_settings

__all__ = [
    "FakeClock",
    "FakeWallClock",
    "LoopbackMqttClient",
    "MockMqttClient",
    "NullMqttClient",
    "ServiceHarness",
    "make_settings",
]
