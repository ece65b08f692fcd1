"""Test harness running :class:`ProvisioningService` on test doubles.

Provides :class:`ServiceHarness`, which removes the boilerplate of
creating the service, a loopback transport, clocks, settings and a
shutdown event for end-to-end tests.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Self

from deckhand._mqtt import LoopbackMqttClient
from deckhand._service import FleetPlan, ProvisioningService
from deckhand._settings import Settings
from deckhand.testing._clock import FakeClock, FakeWallClock
from deckhand.testing._settings import make_settings

if TYPE_CHECKING:
    from deckhand._coordinator import ProvisioningCoordinator
    from deckhand._fleet import Fleet

_TEST_BCRYPT_ROUNDS = 4


@dataclass
class ServiceHarness:
    """ProvisioningService wired to a loopback transport and fake clocks.

    Usage::

        harness = ServiceHarness.create(plan=FleetPlan(buttons=2))
        async with harness.running():
            assert len(harness.fleet) == 2
    """

    service: ProvisioningService
    mqtt: LoopbackMqttClient
    clock: FakeClock
    wall_clock: FakeWallClock
    settings: Settings
    shutdown_event: asyncio.Event

    @classmethod
    def create(
        cls,
        *,
        plan: FleetPlan | None = None,
        name: str = "deckhand-test",
        version: str = "1.0.0",
        **settings_overrides: Any,
    ) -> Self:
        """Create a harness with fresh test doubles.

        Args:
            plan: Simulated devices to provision at startup.
            name: Service name.
            version: Service version.
            **settings_overrides: Forwarded to :func:`make_settings`.
        """
        return cls(
            service=ProvisioningService(
                name=name,
                version=version,
                plan=plan,
                heartbeat_interval=None,
                bcrypt_rounds=_TEST_BCRYPT_ROUNDS,
            ),
            mqtt=LoopbackMqttClient(),
            clock=FakeClock(),
            wall_clock=FakeWallClock(),
            settings=make_settings(**settings_overrides),
            shutdown_event=asyncio.Event(),
        )

    async def run(self) -> None:
        """Run the service with the harness's doubles until shutdown."""
        await self.service.run(
            settings=self.settings,
            mqtt=self.mqtt,
            shutdown_event=self.shutdown_event,
            clock=self.clock,
            wall_clock=self.wall_clock,
        )

    def trigger_shutdown(self) -> None:
        """Signal the shutdown event."""
        self.shutdown_event.set()

    @contextlib.asynccontextmanager
    async def running(self, timeout: float = 5.0) -> AsyncIterator[Self]:
        """Run the service in a task; yield once it is ready, then shut down."""
        task = asyncio.create_task(self.run())
        ready = asyncio.create_task(self.service.ready.wait())
        try:
            done, _ = await asyncio.wait(
                {task, ready},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
            if task in done:
                task.result()
            if ready not in done:
                msg = f"Service did not become ready within {timeout}s"
                raise TimeoutError(msg)
            yield self
        finally:
            ready.cancel()
            self.trigger_shutdown()
            if not task.done():
                await asyncio.wait_for(task, timeout)

    @property
    def coordinator(self) -> ProvisioningCoordinator:
        assert self.service.coordinator is not None, "service is not running"
        return self.service.coordinator

    @property
    def fleet(self) -> Fleet:
        assert self.service.fleet is not None, "service is not running"
        return self.service.fleet
