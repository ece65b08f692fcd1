"""A collection of simulators sharing one transport connection.

The fleet owns one :class:`~deckhand._router.TopicRouter` registered on
the transport, so each inbound message is routed once no matter how
many devices are running.  Each device still runs its own task; one
device failing to start or stop never affects the others.

:data:`FLEET_SCENARIOS` holds ready-made layouts (``basic``,
``full-yacht``, ``stress-test``) and :meth:`Fleet.inject` applies failure
scenarios from :mod:`deckhand._failures` to the running devices.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections import Counter
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from deckhand._clock import ClockPort, WallClock, utc_now
from deckhand._devices import create_simulator
from deckhand._errors import NotFoundError
from deckhand._failures import FailureInjector, FailureScenario
from deckhand._messages import DeviceType
from deckhand._mqtt import MqttMessageHandler, MqttPort
from deckhand._router import TopicRouter
from deckhand._settings import SimulatorSettings
from deckhand._simulator import DeviceSimulator, DeviceStatus, ProvisioningTicket

if TYPE_CHECKING:
    from deckhand._coordinator import IssuedToken, ProvisioningCoordinator

logger = logging.getLogger(__name__)

type Placement = tuple[DeviceType, str]
"""A device archetype and the room it goes in."""

_YACHT_ROOMS = (
    "Master-Cabin",
    "VIP-Cabin",
    "Guest-Cabin-1",
    "Guest-Cabin-2",
    "Main-Salon",
    "Upper-Salon",
    "Bridge",
    "Galley",
    "Crew-Mess",
    "Engine-Room",
    "Beach-Club",
    "Sun-Deck",
)

FLEET_SCENARIOS: dict[str, tuple[Placement, ...]] = {
    "basic": (
        (DeviceType.BUTTON, "Master-Cabin"),
        (DeviceType.BUTTON, "Guest-Cabin"),
        (DeviceType.WEARABLE, "Bridge"),
        (DeviceType.WEARABLE, "Crew-Quarters"),
        (DeviceType.REPEATER, "Main-Deck"),
    ),
    "full-yacht": (
        *((DeviceType.BUTTON, room) for room in _YACHT_ROOMS),
        *[(DeviceType.WEARABLE, "Crew-Quarters")] * 6,
        *(
            (DeviceType.REPEATER, deck)
            for deck in ("Main-Deck", "Upper-Deck", "Sun-Deck", "Engine-Room")
        ),
    ),
    "stress-test": (
        *((DeviceType.BUTTON, f"Test-Room-{i // 5 + 1}") for i in range(50)),
        *[(DeviceType.WEARABLE, "Test-Area")] * 20,
        *((DeviceType.REPEATER, f"Zone-{i + 1}") for i in range(10)),
    ),
}
"""Named device layouts, from a handful of devices up to a load test."""


def scenario_layout(name: str) -> tuple[Placement, ...]:
    """Return the placements of a named fleet scenario.

    Raises:
        NotFoundError: Unknown scenario *name*.
    """
    try:
        return FLEET_SCENARIOS[name]
    except KeyError:
        known = ", ".join(FLEET_SCENARIOS)
        msg = f"Unknown fleet scenario '{name}' (known: {known})"
        raise NotFoundError(msg) from None


@dataclass(frozen=True, slots=True)
class FleetStatistics:
    """Aggregate view over all simulators in a fleet."""

    total: int
    online: int
    dead: int
    average_battery: float
    by_type: dict[str, int] = field(default_factory=dict)
    by_room: dict[str, int] = field(default_factory=dict)
    failing: int = 0


class Fleet:
    """Creates, starts and stops simulators as a group.

    Args:
        mqtt: Transport shared by every device.
        namespace: Topic namespace.
        site: Default site for new devices.
        settings: Simulator cadence and retry policy.
        clock: Monotonic clock handed to every device.
        wall_clock: Wall clock handed to every device.
        rng: Random source; each device gets its own child generator.
    """

    def __init__(
        self,
        *,
        mqtt: MqttPort,
        namespace: str = "obedio",
        site: str = "main",
        settings: SimulatorSettings | None = None,
        clock: ClockPort | None = None,
        wall_clock: WallClock = utc_now,
        rng: random.Random | None = None,
    ) -> None:
        self._mqtt = mqtt
        self.namespace = namespace
        self.site = site
        self._settings = settings or SimulatorSettings()
        self._clock = clock
        self._wall_clock = wall_clock
        self._rng = rng or random.Random()  # noqa: S311
        self._router = TopicRouter()
        if isinstance(mqtt, MqttMessageHandler):
            mqtt.on_message(self._router.route)
        self._devices: list[DeviceSimulator] = []
        self._injector = FailureInjector(self)

    def __len__(self) -> int:
        return len(self._devices)

    def __iter__(self) -> Iterator[DeviceSimulator]:
        return iter(list(self._devices))

    @property
    def router(self) -> TopicRouter:
        return self._router

    # -- membership ---------------------------------------------------------

    def add(self, device: DeviceSimulator) -> DeviceSimulator:
        """Track an externally built simulator."""
        if device in self._devices:
            return device
        self._devices.append(device)
        return device

    def spawn(
        self,
        device_type: DeviceType | str,
        room: str,
        *,
        site: str | None = None,
        ticket: ProvisioningTicket | None = None,
        **kwargs: Any,
    ) -> DeviceSimulator:
        """Build a simulator wired to the fleet's transport and router.

        Without a *ticket* the device is standalone and generates its
        own id.  The device is added but not started.
        """
        device = create_simulator(
            device_type,
            mqtt=self._mqtt,
            room=room,
            namespace=self.namespace,
            site=site or self.site,
            ticket=ticket,
            router=self._router,
            settings=self._settings,
            clock=self._clock,
            wall_clock=self._wall_clock,
            rng=random.Random(self._rng.getrandbits(64)),  # noqa: S311
            **kwargs,
        )
        return self.add(device)

    def spawn_scenario(self, name: str, *, site: str | None = None) -> list[DeviceSimulator]:
        """Spawn standalone devices for every placement of a fleet scenario.

        Raises:
            NotFoundError: Unknown scenario *name*.
        """
        layout = scenario_layout(name)
        devices = [self.spawn(device_type, room, site=site) for device_type, room in layout]
        logger.info("Spawned %d device(s) for fleet scenario %s", len(devices), name)
        return devices


    async def provision(
        self,
        coordinator: ProvisioningCoordinator,
        device_type: DeviceType | str,
        room: str,
        *,
        site: str | None = None,
        created_by: str | None = "fleet",
        on_issued: Callable[[IssuedToken], None] | None = None,
        **kwargs: Any,
    ) -> DeviceSimulator:
        """Issue a token, then start a device that claims it.

        *on_issued* sees the token before the device claims it (the CLI
        prints its QR code).  The device is dropped from the fleet again
        if its claim fails.

        Raises:
            ProvisioningRejectedError: The claim was rejected.
            ClaimTimeoutError: No reply arrived in time.
        """
        issued = await coordinator.issue(room, site=site or self.site, created_by=created_by)
        if on_issued is not None:
            on_issued(issued)
        ticket = ProvisioningTicket.from_payload(
            issued.qr_payload,
            namespace=self.namespace,
            timeout=self._settings.claim_timeout,
        )
        device = self.spawn(device_type, room, site=site, ticket=ticket, **kwargs)
        try:
            await device.start()
        except Exception:
            self._devices.remove(device)
            raise
        return device

    def get(self, device_id: str) -> DeviceSimulator:
        """Return the device with *device_id*.

        Raises:
            NotFoundError: No such device in the fleet.
        """
        for device in self._devices:
            if device.device_id == device_id:
                return device
        msg = f"No simulated device '{device_id}'"
        raise NotFoundError(msg)

    async def remove(self, device_id: str) -> DeviceSimulator:
        """Stop and forget one device."""
        device = self.get(device_id)
        try:
            await device.stop()
        finally:
            self._devices.remove(device)
        return device

    def filter(
        self,
        *,
        device_type: DeviceType | str | None = None,
        room: str | None = None,
    ) -> list[DeviceSimulator]:
        """Devices matching all given criteria."""
        return [
            device
            for device in self._devices
            if (device_type is None or device.device_type == DeviceType(device_type))
            and (room is None or device.room == room)
        ]

    # -- lifecycle ----------------------------------------------------------

    async def start_all(self) -> dict[str, BaseException]:
        """Start every device that is not running.

        Returns the failures keyed by device id (or room for devices
        that never got one); successful devices keep running.
        """
        pending = [d for d in self._devices if not d.is_online and not d.is_dead]
        results = await asyncio.gather(*(d.start() for d in pending), return_exceptions=True)
        failures: dict[str, BaseException] = {}
        for device, result in zip(pending, results, strict=True):
            if isinstance(result, BaseException):
                key = device.device_id or f"{device.room}#{id(device):x}"
                logger.error(
                    "Failed to start simulator: %s",
                    result,
                    extra={"device_id": device.device_id, "room": device.room},
                )
                failures[key] = result
        return failures

    async def stop_all(self) -> None:
        """Stop every device; failures are logged and do not stop the rest."""
        devices = list(self._devices)
        results = await asyncio.gather(*(d.stop() for d in devices), return_exceptions=True)
        for device, result in zip(devices, results, strict=True):
            if isinstance(result, BaseException):
                logger.error(
                    "Failed to stop simulator: %s",
                    result,
                    extra={"device_id": device.device_id},
                )

    # -- failures -----------------------------------------------------------

    async def inject(self, scenario: FailureScenario | str) -> list[DeviceSimulator]:
        """Apply a failure scenario to the fleet's devices.

        Raises:
            NotFoundError: *scenario* names no predefined scenario.
        """
        return await self._injector.execute(scenario)

    async def clear_failures(self, device_id: str | None = None) -> None:
        """Lift injected failures on one device or on all of them."""
        await self._injector.clear(device_id)

    def active_failures(self) -> dict[str, list[str]]:
        return self._injector.active()

    # -- reporting ----------------------------------------------------------

    def statuses(self) -> list[DeviceStatus]:
        return [device.get_status() for device in self._devices]

    def statistics(self) -> FleetStatistics:
        """Counts by type and room, status totals and mean battery."""
        statuses = self.statuses()
        total = len(statuses)
        return FleetStatistics(
            total=total,
            online=sum(1 for s in statuses if s.online),
            dead=sum(1 for s in statuses if s.dead),
            average_battery=round(sum(s.battery for s in statuses) / total, 2) if total else 0.0,
            by_type=dict(Counter(str(s.device_type) for s in statuses)),
            by_room=dict(Counter(s.room for s in statuses)),
            failing=sum(1 for s in statuses if s.failures),
        )
