"""Service composition root.

:class:`ProvisioningService` wires settings, logging, transport,
coordinator, health reporting and an optional simulated fleet, then
runs until SIGINT/SIGTERM (or an injected shutdown event).

Orchestration order:

1. Bootstrap: settings, logging, transport, coordinator, health.
2. Connect: attach the coordinator, start the transport.
3. Run: initial heartbeat, heartbeat loop, provision the fleet, block.
4. Tear down: stop the fleet, cancel the heartbeat, publish offline,
   stop the transport.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
import uuid
from collections.abc import Callable
from dataclasses import dataclass

from deckhand._clock import ClockPort, SystemClock, WallClock, utc_now
from deckhand._coordinator import IssuedToken, ProvisioningCoordinator
from deckhand._credentials import DEFAULT_BCRYPT_ROUNDS, CredentialIssuer
from deckhand._errors import DeckhandError, ErrorPublisher
from deckhand._fleet import Fleet, Placement, scenario_layout
from deckhand._health import HealthReporter, build_will_config
from deckhand._logging import configure_logging
from deckhand._messages import DeviceType
from deckhand._mqtt import (
    LoopbackMqttClient,
    MqttClient,
    MqttLifecycle,
    MqttPort,
)
from deckhand._qr import render_qr
from deckhand._settings import Settings
from deckhand._store import (
    InMemoryAuditLog,
    InMemoryCredentialStore,
    InMemoryTokenStore,
)

logger = logging.getLogger(__name__)

_CONNECT_TIMEOUT = 30.0


@dataclass(frozen=True, slots=True)
class FleetPlan:
    """How many simulated devices to provision at startup, and where.

    The counted devices all go in :attr:`room`; :attr:`layout` adds
    devices with their own rooms, usually from a named fleet scenario.
    """

    buttons: int = 0
    wearables: int = 0
    repeaters: int = 0
    room: str = "Lobby"
    site: str | None = None
    layout: tuple[Placement, ...] = ()

    @classmethod
    def for_scenario(cls, name: str, *, site: str | None = None) -> FleetPlan:
        """Plan the devices of a named fleet scenario.

        Raises:
            NotFoundError: Unknown scenario *name*.
        """
        return cls(site=site, layout=scenario_layout(name))

    @property
    def total(self) -> int:
        return len(self.placements())

    def device_types(self) -> list[DeviceType]:
        return [device_type for device_type, _ in self.placements()]

    def placements(self) -> list[Placement]:
        counted = (
            [DeviceType.BUTTON] * self.buttons
            + [DeviceType.WEARABLE] * self.wearables
            + [DeviceType.REPEATER] * self.repeaters
        )
        return [(device_type, self.room) for device_type in counted] + list(self.layout)


class ProvisioningService:
    """Runs the provisioning coordinator and an optional simulated fleet.

    Args:
        name: Service name, used for the health topic and client id.
        version: Reported in logs and heartbeats.
        dry_run: Use an in-process loopback transport instead of a broker.
        plan: Simulated devices to provision at startup.
        show_qr: Print each issued QR payload as ASCII art.
        heartbeat_interval: Seconds between heartbeats; ``None`` disables
            the periodic loop (one heartbeat is still published).
        bcrypt_rounds: Cost factor for stored password verifiers.
        echo: Where QR codes are written.
    """

    def __init__(
        self,
        *,
        name: str = "deckhand",
        version: str = "",
        dry_run: bool = False,
        plan: FleetPlan | None = None,
        show_qr: bool = False,
        heartbeat_interval: float | None = 60.0,
        bcrypt_rounds: int = DEFAULT_BCRYPT_ROUNDS,
        echo: Callable[[str], None] = print,
    ) -> None:
        self.name = name
        self.version = version
        self.dry_run = dry_run
        self.plan = plan or FleetPlan()
        self.show_qr = show_qr
        self.heartbeat_interval = heartbeat_interval
        self.bcrypt_rounds = bcrypt_rounds
        self._echo = echo
        self.coordinator: ProvisioningCoordinator | None = None
        self.fleet: Fleet | None = None
        self.ready = asyncio.Event()

    async def run(
        self,
        *,
        settings: Settings | None = None,
        mqtt: MqttPort | None = None,
        shutdown_event: asyncio.Event | None = None,
        clock: ClockPort | None = None,
        wall_clock: WallClock = utc_now,
    ) -> None:
        """Run until shutdown.

        Parameters exist for testability: inject a test transport, a
        fake clock and a manual shutdown event to avoid real I/O.
        """
        # --- Phase 1: Bootstrap ---
        resolved = settings if settings is not None else Settings()
        configure_logging(resolved.logging, service=self.name, version=self.version)
        resolved_clock = clock if clock is not None else SystemClock()
        namespace = resolved.provisioning.namespace

        mqtt = self._create_mqtt(mqtt, resolved)
        coordinator = self._create_coordinator(mqtt, resolved, wall_clock)
        fleet = Fleet(
            mqtt=mqtt,
            namespace=namespace,
            site=self.plan.site or resolved.provisioning.default_site,
            settings=resolved.simulator,
            clock=resolved_clock,
            wall_clock=wall_clock,
        )
        self.coordinator, self.fleet = coordinator, fleet
        health = HealthReporter(
            mqtt=mqtt,
            namespace=namespace,
            service=self.name,
            version=self.version,
            clock=resolved_clock,
            fleet_summary=lambda: _fleet_summary(fleet),
        )

        # --- Phase 2: Connect ---
        await coordinator.attach()
        if isinstance(mqtt, MqttLifecycle):
            await mqtt.start()
        if isinstance(mqtt, MqttClient):
            await mqtt.wait_connected(_CONNECT_TIMEOUT)
        shutdown_event = self._install_signal_handlers(shutdown_event)

        # --- Phase 3: Run ---
        heartbeat_task: asyncio.Task[None] | None = None
        try:
            await health.publish_heartbeat()
            heartbeat_task = self._start_heartbeat_task(health)
            await self._provision_fleet(fleet, coordinator)
            self.ready.set()
            logger.info("%s v%s running", self.name, self.version)
            await shutdown_event.wait()
        finally:
            # --- Phase 4: Tear down ---
            await fleet.stop_all()
            if heartbeat_task is not None:
                heartbeat_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await heartbeat_task
            await health.shutdown()
            if isinstance(mqtt, MqttLifecycle):
                await mqtt.stop()
        logger.info("Shutdown complete")

    # --- run helpers -------------------------------------------------------

    def _create_mqtt(self, mqtt: MqttPort | None, settings: Settings) -> MqttPort:
        """Return the injected transport, a loopback in dry-run, or a real client.

        Without a configured ``client_id`` one is generated from the
        service name and a short random suffix.
        """
        if mqtt is not None:
            return mqtt
        if self.dry_run:
            logger.info("Dry run: using in-process loopback transport")
            return LoopbackMqttClient()
        mqtt_settings = settings.mqtt
        if not mqtt_settings.client_id:
            mqtt_settings = mqtt_settings.model_copy(
                update={"client_id": f"{self.name}-{uuid.uuid4().hex[:8]}"},
            )
        will = build_will_config(settings.provisioning.namespace, self.name)
        return MqttClient(settings=mqtt_settings, will=will)

    def _create_coordinator(
        self,
        mqtt: MqttPort,
        settings: Settings,
        wall_clock: WallClock,
    ) -> ProvisioningCoordinator:
        provisioning = settings.provisioning
        return ProvisioningCoordinator(
            mqtt=mqtt,
            store=InMemoryTokenStore(),
            audit=InMemoryAuditLog(),
            credentials=CredentialIssuer(
                store=InMemoryCredentialStore(),
                namespace=provisioning.namespace,
                password_length=provisioning.password_length,
                rounds=self.bcrypt_rounds,
                clock=wall_clock,
            ),
            settings=provisioning,
            mqtt_host=provisioning.advertise_host or settings.mqtt.host,
            mqtt_port=provisioning.advertise_port or settings.mqtt.port,
            clock=wall_clock,
            errors=ErrorPublisher(mqtt=mqtt, namespace=provisioning.namespace, clock=wall_clock),
        )

    async def _provision_fleet(self, fleet: Fleet, coordinator: ProvisioningCoordinator) -> None:
        """Provision the planned devices one by one; failures are logged."""
        on_issued = self._print_qr if self.show_qr else None
        for device_type, room in self.plan.placements():
            try:
                await fleet.provision(
                    coordinator,
                    device_type,
                    room,
                    site=self.plan.site,
                    on_issued=on_issued,
                )
            except DeckhandError as exc:
                logger.error("Could not provision %s in %s: %s", device_type, room, exc)
        if self.plan.total:
            logger.info("Fleet running: %d of %d devices", len(fleet), self.plan.total)

    def _print_qr(self, issued: IssuedToken) -> None:
        self._echo(f"Token {issued.token_id} (expires {issued.expires_at.isoformat()}):")
        self._echo(render_qr(issued.qr_payload))

    def _install_signal_handlers(self, shutdown_event: asyncio.Event | None) -> asyncio.Event:
        """Install SIGTERM/SIGINT handlers. Returns the shutdown event."""
        if shutdown_event is not None:
            return shutdown_event
        event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, event.set)
        return event

    def _start_heartbeat_task(self, health: HealthReporter) -> asyncio.Task[None] | None:
        if self.heartbeat_interval is None:
            return None
        return asyncio.create_task(_heartbeat_loop(health, self.heartbeat_interval))


async def _heartbeat_loop(health: HealthReporter, interval: float) -> None:
    """Sleep first, then publish; the first heartbeat is sent at startup."""
    while True:
        await asyncio.sleep(interval)
        await health.publish_heartbeat()


def _fleet_summary(fleet: Fleet) -> dict[str, int]:
    stats = fleet.statistics()
    return {"total": stats.total, "online": stats.online, "dead": stats.dead}
