"""Failure scenarios for simulated fleets.

A :class:`FailureScenario` names one kind of failure, how long it lasts
and which devices it hits.  :class:`FailureInjector` applies scenarios to
a set of simulators by opening failure windows on each device; the
devices close them again on their own clock, so nothing here schedules
timers.

Durations and rates are in seconds of the simulators' monotonic clock.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Literal

from deckhand._devices import ButtonSimulator, RepeaterSimulator
from deckhand._errors import NotFoundError
from deckhand._simulator import DeviceSimulator

logger = logging.getLogger(__name__)

type Severity = Literal["low", "medium", "high"]


class FailureType(StrEnum):
    BATTERY_DRAIN = "battery_drain"
    SIGNAL_LOSS = "signal_loss"
    DEVICE_OFFLINE = "device_offline"
    INTERMITTENT_CONNECTION = "intermittent_connection"
    BUTTON_MALFUNCTION = "button_malfunction"
    NETWORK_CONGESTION = "network_congestion"
    FIRMWARE_CRASH = "firmware_crash"


SIGNAL_LEVELS: dict[Severity, float] = {"low": 30.0, "medium": 15.0, "high": 5.0}
"""Signal ceiling per severity of a signal-loss scenario."""


@dataclass(frozen=True, slots=True)
class FailureScenario:
    """One failure to inject.

    Args:
        id: Short identifier, also the key in :data:`PREDEFINED_SCENARIOS`.
        name: Human readable title.
        failure_type: What goes wrong.
        description: Longer explanation for operators.
        duration: Seconds until the failure lifts; ``None`` keeps it
            until cleared.  Battery drain ends when it reaches its target.
        severity: Picks the signal ceiling for signal loss.
        targets: Device ids to hit; empty means every device.
        parameters: Failure specific knobs, see :meth:`FailureInjector.execute`.
    """

    id: str
    name: str
    failure_type: FailureType
    description: str = ""
    duration: float | None = None
    severity: Severity = "medium"
    targets: tuple[str, ...] = ()
    parameters: Mapping[str, Any] = field(default_factory=dict)


PREDEFINED_SCENARIOS: dict[str, FailureScenario] = {
    scenario.id: scenario
    for scenario in (
        FailureScenario(
            id="low_battery_warning",
            name="Low Battery Warning",
            description="Devices drain down to a low battery level",
            failure_type=FailureType.BATTERY_DRAIN,
            parameters={"target_level": 15.0, "drain_rate": 2.0},
        ),
        FailureScenario(
            id="poor_signal_area",
            name="Poor Signal Area",
            description="Devices sit in an area with poor coverage",
            failure_type=FailureType.SIGNAL_LOSS,
            severity="medium",
            duration=60.0,
        ),
        FailureScenario(
            id="network_outage",
            name="Network Outage",
            description="Every device loses the network",
            failure_type=FailureType.DEVICE_OFFLINE,
            duration=120.0,
        ),
        FailureScenario(
            id="unstable_connection",
            name="Unstable Connection",
            description="Devices drop off the network every few seconds",
            failure_type=FailureType.INTERMITTENT_CONNECTION,
            duration=300.0,
            parameters={"period": 10.0, "offline_for": 3.0},
        ),
        FailureScenario(
            id="button_stuck",
            name="Stuck Button",
            description="A call button is physically stuck",
            failure_type=FailureType.BUTTON_MALFUNCTION,
            duration=10.0,
            parameters={"mode": "stuck"},
        ),
        FailureScenario(
            id="repeater_congestion",
            name="Repeater Congestion",
            description="Heavy traffic through the repeaters",
            failure_type=FailureType.NETWORK_CONGESTION,
            duration=60.0,
            parameters={"messages_per_tick": 50},
        ),
        FailureScenario(
            id="device_crash",
            name="Device Firmware Crash",
            description="Firmware crashes and the device reboots",
            failure_type=FailureType.FIRMWARE_CRASH,
            severity="high",
            parameters={"reboot_after": 45.0},
        ),
    )
}


def get_scenario(scenario_id: str) -> FailureScenario:
    """Look up a predefined scenario.

    Raises:
        NotFoundError: Unknown *scenario_id*.
    """
    try:
        return PREDEFINED_SCENARIOS[scenario_id]
    except KeyError:
        known = ", ".join(sorted(PREDEFINED_SCENARIOS))
        msg = f"Unknown failure scenario '{scenario_id}' (known: {known})"
        raise NotFoundError(msg) from None


class FailureInjector:
    """Applies :class:`FailureScenario` objects to simulators.

    Args:
        devices: The simulators to act on.  Iterated afresh for every
            call, so a :class:`~deckhand._fleet.Fleet` can be passed and
            devices added later are included.
    """

    def __init__(self, devices: Iterable[DeviceSimulator]) -> None:
        self._devices = devices

    async def execute(self, scenario: FailureScenario | str) -> list[DeviceSimulator]:
        """Inject *scenario* and return the devices it was applied to.

        Button malfunctions only hit buttons and congestion only hits
        repeaters; other targets are skipped.  Parameters by type:

        * battery drain: ``target_level`` (default 0), ``drain_rate``
          points per second (default 1) or ``instant``.
        * intermittent connection: ``period`` and ``offline_for``.
        * button malfunction: ``mode``, ``"stuck"`` or ``"unresponsive"``.
        * network congestion: ``messages_per_tick``.
        * firmware crash: ``reboot_after``.

        Raises:
            NotFoundError: *scenario* names no predefined scenario.
        """
        if isinstance(scenario, str):
            scenario = get_scenario(scenario)
        affected: list[DeviceSimulator] = []
        for device in self._targets(scenario):
            if await self._apply(device, scenario):
                affected.append(device)
        logger.info(
            "Injected %s (%s) into %d device(s)",
            scenario.id,
            scenario.failure_type,
            len(affected),
        )
        return affected

    async def clear(self, device_id: str | None = None) -> None:
        """Lift every failure, on one device or on all of them."""
        for device in self._devices:
            if device_id is None or device.device_id == device_id:
                await device.clear_failures()

    def active(self) -> dict[str, list[str]]:
        """Failure kinds in effect, keyed by device id."""
        return {
            device.device_id or device.room: failures
            for device in self._devices
            if (failures := device.active_failures())
        }

    def _targets(self, scenario: FailureScenario) -> list[DeviceSimulator]:
        devices = list(self._devices)
        if not scenario.targets:
            return devices
        selected = [d for d in devices if d.device_id in scenario.targets]
        missing = set(scenario.targets) - {d.device_id for d in selected}
        if missing:
            logger.warning("Scenario %s: no devices %s", scenario.id, sorted(missing))
        return selected

    async def _apply(self, device: DeviceSimulator, scenario: FailureScenario) -> bool:
        params = scenario.parameters
        match scenario.failure_type:
            case FailureType.BATTERY_DRAIN:
                rate = None if params.get("instant") else float(params.get("drain_rate", 1.0))
                device.drain_battery(float(params.get("target_level", 0.0)), rate=rate)
            case FailureType.SIGNAL_LOSS:
                device.degrade_signal(SIGNAL_LEVELS[scenario.severity], scenario.duration)
            case FailureType.DEVICE_OFFLINE:
                await device.go_offline(scenario.duration)
            case FailureType.INTERMITTENT_CONNECTION:
                device.flap(
                    period=float(params.get("period", 5.0)),
                    offline_for=float(params.get("offline_for", 2.0)),
                    duration=scenario.duration,
                )
            case FailureType.BUTTON_MALFUNCTION:
                if not isinstance(device, ButtonSimulator):
                    return False
                device.malfunction(params.get("mode", "stuck"), scenario.duration)
            case FailureType.NETWORK_CONGESTION:
                if not isinstance(device, RepeaterSimulator):
                    return False
                device.congest(int(params.get("messages_per_tick", 10)), scenario.duration)
            case FailureType.FIRMWARE_CRASH:
                await device.crash(float(params.get("reboot_after", 30.0)))
        return True
