"""Device archetypes: call button, crew wearable, mesh repeater.

Idle drain rates differ per archetype (percentage points per hour):
buttons sleep most of the time, wearables run a display and sensors,
repeaters keep their radio on and drain fastest.  Activity (presses,
pages, relayed traffic) costs extra on top.
"""

from __future__ import annotations

import logging
from typing import Any, Literal

from deckhand._errors import CommandRejectedError
from deckhand._messages import DeviceType
from deckhand._simulator import CommandHandler, DeviceSimulator

logger = logging.getLogger(__name__)

type Malfunction = Literal["stuck", "unresponsive"]


def _str_arg(args: dict[str, Any], key: str) -> str | None:
    """Return an optional string argument.

    Raises:
        CommandRejectedError: If the value is present but not a string.
    """
    value = args.get(key)
    if value is None or isinstance(value, str):
        return value
    msg = f"'{key}' must be a string"
    raise CommandRejectedError(msg)


class ButtonSimulator(DeviceSimulator):
    """Guest call button.

    Besides periodic telemetry, a press publishes an immediate telemetry
    message with ``readings.event == "press"``.  With a non-zero
    ``press_probability`` the button also presses itself at random.
    A malfunction either sticks the button (a press on every tick) or
    leaves it unresponsive (presses are rejected).
    """

    device_type = DeviceType.BUTTON
    drain_per_hour = 0.5
    press_cost = 0.5

    def __init__(self, *, press_probability: float = 0.0, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.press_probability = press_probability
        self.press_count = 0
        self.last_press: dict[str, Any] | None = None
        self._malfunction: Malfunction = "stuck"

    async def press(self, *, emergency: bool = False, long_press: bool = False) -> dict[str, Any]:
        """Register a press and publish it as an event.

        Raises:
            CommandRejectedError: If the battery is depleted or the button
                is unresponsive.
        """
        if self.is_dead:
            msg = "battery depleted"
            raise CommandRejectedError(msg)
        if self._malfunctioning("unresponsive"):
            msg = "button unresponsive"
            raise CommandRejectedError(msg)
        kind = "emergency" if emergency else "long" if long_press else "single"
        self.press_count += 1
        self.consume(self.press_cost)
        self.last_press = {
            "pressType": kind,
            "at": self._wall_clock().isoformat(),
        }
        logger.info(
            "Button pressed (%s)",
            kind,
            extra={"device_id": self.device_id, "room": self.room},
        )
        if self.topics is not None and not self.is_dead:
            await self._publish_telemetry(
                {"event": "press", "pressType": kind, "pressCount": self.press_count},
            )
        return self.last_press

    def malfunction(self, mode: Malfunction = "stuck", duration: float | None = 5.0) -> None:
        """Stick the button or make it unresponsive for *duration* seconds."""
        self._malfunction = mode
        self._set_fault("button_malfunction", duration)

    def _malfunctioning(self, mode: Malfunction) -> bool:
        return self._malfunction == mode and self._fault_active(
            "button_malfunction",
            self._clock.now(),
        )

    async def _step(self, elapsed: float) -> dict[str, Any]:  # noqa: ARG002
        if self._malfunctioning("stuck"):
            await self.press()
        elif self.press_probability and self._rng.random() < self.press_probability:
            await self.press(emergency=self._rng.random() < 0.1)  # noqa: PLR2004
        return {"pressCount": self.press_count}

    def _commands(self) -> dict[str, CommandHandler]:
        return {"press": self._cmd_press}

    async def _cmd_press(self, args: dict[str, Any]) -> str:
        event = await self.press(
            emergency=bool(args.get("emergency", False)),
            long_press=bool(args.get("longPress", False)),
        )
        return f"{event['pressType']} press"

    def _reset_state(self) -> None:
        self.press_count = 0
        self.last_press = None

    def _extra_status(self) -> dict[str, Any]:
        return {"pressCount": self.press_count, "lastPress": self.last_press}


class WearableSimulator(DeviceSimulator):
    """Crew smartwatch receiving pages.

    Reports a heart-rate random walk and a step counter.  ``page``
    queues a message on the watch; ``clear`` acknowledges one page by
    ``pageId`` or all of them.
    """

    device_type = DeviceType.WEARABLE
    drain_per_hour = 2.0
    page_cost = 0.2

    def __init__(self, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.heart_rate = 72.0
        self.steps = 0
        self.pages: dict[str, dict[str, Any]] = {}
        self.acknowledged = 0
        self._page_ids = 0

    def page(self, message: str, *, priority: str = "normal", page_id: str | None = None) -> str:
        """Queue a page and return its id."""
        if not message:
            msg = "page needs a non-empty 'message'"
            raise CommandRejectedError(msg)
        if page_id is None:
            self._page_ids += 1
            page_id = f"page-{self._page_ids}"
        self.pages[page_id] = {
            "message": message,
            "priority": priority,
            "at": self._wall_clock().isoformat(),
        }
        self.consume(self.page_cost)
        return page_id

    def acknowledge(self, page_id: str | None = None) -> int:
        """Clear one page, or all pages when *page_id* is ``None``.

        Raises:
            CommandRejectedError: If *page_id* is not queued.
        """
        if page_id is None:
            cleared = len(self.pages)
            self.pages.clear()
        elif self.pages.pop(page_id, None) is not None:
            cleared = 1
        else:
            msg = f"no page '{page_id}'"
            raise CommandRejectedError(msg)
        self.acknowledged += cleared
        return cleared

    async def _step(self, elapsed: float) -> dict[str, Any]:  # noqa: ARG002
        self.heart_rate = min(max(self.heart_rate + self._rng.uniform(-3.0, 3.0), 50.0), 140.0)
        self.steps += self._rng.randint(0, 20)
        return {
            "heartRate": round(self.heart_rate),
            "steps": self.steps,
            "activePages": len(self.pages),
        }

    def _commands(self) -> dict[str, CommandHandler]:
        return {"page": self._cmd_page, "clear": self._cmd_clear}

    async def _cmd_page(self, args: dict[str, Any]) -> str:
        page_id = self.page(
            str(args.get("message", "")),
            priority=str(args.get("priority", "normal")),
            page_id=_str_arg(args, "pageId"),
        )
        return f"paged {page_id}"

    async def _cmd_clear(self, args: dict[str, Any]) -> str:
        cleared = self.acknowledge(_str_arg(args, "pageId"))
        return f"cleared {cleared}"

    def _reset_state(self) -> None:
        self.steps = 0
        self.pages.clear()
        self.acknowledged = 0

    def _extra_status(self) -> dict[str, Any]:
        return {
            "heartRate": round(self.heart_rate),
            "steps": self.steps,
            "activePages": len(self.pages),
            "acknowledged": self.acknowledged,
        }


class RepeaterSimulator(DeviceSimulator):
    """Mesh repeater relaying traffic for nearby devices."""

    device_type = DeviceType.REPEATER
    drain_per_hour = 4.0
    relay_cost = 0.01

    def __init__(self, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.connected: set[str] = set()
        self.messages_relayed = 0
        self._congestion = 0

    def connect(self, device_id: str) -> None:
        if not device_id:
            msg = "connect needs a 'deviceId'"
            raise CommandRejectedError(msg)
        self.connected.add(device_id)

    def disconnect(self, device_id: str) -> None:
        if device_id not in self.connected:
            msg = f"'{device_id}' is not connected"
            raise CommandRejectedError(msg)
        self.connected.discard(device_id)

    def congest(self, messages_per_tick: int = 10, duration: float | None = 30.0) -> None:
        """Relay *messages_per_tick* extra messages per tick for *duration* seconds."""
        self._congestion = max(messages_per_tick, 0)
        self._set_fault("network_congestion", duration)

    async def _step(self, elapsed: float) -> dict[str, Any]:  # noqa: ARG002
        relayed = self._rng.randint(0, 3 * len(self.connected)) if self.connected else 0
        if self._fault_active("network_congestion", self._clock.now()):
            relayed += self._congestion
        self.messages_relayed += relayed
        self.consume(relayed * self.relay_cost)
        return {
            "connectedDevices": len(self.connected),
            "messagesRelayed": self.messages_relayed,
        }

    def _commands(self) -> dict[str, CommandHandler]:
        return {"connect": self._cmd_connect, "disconnect": self._cmd_disconnect}

    async def _cmd_connect(self, args: dict[str, Any]) -> str:
        device_id = _str_arg(args, "deviceId") or ""
        self.connect(device_id)
        return f"{len(self.connected)} connected"

    async def _cmd_disconnect(self, args: dict[str, Any]) -> str:
        device_id = _str_arg(args, "deviceId") or ""
        self.disconnect(device_id)
        return f"{len(self.connected)} connected"

    def _reset_state(self) -> None:
        self.messages_relayed = 0

    def _extra_status(self) -> dict[str, Any]:
        return {
            "connectedDevices": sorted(self.connected),
            "messagesRelayed": self.messages_relayed,
        }


SIMULATOR_TYPES: dict[DeviceType, type[DeviceSimulator]] = {
    DeviceType.BUTTON: ButtonSimulator,
    DeviceType.WEARABLE: WearableSimulator,
    DeviceType.REPEATER: RepeaterSimulator,
}


def create_simulator(device_type: DeviceType | str, **kwargs: Any) -> DeviceSimulator:
    """Instantiate the archetype for *device_type*.

    Raises:
        ValueError: For an unknown device type.
    """
    return SIMULATOR_TYPES[DeviceType(device_type)](**kwargs)
