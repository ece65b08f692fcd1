"""Virtual device runtime.

A :class:`DeviceSimulator` behaves like one physical device on the
bus.  It optionally claims a provisioning token first, then runs its
own asyncio task which, on every tick:

1. drains the battery from elapsed monotonic time plus activity,
2. nudges the signal strength by a bounded random step,
3. publishes telemetry, and
4. every ``status_every`` ticks, publishes a status heartbeat.

Archetypes (:mod:`deckhand._devices`) customise the per-tick readings
through :meth:`DeviceSimulator._step` and add commands through
:meth:`DeviceSimulator._commands`.

Transient publish failures are retried with exponential backoff; when
retries run out the tick is skipped and the loop carries on.  At 0 %
battery the device is dead: it stops publishing telemetry and the loop
ends, while :meth:`DeviceSimulator.stop` stays callable.

Failures (outages, crashes, flapping links, weak signal, forced drain)
are injected as windows on the monotonic clock and checked on each
tick, so no extra timers run.  While the link is down the device keeps
draining but publishes nothing and ignores commands.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, ClassVar, Protocol, runtime_checkable

from deckhand._clock import ClockPort, SystemClock, WallClock, utc_now
from deckhand._errors import (
    ClaimTimeoutError,
    DeckhandError,
    InvalidPayloadError,
    ProvisioningRejectedError,
    TransientTransportError,
)
from deckhand._messages import (
    AckMessage,
    ClaimMessage,
    CommandMessage,
    DeviceType,
    ProvisionPayload,
    RejectMessage,
    StatusMessage,
    TelemetryMessage,
    new_device_id,
    parse_message,
    parse_reply,
)
from deckhand._mqtt import MqttMessageHandler, MqttPort
from deckhand._router import TopicRouter
from deckhand._settings import SimulatorSettings
from deckhand._topics import DeviceTopics, new_reply_topic, provision_request_topic

logger = logging.getLogger(__name__)

type CommandHandler = Callable[[dict[str, Any]], Awaitable[str]]
"""Async command handler taking ``args`` and returning a detail string."""

_MAX_RETRY_DELAY = 30.0
_SIGNAL_STEP = 5.0

# ---------------------------------------------------------------------------
# Value objects
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class ProvisioningTicket:
    """What a device needs to claim a token: the token and where to send it."""

    token: str
    request_topic: str
    timeout: float = 10.0

    @classmethod
    def from_payload(
        cls,
        qr_payload: str,
        *,
        namespace: str,
        timeout: float = 10.0,
    ) -> ProvisioningTicket:
        """Build a ticket from a scanned QR payload.

        Raises:
            InvalidPayloadError: If *qr_payload* is not a provisioning payload.
        """
        payload = parse_message(ProvisionPayload, qr_payload)
        return cls(
            token=payload.token,
            request_topic=provision_request_topic(namespace),
            timeout=timeout,
        )


@dataclass(frozen=True, slots=True)
class DeviceStatus:
    """Point-in-time snapshot of a simulator."""

    device_id: str | None
    device_type: DeviceType
    site: str
    room: str
    online: bool
    dead: bool
    battery: float
    signal: float
    sequence: int
    provisioned: bool
    extra: dict[str, Any] = field(default_factory=dict)
    failures: tuple[str, ...] = ()


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------


@runtime_checkable
class SimulatedDevice(Protocol):
    """Contract shared by all device archetypes."""

    async def start(self) -> None: ...

    async def stop(self) -> None: ...

    def get_status(self) -> DeviceStatus: ...

    async def on_command(self, payload: str) -> StatusMessage: ...


# ---------------------------------------------------------------------------
# Base simulator
# ---------------------------------------------------------------------------


class DeviceSimulator:
    """Base class for virtual devices.

    Args:
        mqtt: Transport shared with other simulators.
        room: Room the device is installed in.
        namespace: Topic namespace.
        site: Site segment of the device topics.
        device_id: Fixed device id.  In provisioned mode it is sent with
            the claim; otherwise one is generated when omitted.
        ticket: When given, :meth:`start` claims this token first and
            uses the id and topics from the ack.
        router: Shared inbound router.  When omitted the simulator makes
            its own and registers it with *mqtt*.
        settings: Cadence, retry policy and claim timeout.
        clock: Monotonic clock driving battery decay.
        wall_clock: Wall clock stamping messages.
        rng: Random source, seeded in tests.
        battery: Initial battery level.
        ip_address: Reported in the claim.
        stop_timeout: How long :meth:`stop` waits before cancelling.
    """

    device_type: ClassVar[DeviceType]
    drain_per_hour: ClassVar[float] = 1.0
    """Idle battery drain in percentage points per hour."""

    def __init__(
        self,
        *,
        mqtt: MqttPort,
        room: str,
        namespace: str = "obedio",
        site: str = "main",
        device_id: str | None = None,
        ticket: ProvisioningTicket | None = None,
        router: TopicRouter | None = None,
        settings: SimulatorSettings | None = None,
        clock: ClockPort | None = None,
        wall_clock: WallClock = utc_now,
        rng: random.Random | None = None,
        battery: float = 100.0,
        ip_address: str | None = None,
        stop_timeout: float = 5.0,
    ) -> None:
        self._mqtt = mqtt
        self.room = room
        self.namespace = namespace
        self.site = site
        self.ticket = ticket
        self._settings = settings or SimulatorSettings()
        self._clock = clock or SystemClock()
        self._wall_clock = wall_clock
        self._rng = rng or random.Random()  # noqa: S311
        self.ip_address = ip_address
        self.stop_timeout = stop_timeout

        if router is None:
            router = TopicRouter()
            if isinstance(mqtt, MqttMessageHandler):
                mqtt.on_message(router.route)
        self._router = router

        self.device_id = device_id
        if ticket is None and device_id is None:
            self.device_id = new_device_id(self.device_type, wall_clock())
        self.topics: DeviceTopics | None = None
        self.credentials: AckMessage | None = None

        self.battery_level = min(max(battery, 0.0), 100.0)
        self.signal_strength = self._rng.uniform(60.0, 100.0)
        self.sequence = 0
        self._tick_count = 0
        self._last_tick: float | None = None

        self._task: asyncio.Task[None] | None = None
        self._stop_event = asyncio.Event()
        self._started = False

        # Injected failures: kind -> monotonic deadline, None until cleared.
        self._faults: dict[str, float | None] = {}
        self._reachable = True
        self._signal_cap: float | None = None
        self._signal_before: float | None = None
        self._drain: tuple[float, float] | None = None
        self._flap: tuple[float, float, float] | None = None

    # -- properties ---------------------------------------------------------

    @property
    def is_online(self) -> bool:
        """Whether the publish loop task is running."""
        return self._task is not None and not self._task.done()

    @property
    def is_dead(self) -> bool:
        """Whether the battery is exhausted."""
        return self.battery_level <= 0.0

    @property
    def is_provisioned(self) -> bool:
        return self.credentials is not None

    # -- lifecycle ----------------------------------------------------------

    async def start(self) -> None:
        """Claim the ticket if any, subscribe to commands and start the loop.

        Raises:
            ProvisioningRejectedError: The coordinator rejected the claim.
            ClaimTimeoutError: No reply arrived within the ticket timeout.
            TransientTransportError: The claim could not be published.
        """
        if self._started:
            return
        if self.topics is None:
            if self.ticket is not None:
                await self._provision(self.ticket)
            else:
                assert self.device_id is not None
                self.topics = DeviceTopics.for_device(
                    self.namespace,
                    self.site,
                    self.room,
                    self.device_id,
                )
        assert self.topics is not None

        self._router.register(self.topics.command, self._handle_command)
        try:
            await self._mqtt.subscribe(self.topics.command)
        except Exception:
            self._router.unregister(self.topics.command)
            raise

        self._started = True
        self._stop_event.clear()
        self._last_tick = self._clock.now()
        self._task = asyncio.create_task(self._run(), name=f"simulator-{self.device_id}")
        logger.info(
            "%s simulator started in %s/%s",
            self.device_type,
            self.site,
            self.room,
            extra={"device_id": self.device_id, "room": self.room},
        )

    async def stop(self) -> None:
        """Stop the loop at the next tick boundary and publish offline status.

        Waits up to ``stop_timeout`` for the loop, then cancels it.
        Idempotent.
        """
        if not self._started:
            return
        self._started = False
        self._stop_event.set()

        task, self._task = self._task, None
        if task is not None:
            try:
                await asyncio.wait_for(asyncio.shield(task), self.stop_timeout)
            except TimeoutError:
                logger.warning(
                    "Simulator loop overran stop timeout, cancelling",
                    extra={"device_id": self.device_id},
                )
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task

        if self.topics is not None:
            self._router.unregister(self.topics.command)
            await self._publish_status(online=False)
        logger.info("Simulator stopped", extra={"device_id": self.device_id})

    def recharge(self, level: float = 100.0) -> None:
        """Set the battery level; the only way it ever goes up."""
        self.battery_level = min(max(level, 0.0), 100.0)

    # -- failure injection --------------------------------------------------

    @property
    def is_reachable(self) -> bool:
        """Whether the device is on the network right now.

        ``False`` during a simulated outage, a firmware crash or the
        down phase of a flapping connection.
        """
        now = self._clock.now()
        if self._fault_active("device_offline", now) or self._fault_active("firmware_crash", now):
            return False
        if self._flap is not None and self._fault_active("intermittent_connection", now):
            period, offline_for, started = self._flap
            return (now - started) % period < period - offline_for
        return True

    def active_failures(self) -> list[str]:
        """Kinds of injected failure currently in effect."""
        now = self._clock.now()
        return sorted(kind for kind in self._faults if self._fault_active(kind, now))

    async def go_offline(self, duration: float | None = None) -> None:
        """Drop off the network for *duration* seconds, or until :meth:`go_online`."""
        self._set_fault("device_offline", duration)
        logger.warning("Simulated outage", extra={"device_id": self.device_id})
        await self._sync_link("offline")

    async def go_online(self) -> None:
        """End any outage, crash or flapping connection now."""
        for kind in ("device_offline", "firmware_crash", "intermittent_connection"):
            self._clear_fault(kind)
        await self._sync_link()

    async def crash(self, reboot_after: float = 30.0) -> None:
        """Go dark, then come back after *reboot_after* seconds with counters reset."""
        self._set_fault("firmware_crash", reboot_after)
        logger.warning("Simulated firmware crash", extra={"device_id": self.device_id})
        await self._sync_link("firmware crash")

    def flap(
        self,
        *,
        period: float = 5.0,
        offline_for: float = 2.0,
        duration: float | None = None,
    ) -> None:
        """Lose the link for *offline_for* seconds at the end of every *period*."""
        if not 0 < offline_for < period:
            msg = f"offline_for must be between 0 and period ({period}s), got {offline_for}s"
            raise ValueError(msg)
        self._set_fault("intermittent_connection", duration)
        self._flap = (period, offline_for, self._clock.now())

    def degrade_signal(self, level: float, duration: float | None = None) -> None:
        """Cap the signal strength at *level* until the window closes."""
        if not self._fault_active("signal_loss", self._clock.now()):
            self._signal_before = self.signal_strength
        self._set_fault("signal_loss", duration)
        self._signal_cap = min(max(level, 0.0), 100.0)
        self.signal_strength = min(self.signal_strength, self._signal_cap)

    def drain_battery(self, target: float, *, rate: float | None = None) -> None:
        """Pull the battery down to *target*.

        Instantly when *rate* is ``None``, otherwise at *rate* percentage
        points per second of monotonic time.  Never raises the level.
        """
        target = min(max(target, 0.0), 100.0)
        if rate is None:
            self.battery_level = min(self.battery_level, target)
            return
        if rate <= 0:
            msg = f"rate must be positive, got {rate}"
            raise ValueError(msg)
        self._set_fault("battery_drain", None)
        self._drain = (target, rate)

    async def clear_failures(self) -> None:
        """Lift every injected failure."""
        for kind in list(self._faults):
            self._clear_fault(kind)
        await self._sync_link()

    def _fault_active(self, kind: str, now: float) -> bool:
        if kind not in self._faults:
            return False
        deadline = self._faults[kind]
        return deadline is None or now < deadline

    def _set_fault(self, kind: str, duration: float | None) -> None:
        if duration is not None and duration < 0:
            msg = f"duration must not be negative, got {duration}s"
            raise ValueError(msg)
        self._faults[kind] = None if duration is None else self._clock.now() + duration

    def _clear_fault(self, kind: str) -> None:
        if kind not in self._faults:
            return
        del self._faults[kind]
        if kind == "signal_loss" and self._signal_before is not None:
            self.signal_strength = self._signal_before
            self._signal_cap = self._signal_before = None
        elif kind == "battery_drain":
            self._drain = None
        elif kind == "intermittent_connection":
            self._flap = None
        elif kind == "firmware_crash":
            self.sequence = 0
            self._tick_count = 0
            self._reset_state()
            logger.info("Rebooted after crash", extra={"device_id": self.device_id})

    def _expire_faults(self, now: float) -> None:
        for kind in [k for k in self._faults if not self._fault_active(k, now)]:
            self._clear_fault(kind)

    def _forced_drain(self, elapsed: float) -> float:
        if self._drain is None:
            return 0.0
        target, rate = self._drain
        amount = min(elapsed * rate, max(self.battery_level - target, 0.0))
        if self.battery_level - amount <= target:
            self._clear_fault("battery_drain")
        return amount

    async def _sync_link(self, detail: str | None = None) -> bool:
        """Announce a change of reachability; return whether the link is up."""
        reachable = self.is_reachable
        if reachable != self._reachable:
            self._reachable = reachable
            if self.topics is not None:
                # Stands in for the will message a broker sends for a lost client.
                await self._publish_status(online=reachable, detail=detail)
        return reachable

    # -- ticking ------------------------------------------------------------

    async def tick(self) -> bool:
        """Advance one step and publish telemetry.

        Returns ``True`` when telemetry was published, ``False`` if the
        device is dead, not yet started or the publish gave up.
        """
        if self.topics is None or self.device_id is None:
            return False
        now = self._clock.now()
        elapsed = 0.0 if self._last_tick is None else max(now - self._last_tick, 0.0)
        self._last_tick = now
        if self.is_dead:
            return False

        self._expire_faults(now)
        self.consume(elapsed / 3600.0 * self.drain_per_hour * self._rng.uniform(0.5, 1.5))
        self.consume(self._forced_drain(elapsed))
        if self.is_dead:
            return False
        self._walk_signal()
        readings = await self._step(elapsed)
        if self.is_dead or not await self._sync_link():
            return False

        published = await self._publish_telemetry(readings)
        self._tick_count += 1
        if self._tick_count % self._settings.status_every == 0:
            await self._publish_status(online=True)
        return published

    def consume(self, amount: float) -> None:
        """Drain *amount* percentage points of battery, never below zero."""
        if amount <= 0:
            return
        self.battery_level = max(self.battery_level - amount, 0.0)

    async def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.tick()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception(
                    "Simulator tick failed",
                    extra={"device_id": self.device_id},
                )
            if self.is_dead:
                logger.warning(
                    "Battery depleted, device is offline",
                    extra={"device_id": self.device_id, "room": self.room},
                )
                await self._publish_status(online=False, detail="battery depleted")
                return
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(self._stop_event.wait(), self._settings.interval)

    def _walk_signal(self) -> None:
        step = self._rng.uniform(-_SIGNAL_STEP, _SIGNAL_STEP)
        ceiling = 100.0 if self._signal_cap is None else self._signal_cap
        self.signal_strength = min(max(self.signal_strength + step, 0.0), ceiling)

    # -- archetype hooks ------------------------------------------------------

    async def _step(self, elapsed: float) -> dict[str, Any]:  # noqa: ARG002
        """Advance archetype state by *elapsed* seconds; return readings."""
        return {}

    def _commands(self) -> dict[str, CommandHandler]:
        """Archetype-specific commands, merged over the common ones."""
        return {}

    def _reset_state(self) -> None:
        """Reset archetype counters on the ``reset`` command."""

    def _extra_status(self) -> dict[str, Any]:
        return {}

    # -- commands -----------------------------------------------------------

    async def on_command(self, payload: str) -> StatusMessage:
        """Execute one JSON command and publish its outcome as status.

        Malformed payloads, unknown commands and commands that fail are
        answered with ``outcome="rejected"``; none of them stop the loop.
        """
        try:
            command = parse_message(CommandMessage, payload)
        except InvalidPayloadError as exc:
            logger.warning("Malformed command: %s", exc, extra={"device_id": self.device_id})
            return await self._publish_status(
                online=self.is_online,
                outcome="rejected",
                detail="malformed command",
            )

        handlers: dict[str, CommandHandler] = {
            "reset": self._cmd_reset,
            "ping": self._cmd_ping,
            **self._commands(),
        }
        handler = handlers.get(command.command)
        outcome = "accepted"
        if handler is None:
            outcome, detail = "rejected", f"unknown command '{command.command}'"
        elif self.is_dead:
            outcome, detail = "rejected", "battery depleted"
        else:
            try:
                detail = await handler(command.args)
            except DeckhandError as exc:
                outcome, detail = "rejected", str(exc)
            except Exception:
                logger.exception(
                    "Command %s failed",
                    command.command,
                    extra={"device_id": self.device_id},
                )
                outcome, detail = "rejected", "command failed"

        logger.debug(
            "Command %s %s: %s",
            command.command,
            outcome,
            detail,
            extra={"device_id": self.device_id},
        )
        return await self._publish_status(
            online=self.is_online,
            command=command.command,
            request_id=command.request_id,
            outcome=outcome,
            detail=detail,
        )

    async def _handle_command(self, topic: str, payload: str) -> None:  # noqa: ARG002
        if not self.is_reachable:
            logger.debug("Dropping command while offline", extra={"device_id": self.device_id})
            return
        await self.on_command(payload)

    async def _cmd_reset(self, args: dict[str, Any]) -> str:  # noqa: ARG002
        self.sequence = 0
        self._tick_count = 0
        self._reset_state()
        return "counters reset"

    async def _cmd_ping(self, args: dict[str, Any]) -> str:  # noqa: ARG002
        return "pong"

    # -- status -------------------------------------------------------------

    def get_status(self) -> DeviceStatus:
        """Return a snapshot of the simulator's state."""
        return DeviceStatus(
            device_id=self.device_id,
            device_type=self.device_type,
            site=self.site,
            room=self.room,
            online=self.is_online and self.is_reachable,
            dead=self.is_dead,
            battery=round(self.battery_level, 2),
            signal=round(self.signal_strength, 2),
            sequence=self.sequence,
            provisioned=self.is_provisioned,
            extra=self._extra_status(),
            failures=tuple(self.active_failures()),
        )

    # -- provisioning -------------------------------------------------------

    async def _provision(self, ticket: ProvisioningTicket) -> None:
        reply_topic = new_reply_topic(self.namespace)
        loop = asyncio.get_running_loop()
        answer: asyncio.Future[AckMessage | RejectMessage] = loop.create_future()

        async def _on_reply(topic: str, payload: str) -> None:  # noqa: ARG001
            if answer.done():
                return
            try:
                reply = parse_reply(payload)
            except InvalidPayloadError as exc:
                logger.warning("Ignoring malformed claim reply: %s", exc)
                return
            if reply.token not in (ticket.token, ""):
                return
            answer.set_result(reply)

        self._router.register(reply_topic, _on_reply)
        try:
            await self._mqtt.subscribe(reply_topic)
            claim = ClaimMessage(
                token=ticket.token,
                device_type=self.device_type,
                battery=round(self.battery_level, 2),
                signal=round(self.signal_strength, 2),
                ip_address=self.ip_address,
                reply_topic=reply_topic,
                device_id=self.device_id,
            )
            if not await self._publish_with_retry(ticket.request_topic, claim.to_json()):
                msg = f"Could not publish claim to {ticket.request_topic}"
                raise TransientTransportError(msg)
            try:
                reply = await asyncio.wait_for(answer, ticket.timeout)
            except TimeoutError as exc:
                msg = f"No reply to claim within {ticket.timeout}s"
                raise ClaimTimeoutError(msg) from exc
        finally:
            self._router.unregister(reply_topic)

        if isinstance(reply, RejectMessage):
            logger.warning("Claim rejected: %s", reply.reason, extra={"room": self.room})
            raise ProvisioningRejectedError(ticket.token, reply.reason)

        self.credentials = reply
        self.device_id = reply.device_id
        self.topics = reply.topics.to_device_topics()
        logger.info(
            "Provisioned as %s",
            reply.client_id,
            extra={"device_id": reply.device_id, "room": self.room},
        )

    # -- publishing ---------------------------------------------------------

    async def _publish_telemetry(self, readings: dict[str, Any]) -> bool:
        assert self.topics is not None
        assert self.device_id is not None
        if not self.is_reachable:
            return False
        self.sequence += 1
        message = TelemetryMessage(
            device_id=self.device_id,
            device_type=self.device_type,
            sequence=self.sequence,
            battery=round(self.battery_level, 2),
            signal=round(self.signal_strength, 2),
            timestamp=self._wall_clock(),
            readings=readings,
        )
        return await self._publish_with_retry(self.topics.telemetry, message.to_json())

    async def _publish_status(
        self,
        *,
        online: bool,
        command: str | None = None,
        request_id: str | None = None,
        outcome: str | None = None,
        detail: str | None = None,
    ) -> StatusMessage:
        assert self.device_id is not None
        message = StatusMessage(
            device_id=self.device_id,
            device_type=self.device_type,
            online=online,
            battery=round(self.battery_level, 2),
            signal=round(self.signal_strength, 2),
            timestamp=self._wall_clock(),
            command=command,
            request_id=request_id,
            outcome=outcome,  # type: ignore[arg-type]
            detail=detail,
        )
        if self.topics is not None:
            await self._publish_with_retry(self.topics.status, message.to_json(), retain=True)
        return message

    async def _publish_with_retry(
        self,
        topic: str,
        payload: str,
        *,
        retain: bool = False,
    ) -> bool:
        """Publish with bounded exponential backoff on transient failures."""
        delay = self._settings.retry_backoff
        retries = self._settings.publish_retries
        for attempt in range(retries + 1):
            try:
                await self._mqtt.publish(topic, payload, retain=retain, qos=1)
            except TransientTransportError as exc:
                if attempt == retries:
                    logger.warning(
                        "Giving up on publish to %s after %d attempts: %s",
                        topic,
                        attempt + 1,
                        exc,
                        extra={"device_id": self.device_id},
                    )
                    return False
                logger.debug("Publish to %s failed, retrying in %.2fs", topic, delay)
                await asyncio.sleep(delay)
                delay = min(delay * 2, _MAX_RETRY_DELAY)
            else:
                return True
        return False
