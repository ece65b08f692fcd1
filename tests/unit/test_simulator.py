"""Tests for deckhand._simulator — the virtual device runtime.

Test Techniques Used:
    - State Transition Testing: start/stop lifecycle, death at 0 % battery
    - Property-based Reasoning: battery never rises without a recharge
    - Fault Injection: flaky transport exercising publish retries
    - Specification-based Testing: command outcomes as status messages
    - Integration Testing: claim handshake against a real coordinator
"""

from __future__ import annotations

import asyncio
import json
import random
from dataclasses import dataclass
from typing import Any
from unittest.mock import AsyncMock

import pytest

from deckhand._coordinator import ProvisioningCoordinator
from deckhand._devices import ButtonSimulator
from deckhand._errors import (
    ClaimTimeoutError,
    InvalidPayloadError,
    ProvisioningRejectedError,
    TransientTransportError,
)
from deckhand._messages import DeviceType
from deckhand._mqtt import LoopbackMqttClient, MockMqttClient
from deckhand._settings import SimulatorSettings
from deckhand._simulator import ProvisioningTicket, SimulatedDevice
from deckhand._store import TokenStatus
from deckhand._topics import DeviceTopics
from deckhand.testing import FakeClock, FakeWallClock

DEVICE_ID = "BUT-2026-0000TEST"
TOPICS = DeviceTopics.for_device("obedio", "main", "Lobby", DEVICE_ID)

# Long interval: background ticks never interfere with manual ticks.
SLOW = SimulatorSettings(interval=3600, status_every=3, publish_retries=3, retry_backoff=0)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


@dataclass
class FlakyMqttClient(MockMqttClient):
    """MockMqttClient whose next *failures* publishes raise."""

    failures: int = 0
    attempts: int = 0

    async def publish(
        self,
        topic: str,
        payload: str,
        *,
        retain: bool = False,
        qos: int = 1,
    ) -> None:
        self.attempts += 1
        if self.failures > 0:
            self.failures -= 1
            msg = "broker unavailable"
            raise TransientTransportError(msg)
        await super().publish(topic, payload, retain=retain, qos=qos)


def _button(
    mqtt: Any,
    *,
    clock: FakeClock | None = None,
    settings: SimulatorSettings = SLOW,
    **kwargs: Any,
) -> ButtonSimulator:
    kwargs.setdefault("device_id", DEVICE_ID)
    return ButtonSimulator(
        mqtt=mqtt,
        room="Lobby",
        settings=settings,
        clock=clock or FakeClock(),
        wall_clock=FakeWallClock(),
        rng=random.Random(7),
        **kwargs,
    )


def _ready(sim: ButtonSimulator) -> ButtonSimulator:
    """Give a simulator its topics without starting the loop."""
    sim.topics = TOPICS
    return sim


def _payloads(mqtt: MockMqttClient, topic: str) -> list[dict[str, Any]]:
    return [json.loads(p) for p, _, _ in mqtt.get_messages_for(topic)]


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


class TestLifecycle:
    """Technique: State Transition Testing."""

    def test_satisfies_protocol(self, mock_mqtt: MockMqttClient) -> None:
        assert isinstance(_button(mock_mqtt), SimulatedDevice)

    def test_standalone_device_generates_id(self, mock_mqtt: MockMqttClient) -> None:
        sim = ButtonSimulator(mqtt=mock_mqtt, room="Lobby", wall_clock=FakeWallClock())
        assert sim.device_id is not None
        assert sim.device_id.startswith("BUT-2026-")

    async def test_start_subscribes_and_runs(self, mock_mqtt: MockMqttClient) -> None:
        sim = _button(mock_mqtt)
        await sim.start()
        await sim.start()
        try:
            assert sim.is_online
            assert mock_mqtt.subscriptions == [TOPICS.command]
        finally:
            await sim.stop()

    async def test_stop_publishes_retained_offline_and_is_idempotent(
        self,
        mock_mqtt: MockMqttClient,
    ) -> None:
        sim = _button(mock_mqtt)
        await sim.start()
        await sim.stop()
        await sim.stop()

        statuses = mock_mqtt.get_messages_for(TOPICS.status)
        assert len(statuses) == 1
        payload, retain, _ = statuses[0]
        assert retain is True
        assert json.loads(payload)["online"] is False
        assert not sim.is_online

    async def test_stop_before_start_is_noop(self, mock_mqtt: MockMqttClient) -> None:
        await _button(mock_mqtt).stop()
        assert mock_mqtt.published == []

    async def test_can_restart_after_stop(self, mock_mqtt: MockMqttClient) -> None:
        sim = _button(mock_mqtt)
        await sim.start()
        await sim.stop()
        await sim.start()
        try:
            assert sim.is_online
        finally:
            await sim.stop()


# ---------------------------------------------------------------------------
# Ticking and battery
# ---------------------------------------------------------------------------


class TestTick:
    """Technique: Property-based Reasoning on battery and sequence."""

    async def test_tick_before_start_does_nothing(self, mock_mqtt: MockMqttClient) -> None:
        assert await _button(mock_mqtt).tick() is False
        assert mock_mqtt.published == []

    async def test_telemetry_shape_and_sequence(self, mock_mqtt: MockMqttClient) -> None:
        sim = _ready(_button(mock_mqtt))
        await sim.tick()
        await sim.tick()

        first, second = _payloads(mock_mqtt, TOPICS.telemetry)
        assert (first["sequence"], second["sequence"]) == (1, 2)
        assert first["deviceId"] == DEVICE_ID
        assert first["deviceType"] == "button"
        assert first["readings"] == {"pressCount": 0}
        assert 0 <= first["signal"] <= 100

    async def test_battery_never_increases(self, mock_mqtt: MockMqttClient) -> None:
        clock = FakeClock()
        sim = _ready(_button(mock_mqtt, clock=clock))
        levels = [sim.battery_level]
        for _ in range(50):
            clock.advance(1800)
            await sim.tick()
            levels.append(sim.battery_level)
        assert all(later <= earlier for earlier, later in zip(levels, levels[1:], strict=False))
        assert levels[-1] < 100.0

    async def test_backwards_clock_does_not_recharge(self, mock_mqtt: MockMqttClient) -> None:
        clock = FakeClock(1000.0)
        sim = _ready(_button(mock_mqtt, clock=clock))
        await sim.tick()
        before = sim.battery_level
        clock.advance(-500)
        await sim.tick()
        assert sim.battery_level == before

    async def test_depleted_device_stops_publishing(self, mock_mqtt: MockMqttClient) -> None:
        clock = FakeClock()
        sim = _ready(_button(mock_mqtt, clock=clock, battery=0.01))
        await sim.tick()
        clock.advance(36_000)
        await sim.tick()
        published = mock_mqtt.publish_count

        assert sim.is_dead
        assert sim.battery_level == 0.0
        assert await sim.tick() is False
        assert mock_mqtt.publish_count == published

    async def test_tick_that_empties_battery_publishes_nothing(
        self,
        mock_mqtt: MockMqttClient,
    ) -> None:
        clock = FakeClock()
        sim = _ready(_button(mock_mqtt, clock=clock, battery=0.01))
        assert await sim.tick() is True
        published = mock_mqtt.publish_count

        clock.advance(36_000)

        assert await sim.tick() is False
        assert sim.is_dead
        assert mock_mqtt.publish_count == published
        assert len(_payloads(mock_mqtt, TOPICS.telemetry)) == 1

    def test_recharge_is_clamped(self, mock_mqtt: MockMqttClient) -> None:
        sim = _button(mock_mqtt, battery=10)
        sim.recharge(150)
        assert sim.battery_level == 100.0
        sim.consume(500)
        assert sim.battery_level == 0.0

    async def test_status_heartbeat_every_n_ticks(self, mock_mqtt: MockMqttClient) -> None:
        sim = _ready(_button(mock_mqtt))
        for _ in range(6):
            await sim.tick()
        statuses = mock_mqtt.get_messages_for(TOPICS.status)
        assert len(statuses) == 2
        assert all(retain for _, retain, _ in statuses)

    async def test_loop_ends_when_battery_is_empty(self, mock_mqtt: MockMqttClient) -> None:
        sim = _button(mock_mqtt, battery=0.0)
        await sim.start()
        await asyncio.wait_for(sim._task, 1.0)  # type: ignore[arg-type]  # noqa: SLF001

        assert not sim.is_online
        last = _payloads(mock_mqtt, TOPICS.status)[-1]
        assert last["online"] is False
        assert last["detail"] == "battery depleted"
        await sim.stop()


# ---------------------------------------------------------------------------
# Publish retries
# ---------------------------------------------------------------------------


class TestPublishRetry:
    """Technique: Fault Injection."""

    async def test_transient_failures_are_retried(self) -> None:
        mqtt = FlakyMqttClient(failures=2)
        sim = _ready(_button(mqtt))

        assert await sim.tick() is True
        assert mqtt.attempts == 3
        assert len(mqtt.get_messages_for(TOPICS.telemetry)) == 1

    async def test_gives_up_after_retries_and_keeps_going(self) -> None:
        mqtt = FlakyMqttClient(failures=4)
        sim = _ready(_button(mqtt))

        assert await sim.tick() is False
        assert mqtt.attempts == 4
        assert await sim.tick() is True
        assert sim.sequence == 2

    async def test_zero_retries_means_single_attempt(self) -> None:
        mqtt = FlakyMqttClient(failures=1)
        settings = SimulatorSettings(interval=3600, publish_retries=0, retry_backoff=0)
        sim = _ready(_button(mqtt, settings=settings))
        assert await sim.tick() is False
        assert mqtt.attempts == 1


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


class TestCommands:
    """Technique: Specification-based Testing."""

    async def test_ping(self, mock_mqtt: MockMqttClient) -> None:
        sim = _ready(_button(mock_mqtt))
        status = await sim.on_command('{"command": "ping", "requestId": "r-1"}')
        assert (status.command, status.outcome, status.detail) == ("ping", "accepted", "pong")
        assert status.request_id == "r-1"
        assert _payloads(mock_mqtt, TOPICS.status)[-1]["requestId"] == "r-1"

    async def test_reset_clears_counters(self, mock_mqtt: MockMqttClient) -> None:
        sim = _ready(_button(mock_mqtt))
        await sim.tick()
        await sim.press()
        status = await sim.on_command('{"command": "reset"}')
        assert status.outcome == "accepted"
        assert sim.sequence == 0
        assert sim.press_count == 0

    async def test_unknown_command_rejected(self, mock_mqtt: MockMqttClient) -> None:
        sim = _ready(_button(mock_mqtt))
        status = await sim.on_command('{"command": "fly"}')
        assert status.outcome == "rejected"
        assert status.detail == "unknown command 'fly'"

    @pytest.mark.parametrize("payload", ["nope", "{}", '{"command": ""}'])
    async def test_malformed_command_rejected(
        self,
        mock_mqtt: MockMqttClient,
        payload: str,
    ) -> None:
        sim = _ready(_button(mock_mqtt))
        status = await sim.on_command(payload)
        assert status.outcome == "rejected"
        assert status.detail == "malformed command"

    async def test_dead_device_rejects_commands(self, mock_mqtt: MockMqttClient) -> None:
        sim = _ready(_button(mock_mqtt, battery=0.0))
        status = await sim.on_command('{"command": "ping"}')
        assert status.outcome == "rejected"
        assert status.detail == "battery depleted"

    async def test_failing_handler_is_rejected(
        self,
        mock_mqtt: MockMqttClient,
        monkeypatch: pytest.MonkeyPatch,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        sim = _ready(_button(mock_mqtt))
        monkeypatch.setattr(sim, "press", AsyncMock(side_effect=ZeroDivisionError("boom")))

        status = await sim.on_command('{"command": "press", "requestId": "r-9"}')

        assert (status.outcome, status.detail) == ("rejected", "command failed")
        last = _payloads(mock_mqtt, TOPICS.status)[-1]
        assert (last["requestId"], last["outcome"]) == ("r-9", "rejected")
        assert "Command press failed" in caplog.text
        assert (await sim.on_command('{"command": "ping"}')).outcome == "accepted"

    async def test_command_over_the_transport(self) -> None:
        bus = LoopbackMqttClient()
        sim = _button(bus)
        await sim.start()
        try:
            await bus.publish(TOPICS.command, '{"command": "ping", "requestId": "42"}')
            replies = [json.loads(p) for p in bus.get_messages_for(TOPICS.status)]
            assert any(r.get("requestId") == "42" and r["detail"] == "pong" for r in replies)
        finally:
            await sim.stop()


# ---------------------------------------------------------------------------
# Status snapshot
# ---------------------------------------------------------------------------


class TestGetStatus:
    """Technique: Specification-based Testing."""

    async def test_snapshot(self, mock_mqtt: MockMqttClient) -> None:
        sim = _ready(_button(mock_mqtt, battery=42.25))
        status = sim.get_status()
        assert status.device_id == DEVICE_ID
        assert status.device_type is DeviceType.BUTTON
        assert status.battery == 42.25
        assert not status.online
        assert not status.provisioned
        assert status.extra == {"pressCount": 0, "lastPress": None}


# ---------------------------------------------------------------------------
# Provisioning
# ---------------------------------------------------------------------------


class TestProvisioningTicket:
    """Technique: Error Guessing."""

    def test_invalid_qr_payload(self) -> None:
        with pytest.raises(InvalidPayloadError):
            ProvisioningTicket.from_payload('{"token": "x"}', namespace="obedio")


class TestProvisioning:
    """Technique: Integration Testing against an in-memory coordinator."""

    async def test_claim_then_first_telemetry_activates(
        self,
        coordinator: ProvisioningCoordinator,
        loopback_mqtt: LoopbackMqttClient,
    ) -> None:
        await coordinator.attach()
        issued = await coordinator.issue("Lobby")
        ticket = ProvisioningTicket.from_payload(issued.qr_payload, namespace="obedio")
        sim = _button(loopback_mqtt, ticket=ticket, device_id=None, ip_address="10.0.0.9")

        await sim.start()
        try:
            assert sim.is_provisioned
            assert sim.credentials is not None
            assert sim.device_id == sim.credentials.device_id
            assert sim.topics == sim.credentials.topics.to_device_topics()
            for _ in range(100):
                if (await coordinator.get(issued.token_id)).status is TokenStatus.ACTIVE:
                    break
                await asyncio.sleep(0.01)
            assert (await coordinator.get(issued.token_id)).status is TokenStatus.ACTIVE
        finally:
            await sim.stop()

    async def test_rejected_claim_raises(
        self,
        coordinator: ProvisioningCoordinator,
        loopback_mqtt: LoopbackMqttClient,
    ) -> None:
        await coordinator.attach()
        issued = await coordinator.issue("Lobby")
        await coordinator.cancel(issued.token_id)
        ticket = ProvisioningTicket.from_payload(issued.qr_payload, namespace="obedio")
        sim = _button(loopback_mqtt, ticket=ticket, device_id=None)

        with pytest.raises(ProvisioningRejectedError) as exc_info:
            await sim.start()

        assert exc_info.value.reason == "already_claimed"
        assert not sim.is_provisioned
        assert not sim.is_online
        assert sim._router.subscriptions == []  # noqa: SLF001

    async def test_no_reply_times_out(self, loopback_mqtt: LoopbackMqttClient) -> None:
        ticket = ProvisioningTicket(
            token="a" * 32,
            request_topic="obedio/provision/request",
            timeout=0.05,
        )
        sim = _button(loopback_mqtt, ticket=ticket, device_id=None)
        with pytest.raises(ClaimTimeoutError):
            await sim.start()

    async def test_unpublishable_claim_is_transient(self) -> None:
        mqtt = FlakyMqttClient(failures=100)
        ticket = ProvisioningTicket(token="a" * 32, request_topic="obedio/provision/request")
        sim = _button(mqtt, ticket=ticket, device_id=None)
        with pytest.raises(TransientTransportError, match="Could not publish claim"):
            await sim.start()
        assert mqtt.attempts == SLOW.publish_retries + 1
