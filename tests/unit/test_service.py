"""Tests for deckhand._service — composition root helpers.

Test Techniques Used:
    - Specification-based Testing: FleetPlan expansion and fleet scenarios
    - Branch Coverage: transport selection in _create_mqtt
    - State-based Testing: QR echo and fleet summary
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime

import pytest

from deckhand._coordinator import IssuedToken
from deckhand._errors import NotFoundError
from deckhand._fleet import FLEET_SCENARIOS
from deckhand._messages import DeviceType
from deckhand._mqtt import LoopbackMqttClient, MockMqttClient, MqttClient
from deckhand._service import FleetPlan, ProvisioningService, _fleet_summary
from deckhand._settings import MqttSettings
from deckhand.testing import make_settings


class TestFleetPlan:
    """Technique: Specification-based Testing."""

    def test_empty_by_default(self) -> None:
        plan = FleetPlan()
        assert plan.total == 0
        assert plan.device_types() == []

    def test_device_types_in_order(self) -> None:
        plan = FleetPlan(buttons=2, wearables=1, repeaters=1)
        assert plan.total == 4
        assert plan.device_types() == [
            DeviceType.BUTTON,
            DeviceType.BUTTON,
            DeviceType.WEARABLE,
            DeviceType.REPEATER,
        ]

    def test_scenario_layout_follows_counted_devices(self) -> None:
        plan = FleetPlan(buttons=1, room="Lobby", layout=FLEET_SCENARIOS["basic"])
        placements = plan.placements()
        assert placements[0] == (DeviceType.BUTTON, "Lobby")
        assert placements[1:] == list(FLEET_SCENARIOS["basic"])
        assert plan.total == 6

    def test_for_scenario(self) -> None:
        plan = FleetPlan.for_scenario("full-yacht", site="tender")
        assert plan.site == "tender"
        assert plan.total == 22
        assert plan.device_types().count(DeviceType.REPEATER) == 4

    def test_for_unknown_scenario_raises(self) -> None:
        with pytest.raises(NotFoundError, match="stress-test"):
            FleetPlan.for_scenario("armada")



class TestCreateMqtt:
    """Technique: Branch Coverage."""

    def test_injected_transport_wins(self, mock_mqtt: MockMqttClient) -> None:
        service = ProvisioningService(dry_run=True)
        assert service._create_mqtt(mock_mqtt, make_settings()) is mock_mqtt  # noqa: SLF001

    def test_dry_run_uses_loopback(self) -> None:
        service = ProvisioningService(dry_run=True)
        mqtt = service._create_mqtt(None, make_settings())  # noqa: SLF001
        assert isinstance(mqtt, LoopbackMqttClient)

    def test_generates_client_id_and_will(self) -> None:
        service = ProvisioningService(name="deckhand")
        mqtt = service._create_mqtt(None, make_settings())  # noqa: SLF001

        assert isinstance(mqtt, MqttClient)
        assert mqtt.settings.client_id.startswith("deckhand-")
        assert len(mqtt.settings.client_id) == len("deckhand-") + 8
        assert mqtt.will is not None
        assert mqtt.will.topic == "obedio/service/deckhand/status"

    def test_configured_client_id_kept(self) -> None:
        service = ProvisioningService()
        settings = make_settings(mqtt=MqttSettings(client_id="bridge-1"))
        mqtt = service._create_mqtt(None, settings)  # noqa: SLF001
        assert isinstance(mqtt, MqttClient)
        assert mqtt.settings.client_id == "bridge-1"


class TestPrintQr:
    """Technique: State-based Testing."""

    def test_echoes_header_and_code(self) -> None:
        lines: list[str] = []
        service = ProvisioningService(echo=lines.append)
        issued = IssuedToken(
            token_id=4,
            token="t" * 43,
            qr_payload='{"token": "tttt"}',
            expires_at=datetime(2026, 1, 15, 13, 0, tzinfo=UTC),
        )

        service._print_qr(issued)  # noqa: SLF001

        assert lines[0] == "Token 4 (expires 2026-01-15T13:00:00+00:00):"
        assert len(lines[1].splitlines()) > 5


class TestDefaults:
    def test_not_ready_before_run(self) -> None:
        service = ProvisioningService()
        assert isinstance(service.ready, asyncio.Event)
        assert not service.ready.is_set()
        assert service.coordinator is None
        assert service.fleet is None


def test_fleet_summary_counts(mock_mqtt: MockMqttClient) -> None:
    from deckhand._fleet import Fleet
    from deckhand._settings import SimulatorSettings
    from deckhand.testing import FakeClock, FakeWallClock

    fleet = Fleet(
        mqtt=mock_mqtt,
        namespace="obedio",
        site="main",
        settings=SimulatorSettings(),
        clock=FakeClock(),
        wall_clock=FakeWallClock(),
    )
    fleet.spawn("button", "Lobby", battery=0.0)
    assert _fleet_summary(fleet) == {"total": 1, "online": 0, "dead": 1}
