"""Unit tests for deckhand.testing — public test-support utilities.

Test Techniques Used:
    - Specification-based Testing: public API surface and factory defaults
    - Identity Testing: re-exported symbols are the originals
    - Fixture Injection: plugin-registered fixtures are available
    - Integration Testing: ServiceHarness lifecycle on a loopback broker
"""

from __future__ import annotations

import logging
from collections.abc import Iterator

import pytest

import deckhand._mqtt as _mqtt_mod
import deckhand.testing as testing_mod
from deckhand._coordinator import ProvisioningCoordinator
from deckhand._service import FleetPlan
from deckhand._settings import Settings
from deckhand.testing import (
    FakeClock,
    FakeWallClock,
    LoopbackMqttClient,
    MockMqttClient,
    ServiceHarness,
)


@pytest.fixture
def _restore_root_logger() -> Iterator[None]:
    """ProvisioningService.run reconfigures the root logger."""
    root = logging.getLogger()
    original_handlers = root.handlers[:]
    original_level = root.level
    yield
    for h in root.handlers:
        if h not in original_handlers:
            h.close()
    root.handlers = original_handlers
    root.setLevel(original_level)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


class TestPublicAPI:
    """All expected symbols are importable and listed in ``__all__``."""

    EXPECTED_NAMES = {
        "FakeClock",
        "FakeWallClock",
        "LoopbackMqttClient",
        "MockMqttClient",
        "NullMqttClient",
        "ServiceHarness",
        "make_settings",
    }

    def test_all_contains_expected_symbols(self) -> None:
        assert set(testing_mod.__all__) == self.EXPECTED_NAMES

    def test_mqtt_doubles_are_reexports(self) -> None:
        assert testing_mod.MockMqttClient is _mqtt_mod.MockMqttClient
        assert testing_mod.LoopbackMqttClient is _mqtt_mod.LoopbackMqttClient
        assert testing_mod.NullMqttClient is _mqtt_mod.NullMqttClient


# ---------------------------------------------------------------------------
# Plugin fixtures
# ---------------------------------------------------------------------------


class TestPluginFixtures:
    """Technique: Fixture Injection."""

    def test_doubles(
        self,
        mock_mqtt: MockMqttClient,
        loopback_mqtt: LoopbackMqttClient,
        fake_clock: FakeClock,
    ) -> None:
        assert isinstance(mock_mqtt, MockMqttClient)
        assert mock_mqtt.published == []
        assert isinstance(loopback_mqtt, LoopbackMqttClient)
        assert fake_clock.now() == 0.0

    def test_coordinator_uses_shared_doubles(
        self,
        coordinator: ProvisioningCoordinator,
        loopback_mqtt: LoopbackMqttClient,
        wall_clock: FakeWallClock,
    ) -> None:
        assert coordinator._mqtt is loopback_mqtt  # noqa: SLF001
        assert coordinator._clock is wall_clock  # noqa: SLF001

    async def test_coordinator_issues_one_hour_tokens(
        self,
        coordinator: ProvisioningCoordinator,
        wall_clock: FakeWallClock,
    ) -> None:
        issued = await coordinator.issue("Lobby")
        assert issued.expires_at == wall_clock().replace(hour=13)
        assert "mqtt.obedio.local" in issued.qr_payload


# ---------------------------------------------------------------------------
# ServiceHarness
# ---------------------------------------------------------------------------


class TestServiceHarnessCreate:
    """Technique: Specification-based Testing."""

    def test_defaults(self) -> None:
        harness = ServiceHarness.create()
        assert harness.service.name == "deckhand-test"
        assert harness.service.version == "1.0.0"
        assert harness.service.heartbeat_interval is None
        assert isinstance(harness.settings, Settings)
        assert not harness.shutdown_event.is_set()

    def test_settings_overrides(self) -> None:
        harness = ServiceHarness.create(provisioning={"namespace": "test"})
        assert harness.settings.provisioning.namespace == "test"

    def test_trigger_shutdown(self) -> None:
        harness = ServiceHarness.create()
        harness.trigger_shutdown()
        assert harness.shutdown_event.is_set()

    def test_coordinator_requires_run(self) -> None:
        with pytest.raises(AssertionError, match="not running"):
            _ = ServiceHarness.create().coordinator


@pytest.mark.usefixtures("_restore_root_logger")
class TestServiceHarnessRun:
    """Technique: Integration Testing."""

    async def test_running_without_fleet(self) -> None:
        harness = ServiceHarness.create()
        async with harness.running():
            assert harness.service.ready.is_set()
            assert len(harness.fleet) == 0
        status = harness.mqtt.get_messages_for("obedio/service/deckhand-test/status")
        assert status[-1] == "offline"

    async def test_running_provisions_plan(self) -> None:
        harness = ServiceHarness.create(
            plan=FleetPlan(buttons=1),
            simulator={"interval": 3600, "retry_backoff": 0},
        )
        async with harness.running():
            [device] = list(harness.fleet)
            assert device.is_provisioned
            assert device.is_online
        assert not device.is_online
