"""Service heartbeat and Last-Will-and-Testament.

Topic::

    {namespace}/service/{name}/status   ← retained JSON heartbeat

Heartbeat payload::

    {
        "status": "online",
        "uptime_s": 3600.0,
        "version": "0.1.0",
        "fleet": {"total": 4, "online": 4, "dead": 0}
    }

The broker publishes ``"offline"`` to the same topic if the service
disconnects unexpectedly (see :func:`build_will_config`); a graceful
shutdown publishes ``"offline"`` explicitly.  Publication is retained,
QoS 1 and fire-and-forget: failures are logged, never propagated.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass, field

from deckhand._clock import ClockPort
from deckhand._mqtt import MqttPort, WillConfig

logger = logging.getLogger(__name__)


def status_topic(namespace: str, service: str) -> str:
    return f"{namespace}/service/{service}/status"


@dataclass(frozen=True, slots=True)
class HeartbeatPayload:
    """Immutable heartbeat snapshot."""

    status: str
    uptime_s: float
    version: str
    fleet: dict[str, int] = field(default_factory=dict)

    def to_json(self) -> str:
        return json.dumps(
            {
                "status": self.status,
                "uptime_s": round(self.uptime_s, 3),
                "version": self.version,
                "fleet": self.fleet,
            },
        )


def build_will_config(namespace: str, service: str) -> WillConfig:
    """LWT publishing retained ``"offline"`` on the service status topic."""
    return WillConfig(
        topic=status_topic(namespace, service),
        payload="offline",
        qos=1,
        retain=True,
    )


@dataclass
class HealthReporter:
    """Publishes service heartbeats.

    Args:
        mqtt: Transport used for publishing.
        namespace: Topic namespace.
        service: Service name in the topic.
        version: Reported version string.
        clock: Monotonic clock for uptime.
        fleet_summary: Optional callable returning counts to embed.
    """

    mqtt: MqttPort
    namespace: str
    service: str
    version: str
    clock: ClockPort
    fleet_summary: Callable[[], dict[str, int]] | None = None
    _start_time: float = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self._start_time = self.clock.now()

    @property
    def topic(self) -> str:
        return status_topic(self.namespace, self.service)

    async def publish_heartbeat(self) -> None:
        """Publish the current heartbeat."""
        payload = HeartbeatPayload(
            status="online",
            uptime_s=self.clock.now() - self._start_time,
            version=self.version,
            fleet=self.fleet_summary() if self.fleet_summary is not None else {},
        )
        logger.debug("Publishing heartbeat to %s", self.topic)
        await self._safe_publish(payload.to_json())

    async def shutdown(self) -> None:
        """Publish ``"offline"`` on graceful shutdown."""
        logger.info("Health reporter shutting down, publishing offline")
        await self._safe_publish("offline")

    async def _safe_publish(self, payload: str) -> None:
        try:
            await self.mqtt.publish(self.topic, payload, retain=True, qos=1)
        except Exception:
            logger.exception("Failed to publish health to %s", self.topic)
