"""Topic naming for provisioning and per-device channels.

Pure formatting and parsing; no state.  The layout is fixed::

    {namespace}/provision/request                      shared claim topic
    {namespace}/provision/reply/{nonce}                simulator reply topics
    {namespace}/provision/events                       coordinator domain events
    {namespace}/{site}/{room}/{device_id}/command
    {namespace}/{site}/{room}/{device_id}/telemetry
    {namespace}/{site}/{room}/{device_id}/status

Segments may not contain ``/``, ``+`` or ``#`` and may not be empty,
otherwise the five-level device layout would become ambiguous.
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass
from typing import Literal

from deckhand._errors import InvalidPayloadError

type Channel = Literal["command", "telemetry", "status"]

CHANNELS: tuple[Channel, ...] = ("command", "telemetry", "status")

_FORBIDDEN = frozenset("/+#")


def _check_segment(name: str, value: str) -> str:
    if not value or any(ch in _FORBIDDEN for ch in value):
        msg = f"Invalid topic segment for {name}: {value!r}"
        raise InvalidPayloadError(msg)
    return value


# ---------------------------------------------------------------------------
# Value objects
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class DeviceTopics:
    """The three per-device topics derived from one device address."""

    command: str
    telemetry: str
    status: str

    @classmethod
    def for_device(
        cls,
        namespace: str,
        site: str,
        room: str,
        device_id: str,
    ) -> DeviceTopics:
        """Build the topic set for *device_id* in *site*/*room*."""
        base = "/".join(
            (
                _check_segment("namespace", namespace),
                _check_segment("site", site),
                _check_segment("room", room),
                _check_segment("device_id", device_id),
            )
        )
        return cls(
            command=f"{base}/command",
            telemetry=f"{base}/telemetry",
            status=f"{base}/status",
        )

    def to_dict(self) -> dict[str, str]:
        """Serialise to the ``topics`` object used on the wire."""
        return {"command": self.command, "telemetry": self.telemetry, "status": self.status}


@dataclass(frozen=True, slots=True)
class DeviceAddress:
    """A parsed per-device topic."""

    namespace: str
    site: str
    room: str
    device_id: str
    channel: Channel


# ---------------------------------------------------------------------------
# Formatting
# ---------------------------------------------------------------------------


def provision_request_topic(namespace: str) -> str:
    """Return the shared request topic all pending claims go to."""
    return f"{_check_segment('namespace', namespace)}/provision/request"


def provision_events_topic(namespace: str) -> str:
    """Return the topic carrying coordinator domain events."""
    return f"{_check_segment('namespace', namespace)}/provision/events"


def new_reply_topic(namespace: str) -> str:
    """Return a fresh, unguessable reply topic for one claim attempt."""
    return f"{_check_segment('namespace', namespace)}/provision/reply/{secrets.token_hex(8)}"


def device_wildcard(namespace: str, channel: Channel) -> str:
    """Return the subscription filter matching *channel* on every device."""
    return f"{_check_segment('namespace', namespace)}/+/+/+/{channel}"


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def parse_device_topic(namespace: str, topic: str) -> DeviceAddress | None:
    """Parse a per-device topic, or return ``None`` if *topic* is not one.

    ``{namespace}/provision/...`` topics never parse as device topics
    because they have the wrong number of levels.
    """
    parts = topic.split("/")
    if len(parts) != 5 or parts[0] != namespace:  # noqa: PLR2004
        return None
    _, site, room, device_id, channel = parts
    if not (site and room and device_id) or channel not in CHANNELS:
        return None
    return DeviceAddress(
        namespace=namespace,
        site=site,
        room=room,
        device_id=device_id,
        channel=channel,  # type: ignore[arg-type]
    )


def topic_matches(topic_filter: str, topic: str) -> bool:
    """Return ``True`` if *topic* matches the MQTT subscription filter.

    Supports the single-level ``+`` and trailing multi-level ``#``
    wildcards.
    """
    filter_parts = topic_filter.split("/")
    topic_parts = topic.split("/")
    for index, part in enumerate(filter_parts):
        if part == "#":
            return index == len(filter_parts) - 1
        if index >= len(topic_parts):
            return False
        if part not in ("+", topic_parts[index]):
            return False
    return len(filter_parts) == len(topic_parts)
