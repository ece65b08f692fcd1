"""Wire schemas for the provisioning handshake and device traffic.

All messages are JSON objects with camelCase keys on the wire and
snake_case attributes in Python.  Parsing failures are reported as
:class:`~deckhand._errors.InvalidPayloadError` so that callers only
ever deal with deckhand's error taxonomy.

Message shapes::

    QR payload   {token, mqttHost, mqttPort, topics}
    claim        {token, deviceType, battery, signal, ipAddress,
                  replyTopic, deviceId?}
    ack          {token, status: "ack", deviceId, clientId, username,
                  password, topics}
    reject       {token, status: "reject", reason}
    telemetry    {deviceId, deviceType, sequence, battery, signal,
                  timestamp, readings}
    status       {deviceId, deviceType, online, battery, signal,
                  timestamp, command?, requestId?, outcome?, detail?}
    command      {command, requestId?, args}
    event        {event, tokenId, room, deviceId, status, timestamp}
"""

from __future__ import annotations

import json
import secrets
from datetime import datetime
from enum import StrEnum
from typing import Annotated, Any, Literal

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError,
    field_validator,
)
from pydantic.alias_generators import to_camel

from deckhand._errors import InvalidPayloadError
from deckhand._topics import DeviceTopics

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class DeviceType(StrEnum):
    """Simulated and physical device archetypes."""

    BUTTON = "button"
    WEARABLE = "wearable"
    REPEATER = "repeater"

    @property
    def code(self) -> str:
        """Three-letter prefix used in generated device ids."""
        return self.value[:3].upper()


class RejectReason(StrEnum):
    """Why a claim was refused."""

    NOT_FOUND = "not_found"
    EXPIRED = "expired"
    ALREADY_CLAIMED = "already_claimed"
    INVALID_PAYLOAD = "invalid_payload"


def new_device_id(device_type: DeviceType, now: datetime) -> str:
    """Generate a device id such as ``BUT-2026-1A2B3C4D``."""
    return f"{device_type.code}-{now.year}-{secrets.token_hex(4).upper()}"


# ---------------------------------------------------------------------------
# Base model
# ---------------------------------------------------------------------------

Percent = Annotated[float, Field(ge=0, le=100)]


class WireModel(BaseModel):
    """Base for all wire messages: camelCase aliases, immutable."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra="ignore",
    )

    def to_json(self) -> str:
        """Serialise with camelCase keys, omitting unset optionals."""
        return self.model_dump_json(by_alias=True, exclude_none=True)


def _check_topic(value: str) -> str:
    if "+" in value or "#" in value:
        msg = f"topic may not contain wildcards: {value!r}"
        raise ValueError(msg)
    return value


# ---------------------------------------------------------------------------
# Provisioning
# ---------------------------------------------------------------------------


class TopicsModel(WireModel):
    """The ``topics`` object shared by QR payloads and acks."""

    command: str
    telemetry: str
    status: str

    @classmethod
    def from_device_topics(cls, topics: DeviceTopics) -> TopicsModel:
        return cls(command=topics.command, telemetry=topics.telemetry, status=topics.status)

    def to_device_topics(self) -> DeviceTopics:
        return DeviceTopics(command=self.command, telemetry=self.telemetry, status=self.status)


class ProvisionPayload(WireModel):
    """Out-of-band payload rendered into the QR code."""

    token: str = Field(min_length=1)
    mqtt_host: str
    mqtt_port: int = Field(ge=1, le=65535)
    topics: TopicsModel


class ClaimMessage(WireModel):
    """A device's claim on the shared provisioning request topic."""

    token: str = Field(min_length=1)
    device_type: DeviceType
    battery: Percent = 100.0
    signal: Percent = 100.0
    ip_address: str | None = None
    reply_topic: str = Field(min_length=1)
    device_id: str | None = Field(default=None, min_length=1)

    @field_validator("reply_topic")
    @classmethod
    def _reply_topic_is_exact(cls, value: str) -> str:
        return _check_topic(value)

    @field_validator("device_id")
    @classmethod
    def _device_id_is_segment(cls, value: str | None) -> str | None:
        if value is not None and any(ch in value for ch in "/+#"):
            msg = f"deviceId may not contain '/', '+' or '#': {value!r}"
            raise ValueError(msg)
        return value


class AckMessage(WireModel):
    """Successful claim reply carrying the one-time credentials."""

    token: str
    status: Literal["ack"] = "ack"
    device_id: str
    client_id: str
    username: str
    password: str = Field(repr=False)
    topics: TopicsModel


class RejectMessage(WireModel):
    """Refused claim reply."""

    token: str = ""
    status: Literal["reject"] = "reject"
    reason: RejectReason


ClaimReply = Annotated[AckMessage | RejectMessage, Field(discriminator="status")]

_CLAIM_REPLY: TypeAdapter[AckMessage | RejectMessage] = TypeAdapter(ClaimReply)


class DomainEvent(WireModel):
    """Coordinator event published on ``{namespace}/provision/events``."""

    event: Literal[
        "token_issued",
        "device_claimed",
        "device_activated",
        "token_expired",
        "token_cancelled",
        "token_deleted",
    ]
    token_id: int
    room: str
    device_id: str | None = None
    status: str
    timestamp: datetime


# ---------------------------------------------------------------------------
# Device traffic
# ---------------------------------------------------------------------------


class TelemetryMessage(WireModel):
    """Periodic device reading."""

    device_id: str
    device_type: DeviceType
    sequence: int = Field(ge=0)
    battery: Percent
    signal: Percent
    timestamp: datetime
    readings: dict[str, Any] = Field(default_factory=dict)


class StatusMessage(WireModel):
    """Device status: heartbeat, command outcome or offline notice."""

    device_id: str
    device_type: DeviceType
    online: bool
    battery: Percent
    signal: Percent
    timestamp: datetime
    command: str | None = None
    request_id: str | None = None
    outcome: Literal["accepted", "rejected"] | None = None
    detail: str | None = None


class CommandMessage(WireModel):
    """Command sent to a device on its command topic."""

    command: str = Field(min_length=1)
    request_id: str | None = None
    args: dict[str, Any] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Parsing helpers
# ---------------------------------------------------------------------------


def parse_message[M: BaseModel](model: type[M], payload: str | bytes) -> M:
    """Validate *payload* as *model*.

    Raises:
        InvalidPayloadError: If the payload is not valid JSON or does
            not match the schema.
    """
    try:
        return model.model_validate_json(payload)
    except ValidationError as exc:
        msg = f"Invalid {model.__name__}: {exc.errors(include_url=False)}"
        raise InvalidPayloadError(msg) from exc


def parse_reply(payload: str | bytes) -> AckMessage | RejectMessage:
    """Parse an ack or reject by its ``status`` discriminator."""
    try:
        return _CLAIM_REPLY.validate_json(payload)
    except ValidationError as exc:
        msg = f"Invalid claim reply: {exc.errors(include_url=False)}"
        raise InvalidPayloadError(msg) from exc


def salvage_claim_fields(payload: str | bytes) -> tuple[str, str | None]:
    """Best-effort extraction of ``(token, replyTopic)`` from a bad claim.

    Used to answer a malformed claim with a reject when the claimant
    can still be reached.  Returns ``("", None)`` when nothing usable
    is present.
    """
    try:
        data = json.loads(payload)
    except ValueError:
        return "", None
    if not isinstance(data, dict):
        return "", None
    token = data.get("token")
    reply_topic = data.get("replyTopic")
    if not isinstance(token, str):
        token = ""
    if not isinstance(reply_topic, str) or not reply_topic:
        return token, None
    try:
        _check_topic(reply_topic)
    except ValueError:
        return token, None
    return token, reply_topic
