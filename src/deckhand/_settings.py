"""Application configuration via pydantic-settings.

Configuration is loaded from ``DECKHAND_``-prefixed environment
variables and/or a ``.env`` file.  Nested models use ``__`` as the
delimiter, e.g. ``DECKHAND_MQTT__HOST=broker.local``.

The schema covers four concerns:

* **MQTT** — broker connection.
* **Logging** — level, format, optional file sink, rotation.
* **Provisioning** — topic namespace, token lifetime, and the broker
  endpoint advertised inside QR payloads.
* **Simulator** — tick cadence, retry policy, claim timeout.

All durations are in **seconds**.
"""

from __future__ import annotations

from typing import Annotated, Literal

from pydantic import (
    BaseModel,
    Field,
    SecretStr,
)
from pydantic_settings import BaseSettings, SettingsConfigDict

# -------------------------------------------------------------------
# Sub-models (BaseModel, not BaseSettings; nested via composition)
# -------------------------------------------------------------------


class MqttSettings(BaseModel):
    """MQTT broker connection.

    Environment variables::

        DECKHAND_MQTT__HOST=broker.local
        DECKHAND_MQTT__PORT=1883
        DECKHAND_MQTT__USERNAME=coordinator
        DECKHAND_MQTT__PASSWORD=secret
    """

    host: str = Field(
        default="localhost",
        description="MQTT broker hostname or IP address.",
    )
    port: Annotated[int, Field(ge=1, le=65535)] = Field(
        default=1883,
        description="MQTT broker port.",
    )
    username: str | None = Field(
        default=None,
        description="MQTT authentication username (optional).",
    )
    password: SecretStr | None = Field(
        default=None,
        description="MQTT authentication password (optional).",
    )
    client_id: str = Field(
        default="",
        description=(
            "MQTT client identifier. When empty, the service generates "
            "'{name}-{hex8}' at startup."
        ),
    )
    qos: Annotated[int, Field(ge=0, le=2)] = Field(
        default=1,
        description="QoS used for subscriptions (at-least-once by default).",
    )
    reconnect_interval: Annotated[float, Field(gt=0)] = Field(
        default=5.0,
        description="Initial delay before reconnecting after connection loss.",
    )
    reconnect_max_interval: Annotated[float, Field(gt=0)] = Field(
        default=300.0,
        description="Upper bound for the doubling reconnect delay.",
    )


class LoggingSettings(BaseModel):
    """Logging configuration.

    ``format="json"`` emits one JSON object per line for log
    aggregators; ``"text"`` is for terminals.  When ``file`` is set,
    records also go to a size-rotated file.
    """

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Root log level.",
    )
    format: Literal["json", "text"] = Field(
        default="json",
        description="Log output format: 'json' or 'text'.",
    )
    file: str | None = Field(
        default=None,
        description="Optional log file path. ``None`` means stderr only.",
    )
    max_file_size_mb: Annotated[int, Field(ge=1)] = Field(
        default=10,
        description="Maximum log file size in megabytes before rotation.",
    )
    backup_count: Annotated[int, Field(ge=0)] = Field(
        default=3,
        description="Number of rotated log files to keep.",
    )


class ProvisioningSettings(BaseModel):
    """Token lifecycle and topic layout.

    ``advertise_host`` / ``advertise_port`` are what devices are told to
    connect to.  They default to the coordinator's own broker settings,
    which is wrong whenever the coordinator reaches the broker through
    an internal address.
    """

    namespace: str = Field(
        default="obedio",
        min_length=1,
        description="Root of every topic, e.g. 'obedio/provision/request'.",
    )
    default_site: str = Field(
        default="main",
        min_length=1,
        description="Site segment used when an issue request names none.",
    )
    token_ttl: Annotated[float, Field(ge=0)] = Field(
        default=3600.0,
        description="Default token lifetime in seconds.",
    )
    advertise_host: str | None = Field(
        default=None,
        description="Broker host written into QR payloads.",
    )
    advertise_port: Annotated[int, Field(ge=1, le=65535)] | None = Field(
        default=None,
        description="Broker port written into QR payloads.",
    )
    password_length: Annotated[int, Field(ge=16, le=72)] = Field(
        default=24,
        description="Length of generated device passwords (bcrypt caps input at 72 bytes).",
    )
    publish_events: bool = Field(
        default=True,
        description="Publish domain events on '{namespace}/provision/events'.",
    )


class SimulatorSettings(BaseModel):
    """Defaults for virtual devices started by the fleet."""

    interval: Annotated[float, Field(gt=0)] = Field(
        default=5.0,
        description="Seconds between telemetry ticks.",
    )
    status_every: Annotated[int, Field(ge=1)] = Field(
        default=6,
        description="Publish a status heartbeat every N ticks.",
    )
    publish_retries: Annotated[int, Field(ge=0, le=10)] = Field(
        default=3,
        description="Retries for a failed telemetry publish.",
    )
    retry_backoff: Annotated[float, Field(ge=0)] = Field(
        default=0.5,
        description="Initial retry delay; doubles per attempt.",
    )
    claim_timeout: Annotated[float, Field(gt=0)] = Field(
        default=10.0,
        description="Seconds to wait for an ack/reject after claiming.",
    )


# -------------------------------------------------------------------
# Root settings
# -------------------------------------------------------------------


class Settings(BaseSettings):
    """Root settings for the deckhand service.

    Example ``.env``::

        DECKHAND_MQTT__HOST=broker.local
        DECKHAND_PROVISIONING__NAMESPACE=obedio
        DECKHAND_PROVISIONING__ADVERTISE_HOST=mqtt.obedio.local
        DECKHAND_SIMULATOR__INTERVAL=2
        DECKHAND_LOGGING__FORMAT=text
    """

    model_config = SettingsConfigDict(
        env_prefix="DECKHAND_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    mqtt: MqttSettings = Field(
        default_factory=MqttSettings,
        description="MQTT broker connection settings.",
    )
    logging: LoggingSettings = Field(
        default_factory=LoggingSettings,
        description="Logging configuration.",
    )
    provisioning: ProvisioningSettings = Field(
        default_factory=ProvisioningSettings,
        description="Token lifecycle and topic layout.",
    )
    simulator: SimulatorSettings = Field(
        default_factory=SimulatorSettings,
        description="Virtual device defaults.",
    )
