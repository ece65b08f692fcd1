"""deckhand.

Device provisioning over MQTT and simulated IoT fleets for the Obedio
vessel operations dashboard.
"""

from importlib.metadata import PackageNotFoundError, version

from deckhand._clock import ClockPort, SystemClock, WallClock, utc_now
from deckhand._coordinator import (
    ALLOWED_TRANSITIONS,
    HistoryItem,
    HistoryPage,
    IssuedToken,
    ProvisioningCoordinator,
)
from deckhand._credentials import CredentialIssuer, IssuedCredentials
from deckhand._devices import (
    ButtonSimulator,
    RepeaterSimulator,
    WearableSimulator,
    create_simulator,
)
from deckhand._errors import (
    AlreadyClaimedError,
    ClaimTimeoutError,
    CommandRejectedError,
    DeckhandError,
    ErrorPayload,
    ErrorPublisher,
    ExpiredError,
    InvalidPayloadError,
    InvalidStateError,
    NotFoundError,
    PersistenceError,
    ProvisioningRejectedError,
    StaleVersionError,
    TransientTransportError,
    build_error_payload,
)
from deckhand._failures import (
    PREDEFINED_SCENARIOS,
    FailureInjector,
    FailureScenario,
    FailureType,
)
from deckhand._fleet import FLEET_SCENARIOS, Fleet, FleetStatistics
from deckhand._health import HealthReporter, HeartbeatPayload, build_will_config
from deckhand._logging import JsonFormatter, configure_logging
from deckhand._messages import (
    AckMessage,
    ClaimMessage,
    CommandMessage,
    DeviceType,
    ProvisionPayload,
    RejectMessage,
    RejectReason,
    StatusMessage,
    TelemetryMessage,
)
from deckhand._mqtt import (
    LoopbackMqttClient,
    MessageCallback,
    MockMqttClient,
    MqttClient,
    MqttLifecycle,
    MqttMessageHandler,
    MqttPort,
    NullMqttClient,
    WillConfig,
)
from deckhand._router import TopicRouter
from deckhand._service import FleetPlan, ProvisioningService
from deckhand._settings import (
    LoggingSettings,
    MqttSettings,
    ProvisioningSettings,
    Settings,
    SimulatorSettings,
)
from deckhand._simulator import (
    DeviceSimulator,
    DeviceStatus,
    ProvisioningTicket,
    SimulatedDevice,
)
from deckhand._store import (
    AuditAction,
    AuditSink,
    CredentialRecord,
    CredentialStore,
    InMemoryAuditLog,
    InMemoryCredentialStore,
    InMemoryTokenStore,
    ProvisionLogEntry,
    ProvisionToken,
    TokenStatus,
    TokenStore,
    TopicGrant,
)
from deckhand._topics import DeviceTopics

try:
    __version__ = version("deckhand")
except PackageNotFoundError:
    # Editable installs without metadata
    __version__ = "0.0.0+unknown"

__all__ = [
    # Version
    "__version__",
    # Coordinator
    "ALLOWED_TRANSITIONS",
    "HistoryItem",
    "HistoryPage",
    "IssuedToken",
    "ProvisioningCoordinator",
    # Credentials
    "CredentialIssuer",
    "IssuedCredentials",
    # Store
    "AuditAction",
    "AuditSink",
    "CredentialRecord",
    "CredentialStore",
    "InMemoryAuditLog",
    "InMemoryCredentialStore",
    "InMemoryTokenStore",
    "ProvisionLogEntry",
    "ProvisionToken",
    "TokenStatus",
    "TokenStore",
    "TopicGrant",
    # Simulators
    "ButtonSimulator",
    "DeviceSimulator",
    "DeviceStatus",
    "Fleet",
    "FleetStatistics",
    "ProvisioningTicket",
    "RepeaterSimulator",
    "SimulatedDevice",
    "WearableSimulator",
    "create_simulator",
    # Failures
    "FLEET_SCENARIOS",
    "PREDEFINED_SCENARIOS",
    "FailureInjector",
    "FailureScenario",
    "FailureType",
    # Messages
    "AckMessage",
    "ClaimMessage",
    "CommandMessage",
    "DeviceType",
    "ProvisionPayload",
    "RejectMessage",
    "RejectReason",
    "StatusMessage",
    "TelemetryMessage",
    # Topics
    "DeviceTopics",
    "TopicRouter",
    # Service
    "FleetPlan",
    "ProvisioningService",
    # Clock
    "ClockPort",
    "SystemClock",
    "WallClock",
    "utc_now",
    # Logging
    "JsonFormatter",
    "configure_logging",
    # MQTT
    "LoopbackMqttClient",
    "MessageCallback",
    "MockMqttClient",
    "MqttClient",
    "MqttLifecycle",
    "MqttMessageHandler",
    "MqttPort",
    "NullMqttClient",
    "WillConfig",
    # Errors
    "AlreadyClaimedError",
    "ClaimTimeoutError",
    "CommandRejectedError",
    "DeckhandError",
    "ErrorPayload",
    "ErrorPublisher",
    "ExpiredError",
    "InvalidPayloadError",
    "InvalidStateError",
    "NotFoundError",
    "PersistenceError",
    "ProvisioningRejectedError",
    "StaleVersionError",
    "TransientTransportError",
    "build_error_payload",
    # Health
    "HealthReporter",
    "HeartbeatPayload",
    "build_will_config",
    # Settings
    "LoggingSettings",
    "MqttSettings",
    "ProvisioningSettings",
    "Settings",
    "SimulatorSettings",
]
