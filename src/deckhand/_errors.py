"""Error taxonomy and structured error publication.

Every failure the provisioning core can report derives from
:class:`DeckhandError`.  The ``retryable`` flag lets callers tell
"retry won't help" (state and validation errors) apart from "retry may
help" (transport and persistence errors) without matching on concrete
classes::

    DeckhandError
    ├── NotFoundError              retryable=False
    ├── InvalidStateError          retryable=False
    ├── ExpiredError               retryable=False
    ├── AlreadyClaimedError        retryable=False
    ├── InvalidPayloadError        retryable=False
    ├── CommandRejectedError       retryable=False
    ├── ProvisioningRejectedError  retryable=False
    ├── TransientTransportError    retryable=True
    │   └── ClaimTimeoutError
    └── PersistenceError           retryable=True
        └── StaleVersionError

Errors that cannot be answered on a reply topic are published as
structured JSON to ``{namespace}/error``::

    {
        "error_type": "invalid_payload",
        "message": "Human-readable error description",
        "device": "BUT-2026-1A2B3C4D" | null,
        "timestamp": "2026-10-19T12:34:56+00:00",
        "details": {}
    }

Publication is not retained, uses QoS 1 and is fire-and-forget:
failures are logged, never propagated.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from deckhand._mqtt import MqttPort

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Exception hierarchy
# ---------------------------------------------------------------------------


class DeckhandError(Exception):
    """Base class for all provisioning and simulation errors."""

    retryable: bool = False
    error_type: str = "error"


class NotFoundError(DeckhandError):
    """Unknown token string or token id."""

    error_type = "not_found"


class InvalidStateError(DeckhandError):
    """Operation is illegal for the token's current status.

    Args:
        status: The blocking status, echoed in the message.
        operation: Name of the rejected operation.
    """

    error_type = "invalid_state"

    def __init__(self, status: str, operation: str = "operation") -> None:
        self.status = status
        self.operation = operation
        super().__init__(f"Cannot {operation} token with status: {status}")


class ExpiredError(DeckhandError):
    """Claim against a PENDING token whose deadline has passed."""

    error_type = "expired"


class AlreadyClaimedError(DeckhandError):
    """Claim against a token that is no longer PENDING."""

    error_type = "already_claimed"


class InvalidPayloadError(DeckhandError):
    """Malformed request or message payload."""

    error_type = "invalid_payload"


class CommandRejectedError(DeckhandError):
    """A simulator command was understood but cannot be carried out."""

    error_type = "command_rejected"


class ProvisioningRejectedError(DeckhandError):
    """A simulator's claim was answered with a reject message."""

    error_type = "provisioning_rejected"

    def __init__(self, token: str, reason: str) -> None:
        self.token = token
        self.reason = reason
        super().__init__(f"Provisioning claim for token {token[:8]}… rejected: {reason}")

    def to_exception(self) -> DeckhandError:
        """Map the wire reason back to the typed coordinator error."""
        exc_type = _REASON_TO_ERROR.get(self.reason, InvalidPayloadError)
        return exc_type(str(self))


class TransientTransportError(DeckhandError):
    """Publish or subscribe failed; the operation may succeed later."""

    retryable = True
    error_type = "transport_error"


class ClaimTimeoutError(TransientTransportError):
    """No ack or reject arrived on the reply topic in time."""

    error_type = "claim_timeout"


class PersistenceError(DeckhandError):
    """The token store or audit sink is unavailable."""

    retryable = True
    error_type = "persistence_error"


class StaleVersionError(PersistenceError):
    """Optimistic-concurrency check failed: the row changed since read."""

    error_type = "stale_version"


_REASON_TO_ERROR: dict[str, type[DeckhandError]] = {
    "not_found": NotFoundError,
    "expired": ExpiredError,
    "already_claimed": AlreadyClaimedError,
    "invalid_payload": InvalidPayloadError,
}

# ---------------------------------------------------------------------------
# Value objects
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class ErrorPayload:
    """Immutable structured error payload ready for publication."""

    error_type: str
    message: str
    device: str | None
    timestamp: str
    details: dict[str, object] = field(default_factory=dict)

    def to_json(self) -> str:
        """Serialise to a JSON string."""
        return json.dumps(asdict(self), default=str)


# ---------------------------------------------------------------------------
# Payload builder
# ---------------------------------------------------------------------------


def error_type_for(error: BaseException) -> str:
    """Return the machine-readable type string for *error*.

    Deckhand errors carry their own ``error_type``; anything else
    is reported as ``"error"``.
    """
    if isinstance(error, DeckhandError):
        return error.error_type
    return "error"


def build_error_payload(
    error: Exception,
    *,
    device: str | None = None,
    details: dict[str, object] | None = None,
    clock: Callable[[], datetime] | None = None,
) -> ErrorPayload:
    """Convert an exception into a structured :class:`ErrorPayload`.

    Args:
        error: The exception to convert.
        device: Optional device id to include in the payload.
        details: Optional extra context.  ``retryable`` is always added.
        clock: Optional callable returning an aware ``datetime``.
            Defaults to ``datetime.now(UTC)``.
    """
    now = clock() if clock is not None else datetime.now(UTC)
    merged: dict[str, object] = {"retryable": getattr(error, "retryable", False)}
    merged.update(details or {})
    return ErrorPayload(
        error_type=error_type_for(error),
        message=str(error),
        device=device,
        timestamp=now.isoformat(),
        details=merged,
    )


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


@dataclass
class ErrorPublisher:
    """Publishes structured error payloads to ``{namespace}/error``.

    Used for failures that have no reply topic to answer on, for
    example a claim message so malformed that its ``replyTopic``
    cannot be recovered.

    Args:
        mqtt: Transport used for publishing.
        namespace: Root topic namespace (e.g. ``"obedio"``).
        clock: Optional wall-clock callable for deterministic tests.
    """

    mqtt: MqttPort
    namespace: str
    clock: Callable[[], datetime] | None = field(default=None, repr=False)

    @property
    def topic(self) -> str:
        """The global error topic."""
        return f"{self.namespace}/error"

    async def publish(
        self,
        error: Exception,
        *,
        device: str | None = None,
        details: dict[str, object] | None = None,
    ) -> None:
        """Build an error payload and publish it, never raising."""
        try:
            payload = build_error_payload(
                error,
                device=device,
                details=details,
                clock=self.clock,
            )
            payload_json = payload.to_json()
        except Exception:
            logger.exception("Failed to build error payload for %r", error)
            return

        logger.warning(
            "Publishing error: %s (type=%s, device=%s)",
            payload.message,
            payload.error_type,
            device,
        )
        try:
            await self.mqtt.publish(self.topic, payload_json, retain=False, qos=1)
        except Exception:
            logger.exception("Failed to publish error to %s", self.topic)
