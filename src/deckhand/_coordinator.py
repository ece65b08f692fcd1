"""Provisioning coordinator: the token state machine.

Token lifecycle::

    PENDING ──claim──▶ CLAIMED ──first telemetry──▶ ACTIVE
       │                  │
       ├──▶ EXPIRED ◀─────┤            (any non-DELETED) ──▶ DELETED
       └──▶ CANCELLED ◀───┘

Every status change checks :data:`ALLOWED_TRANSITIONS`, persists the new
row with a version check and appends one audit entry.  A claim also
stores the device credentials; if either of those later writes fails
the row is put back to PENDING and the verifier removed.

There is no background timer: PENDING tokens past their deadline are
expired lazily by whichever read or claim sees them first.

Claims for the same token are serialised by a per-token
:class:`asyncio.Lock`, and claims naming a device id also hold a lock on
that id so two tokens cannot hand out the same one.  The store's version
check backs this up against writers outside this process.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import secrets
from collections.abc import AsyncIterator, Iterator
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta

from deckhand._clock import WallClock, utc_now
from deckhand._credentials import DEFAULT_BCRYPT_ROUNDS, CredentialIssuer
from deckhand._errors import (
    DeckhandError,
    ErrorPublisher,
    InvalidPayloadError,
    InvalidStateError,
    NotFoundError,
    PersistenceError,
    StaleVersionError,
    TransientTransportError,
)
from deckhand._messages import (
    AckMessage,
    ClaimMessage,
    DomainEvent,
    ProvisionPayload,
    RejectMessage,
    RejectReason,
    TopicsModel,
    new_device_id,
    parse_message,
    salvage_claim_fields,
)
from deckhand._mqtt import MqttMessageHandler, MqttPort
from deckhand._settings import ProvisioningSettings
from deckhand._store import (
    AuditAction,
    AuditSink,
    InMemoryAuditLog,
    InMemoryCredentialStore,
    InMemoryTokenStore,
    ProvisionLogEntry,
    ProvisionToken,
    TokenStatus,
    TokenStore,
)
from deckhand._topics import (
    DeviceAddress,
    DeviceTopics,
    device_wildcard,
    parse_device_topic,
    provision_events_topic,
    provision_request_topic,
)

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[TokenStatus, frozenset[TokenStatus]] = {
    TokenStatus.PENDING: frozenset(
        {TokenStatus.CLAIMED, TokenStatus.EXPIRED, TokenStatus.CANCELLED, TokenStatus.DELETED},
    ),
    TokenStatus.CLAIMED: frozenset(
        {TokenStatus.ACTIVE, TokenStatus.EXPIRED, TokenStatus.CANCELLED, TokenStatus.DELETED},
    ),
    TokenStatus.ACTIVE: frozenset({TokenStatus.DELETED}),
    TokenStatus.EXPIRED: frozenset({TokenStatus.DELETED}),
    TokenStatus.CANCELLED: frozenset({TokenStatus.DELETED}),
    TokenStatus.DELETED: frozenset(),
}

RECENT_LOG_COUNT = 3
_MAX_DEVICE_ID_ATTEMPTS = 5


def check_transition(current: TokenStatus, target: TokenStatus, operation: str) -> None:
    """Raise :class:`InvalidStateError` unless *current* → *target* is legal."""
    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidStateError(current, operation)


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class IssuedToken:
    """What an operator gets back from :meth:`ProvisioningCoordinator.issue`."""

    token: str
    qr_payload: str
    token_id: int
    expires_at: datetime


@dataclass(frozen=True, slots=True)
class HistoryItem:
    """A token together with its most recent audit entries (newest first)."""

    token: ProvisionToken
    recent_logs: tuple[ProvisionLogEntry, ...]


@dataclass(frozen=True, slots=True)
class HistoryPage:
    """One page of provisioning history."""

    items: tuple[HistoryItem, ...]
    total: int
    limit: int
    offset: int


# ---------------------------------------------------------------------------
# Per-token locking
# ---------------------------------------------------------------------------


@dataclass
class _LockEntry:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class _KeyedLock:
    """One :class:`asyncio.Lock` per key, dropped when nobody holds or waits."""

    def __init__(self) -> None:
        self._entries: dict[str, _LockEntry] = {}

    @contextlib.asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        entry = self._entries.get(key)
        if entry is None:
            entry = self._entries[key] = _LockEntry()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                del self._entries[key]

    def __len__(self) -> int:
        return len(self._entries)


@contextlib.contextmanager
def _persistence(operation: str) -> Iterator[None]:
    """Wrap unexpected store failures into :class:`PersistenceError`."""
    try:
        yield
    except DeckhandError:
        raise
    except Exception as exc:
        msg = f"{operation} failed: {exc}"
        raise PersistenceError(msg) from exc


# ---------------------------------------------------------------------------
# Coordinator
# ---------------------------------------------------------------------------


class ProvisioningCoordinator:
    """Issues provisioning tokens and answers device claims.

    Args:
        mqtt: Transport for replies, domain events and subscriptions.
        store: Token persistence.
        audit: Append-only provisioning log.
        credentials: Issuer used when a claim succeeds.
        settings: Namespace, default site, TTL and event toggle.
        mqtt_host: Broker host advertised in QR payloads.
        mqtt_port: Broker port advertised in QR payloads.
        clock: Wall clock for deadlines and timestamps.
        errors: Where failures without a reply topic are reported.
            Defaults to an :class:`ErrorPublisher` on *mqtt*.
    """

    def __init__(
        self,
        *,
        mqtt: MqttPort,
        store: TokenStore,
        audit: AuditSink,
        credentials: CredentialIssuer,
        settings: ProvisioningSettings | None = None,
        mqtt_host: str = "localhost",
        mqtt_port: int = 1883,
        clock: WallClock = utc_now,
        errors: ErrorPublisher | None = None,
    ) -> None:
        self._mqtt = mqtt
        self._store = store
        self._audit = audit
        self._credentials = credentials
        self._settings = settings or ProvisioningSettings()
        self._mqtt_host = mqtt_host
        self._mqtt_port = mqtt_port
        self._clock = clock
        self._errors = errors or ErrorPublisher(
            mqtt=mqtt,
            namespace=self._settings.namespace,
            clock=clock,
        )
        self._locks = _KeyedLock()
        self._active_devices: set[str] = set()
        self._attached = False

    @classmethod
    def in_memory(
        cls,
        *,
        mqtt: MqttPort,
        settings: ProvisioningSettings | None = None,
        mqtt_host: str = "localhost",
        mqtt_port: int = 1883,
        clock: WallClock = utc_now,
        bcrypt_rounds: int | None = None,
    ) -> ProvisioningCoordinator:
        """Build a coordinator backed by the in-memory adapters."""
        settings = settings or ProvisioningSettings()
        issuer = CredentialIssuer(
            store=InMemoryCredentialStore(),
            namespace=settings.namespace,
            password_length=settings.password_length,
            rounds=bcrypt_rounds or DEFAULT_BCRYPT_ROUNDS,
            clock=clock,
        )
        return cls(
            mqtt=mqtt,
            store=InMemoryTokenStore(),
            audit=InMemoryAuditLog(),
            credentials=issuer,
            settings=settings,
            mqtt_host=mqtt_host,
            mqtt_port=mqtt_port,
            clock=clock,
        )

    # -- properties ---------------------------------------------------------

    @property
    def namespace(self) -> str:
        return self._settings.namespace

    @property
    def request_topic(self) -> str:
        """Shared topic every claim is published to."""
        return provision_request_topic(self.namespace)

    @property
    def store(self) -> TokenStore:
        return self._store

    @property
    def audit(self) -> AuditSink:
        return self._audit

    # -- operator operations ------------------------------------------------

    async def issue(
        self,
        room: str,
        ttl: float | timedelta | None = None,
        *,
        site: str | None = None,
        created_by: str | None = None,
    ) -> IssuedToken:
        """Create a PENDING token for *room* and its QR payload.

        Args:
            room: Room the device will be installed in.
            ttl: Lifetime in seconds or as a ``timedelta``.  Defaults to
                ``settings.token_ttl``.  Zero yields a token that is
                already expired.
            site: Site segment; defaults to ``settings.default_site``.
            created_by: Operator id recorded on the token.

        Raises:
            InvalidPayloadError: For a negative TTL or a room/site that
                cannot be used as a topic segment.
        """
        if ttl is None:
            ttl = self._settings.token_ttl
        lifetime = ttl if isinstance(ttl, timedelta) else timedelta(seconds=ttl)
        if lifetime < timedelta(0):
            msg = f"ttl must not be negative, got {lifetime.total_seconds()}s"
            raise InvalidPayloadError(msg)

        site = site or self._settings.default_site
        token = secrets.token_hex(16)
        topics = DeviceTopics.for_device(self.namespace, site, room, f"pending-{token[:8]}")
        qr_payload = ProvisionPayload(
            token=token,
            mqtt_host=self._mqtt_host,
            mqtt_port=self._mqtt_port,
            topics=TopicsModel.from_device_topics(topics),
        ).to_json()

        now = self._clock()
        draft = ProvisionToken(
            id=0,
            token=token,
            room=room,
            site=site,
            status=TokenStatus.PENDING,
            expires_at=now + lifetime,
            created_at=now,
            updated_at=now,
            qr_payload=qr_payload,
            created_by=created_by,
        )
        with _persistence("Creating token"):
            row = await self._store.create(draft)
        await self._append(
            row,
            AuditAction.CREATE,
            f"Token created for room {room}",
            metadata={
                "site": site,
                "expiresAt": row.expires_at.isoformat(),
                "createdBy": created_by,
            },
        )
        logger.info(
            "Issued provisioning token for %s/%s (expires %s)",
            site,
            room,
            row.expires_at.isoformat(),
            extra={"token_id": row.id, "room": room},
        )
        await self._emit("token_issued", row)
        return IssuedToken(
            token=token,
            qr_payload=qr_payload,
            token_id=row.id,
            expires_at=row.expires_at,
        )

    async def cancel(self, token_id: int) -> ProvisionToken:
        """Cancel a PENDING or CLAIMED token.

        Raises:
            NotFoundError: Unknown *token_id*.
            InvalidStateError: The token is in any other status.  A
                PENDING token past its deadline is expired first.
        """
        row = await self._require(token_id)
        async with self._locks.hold(row.token):
            row = await self._require(token_id)
            row = await self._expire_if_due(row)
            row = await self._transition(
                row,
                TokenStatus.CANCELLED,
                operation="cancel",
                action=AuditAction.CANCEL,
                message="Token cancelled",
            )
        logger.info("Cancelled token", extra={"token_id": row.id, "room": row.room})
        await self._emit("token_cancelled", row)
        return row

    async def soft_delete(self, token_id: int, requester_id: str) -> ProvisionToken:
        """Mark a token DELETED, keeping the row and its audit trail.

        Raises:
            NotFoundError: Unknown *token_id*.
            InvalidStateError: The token is already DELETED.
        """
        row = await self._require(token_id)
        async with self._locks.hold(row.token):
            row = await self._require(token_id)
            row = await self._transition(
                row,
                TokenStatus.DELETED,
                operation="delete",
                action=AuditAction.DELETE,
                message=f"Token deleted by {requester_id}",
                metadata={"requestedBy": requester_id},
            )
        logger.info(
            "Soft-deleted token (requested by %s)",
            requester_id,
            extra={"token_id": row.id, "room": row.room},
        )
        await self._emit("token_deleted", row)
        return row

    async def expire_sweep(self, now: datetime | None = None) -> list[ProvisionToken]:
        """Persist EXPIRED for every PENDING token past its deadline."""
        now = now or self._clock()
        with _persistence("Listing tokens"):
            rows = await self._store.list()
        expired: list[ProvisionToken] = []
        for row in rows:
            if not row.is_past_deadline(now):
                continue
            fresh = await self._expire_if_due(row, now=now)
            if fresh.status is TokenStatus.EXPIRED:
                expired.append(fresh)
        return expired

    async def get(self, token_id: int) -> ProvisionToken:
        """Return one token, applying lazy expiry.

        Raises:
            NotFoundError: Unknown *token_id*.
        """
        return await self._expire_if_due(await self._require(token_id))

    async def logs(self, token_id: int) -> list[ProvisionLogEntry]:
        """Return the full audit trail of one token, oldest first.

        Raises:
            NotFoundError: Unknown *token_id*.
        """
        await self._require(token_id)
        with _persistence("Reading audit log"):
            return await self._audit.list_by_token(token_id)

    async def list_history(
        self,
        *,
        status: TokenStatus | None = None,
        include_deleted: bool = False,
        limit: int = 50,
        offset: int = 0,
    ) -> HistoryPage:
        """Return a page of tokens, newest first, with recent log entries.

        The status filter and the deleted filter both apply: asking for
        ``status=DELETED`` therefore needs ``include_deleted=True``.

        Raises:
            InvalidPayloadError: For a non-positive *limit* or a
                negative *offset*.
        """
        if limit < 1 or offset < 0:
            msg = f"Invalid page: limit={limit}, offset={offset}"
            raise InvalidPayloadError(msg)

        await self.expire_sweep()
        with _persistence("Listing tokens"):
            rows = await self._store.list()

        matching = [
            row
            for row in rows
            if (status is None or row.status is status)
            and (include_deleted or row.status is not TokenStatus.DELETED)
        ]
        matching.sort(key=lambda row: (row.created_at, row.id), reverse=True)

        items: list[HistoryItem] = []
        for row in matching[offset : offset + limit]:
            with _persistence("Reading audit log"):
                entries = await self._audit.list_by_token(row.id)
            recent = tuple(reversed(entries[-RECENT_LOG_COUNT:]))
            items.append(HistoryItem(token=row, recent_logs=recent))

        return HistoryPage(items=tuple(items), total=len(matching), limit=limit, offset=offset)

    async def verify_device_password(self, client_id: str, password: str) -> bool:
        """Check a device password against its stored verifier."""
        return await self._credentials.verify(client_id, password)

    # -- device-facing operations ---------------------------------------------

    async def claim(self, message: ClaimMessage) -> AckMessage | RejectMessage:
        """Handle one claim and publish the reply on its ``replyTopic``.

        Exactly one claim per token is ever acknowledged.  Every other
        claim, concurrent or later, is rejected without changing the
        token (apart from lazy expiry).
        """
        async with contextlib.AsyncExitStack() as stack:
            await stack.enter_async_context(self._locks.hold(message.token))
            if message.device_id is not None:
                # Always token first, then device id.
                await stack.enter_async_context(self._locks.hold(f"device:{message.device_id}"))
            reply, row = await self._decide_claim(message)
        await self._reply(message.reply_topic, reply)
        if isinstance(reply, AckMessage) and row is not None:
            await self._emit("device_claimed", row)
        return reply

    async def confirm_active(self, token: str) -> ProvisionToken:
        """Move a CLAIMED token to ACTIVE.

        Raises:
            NotFoundError: Unknown token string.
            InvalidStateError: The token is not CLAIMED.
        """
        async with self._locks.hold(token):
            with _persistence("Reading token"):
                row = await self._store.find_by_token(token)
            if row is None:
                msg = f"Unknown token {token[:8]}…"
                raise NotFoundError(msg)
            row = await self._transition(
                row,
                TokenStatus.ACTIVE,
                operation="activate",
                action=AuditAction.ACTIVATE,
                message="First telemetry received",
            )
        if row.device_id is not None:
            self._active_devices.add(row.device_id)
        logger.info(
            "Device is active",
            extra={"token_id": row.id, "device_id": row.device_id, "room": row.room},
        )
        await self._emit("device_activated", row)
        return row

    # -- transport wiring ---------------------------------------------------

    async def attach(self) -> None:
        """Register for inbound messages and subscribe to claim/telemetry topics."""
        if self._attached:
            return
        if isinstance(self._mqtt, MqttMessageHandler):
            self._mqtt.on_message(self.handle_message)
        self._attached = True
        await self._mqtt.subscribe(self.request_topic)
        await self._mqtt.subscribe(device_wildcard(self.namespace, "telemetry"))
        logger.info("Listening for claims on %s", self.request_topic)

    async def handle_message(self, topic: str, payload: str) -> None:
        """Demultiplex one inbound message."""
        if topic == self.request_topic:
            await self._handle_claim(payload)
            return
        address = parse_device_topic(self.namespace, topic)
        if address is not None and address.channel == "telemetry":
            await self._observe_telemetry(address)

    # -- internals: claims --------------------------------------------------

    async def _handle_claim(self, payload: str) -> None:
        try:
            message = parse_message(ClaimMessage, payload)
        except InvalidPayloadError as exc:
            token, reply_topic = salvage_claim_fields(payload)
            logger.warning("Malformed claim: %s", exc)
            if reply_topic is not None:
                await self._reply(
                    reply_topic,
                    RejectMessage(token=token, reason=RejectReason.INVALID_PAYLOAD),
                )
            else:
                await self._errors.publish(exc, details={"topic": self.request_topic})
            return

        try:
            await self.claim(message)
        except PersistenceError as exc:
            logger.exception("Claim could not be processed")
            await self._errors.publish(exc, details={"token": message.token[:8]})

    async def _decide_claim(
        self,
        message: ClaimMessage,
    ) -> tuple[AckMessage | RejectMessage, ProvisionToken | None]:
        with _persistence("Reading token"):
            row = await self._store.find_by_token(message.token)
        if row is None:
            logger.warning(
                "Claim for unknown token %s… from %s",
                message.token[:8],
                message.ip_address,
            )
            return RejectMessage(token=message.token, reason=RejectReason.NOT_FOUND), None

        row = await self._expire_if_due(row)
        reason: RejectReason | None = None
        if row.status is TokenStatus.EXPIRED:
            reason = RejectReason.EXPIRED
        elif row.status is not TokenStatus.PENDING:
            reason = RejectReason.ALREADY_CLAIMED
        elif message.device_id is not None:
            with _persistence("Reading token"):
                holder = await self._store.find_by_device_id(message.device_id)
            if holder is not None:
                reason = RejectReason.INVALID_PAYLOAD

        if reason is not None:
            await self._append(
                row,
                AuditAction.REJECT,
                f"Claim rejected: {reason}",
                metadata={"reason": str(reason), "deviceType": str(message.device_type)},
                device_id=message.device_id,
                ip_address=message.ip_address,
            )
            logger.info(
                "Rejected claim (%s)",
                reason,
                extra={"token_id": row.id, "room": row.room},
            )
            return RejectMessage(token=message.token, reason=reason), row

        device_id = message.device_id or await self._unused_device_id(message)
        topics = DeviceTopics.for_device(self.namespace, row.site, row.room, device_id)
        issued = self._credentials.issue(device_id, message.device_type, topics=topics)

        check_transition(row.status, TokenStatus.CLAIMED, "claim")
        now = self._clock()
        claimed = replace(
            row,
            status=TokenStatus.CLAIMED,
            device_id=device_id,
            used_at=now,
            updated_at=now,
        )
        with _persistence(f"Updating token {row.id}"):
            saved = await self._store.update(claimed, expected_version=row.version)
        try:
            await self._credentials.persist(issued, device_id)
            await self._append(
                saved,
                AuditAction.CLAIM,
                f"Claimed by {device_id}",
                metadata={
                    "deviceType": str(message.device_type),
                    "battery": message.battery,
                    "signal": message.signal,
                    "clientId": issued.client_id,
                },
                device_id=device_id,
                ip_address=message.ip_address,
            )
        except PersistenceError:
            await self._undo_claim(saved, row, issued.client_id)
            raise
        row = saved
        logger.info(
            "Token claimed by %s device",
            message.device_type,
            extra={"token_id": row.id, "device_id": device_id, "room": row.room},
        )
        ack = AckMessage(
            token=message.token,
            device_id=device_id,
            client_id=issued.client_id,
            username=issued.username,
            password=issued.password,
            topics=TopicsModel.from_device_topics(topics),
        )
        return ack, row

    async def _unused_device_id(self, message: ClaimMessage) -> str:
        for _ in range(_MAX_DEVICE_ID_ATTEMPTS):
            candidate = new_device_id(message.device_type, self._clock())
            with _persistence("Reading token"):
                if await self._store.find_by_device_id(candidate) is None:
                    return candidate
        msg = "Could not allocate an unused device id"
        raise PersistenceError(msg)

    async def _undo_claim(
        self,
        saved: ProvisionToken,
        previous: ProvisionToken,
        client_id: str,
    ) -> None:
        """Put *previous* back and drop the verifier after a half-done claim.

        Failures here are logged; the caller re-raises the original error.
        """
        restored = replace(previous, updated_at=self._clock())
        try:
            with _persistence(f"Restoring token {saved.id}"):
                await self._store.update(restored, expected_version=saved.version)
            await self._credentials.revoke(client_id)
        except PersistenceError:
            logger.exception(
                "Could not roll back claim; token may need cancelling",
                extra={"token_id": saved.id, "device_id": saved.device_id},
            )
        else:
            logger.warning(
                "Claim rolled back after a storage failure",
                extra={"token_id": saved.id, "device_id": saved.device_id},
            )

    async def _observe_telemetry(self, address: DeviceAddress) -> None:
        if address.device_id in self._active_devices:
            return
        with _persistence("Reading token"):
            row = await self._store.find_by_device_id(address.device_id)
        if row is None:
            return
        if row.status is TokenStatus.ACTIVE:
            self._active_devices.add(address.device_id)
            return
        if row.status is not TokenStatus.CLAIMED:
            return
        if (row.site, row.room) != (address.site, address.room):
            logger.warning(
                "Telemetry from %s on a topic it was not assigned",
                address.device_id,
                extra={"token_id": row.id, "device_id": address.device_id},
            )
            return
        try:
            await self.confirm_active(row.token)
        except InvalidStateError:
            logger.debug("Token %d already left CLAIMED", row.id)

    # -- internals: state machine ---------------------------------------------

    async def _require(self, token_id: int) -> ProvisionToken:
        with _persistence("Reading token"):
            row = await self._store.get(token_id)
        if row is None:
            msg = f"Token {token_id} not found"
            raise NotFoundError(msg)
        return row

    async def _expire_if_due(
        self,
        row: ProvisionToken,
        *,
        now: datetime | None = None,
    ) -> ProvisionToken:
        """Persist EXPIRED if *row* is PENDING and past its deadline.

        Only the first observer records the expiry; a concurrent
        observer loses the version check and re-reads the expired row.
        """
        now = now or self._clock()
        if not row.is_past_deadline(now):
            return row
        try:
            expired = await self._transition(
                row,
                TokenStatus.EXPIRED,
                operation="expire",
                action=AuditAction.EXPIRE,
                message="Token expired",
                metadata={"expiresAt": row.expires_at.isoformat()},
            )
        except StaleVersionError:
            return await self._require(row.id)
        logger.info("Token expired", extra={"token_id": expired.id, "room": expired.room})
        await self._emit("token_expired", expired)
        return expired

    async def _transition(
        self,
        row: ProvisionToken,
        target: TokenStatus,
        *,
        operation: str,
        action: AuditAction,
        message: str,
        metadata: dict[str, object] | None = None,
    ) -> ProvisionToken:
        check_transition(row.status, target, operation)
        with _persistence(f"Updating token {row.id}"):
            saved = await self._store.update(
                replace(row, status=target, updated_at=self._clock()),
                expected_version=row.version,
            )
        if row.status is TokenStatus.ACTIVE and row.device_id is not None:
            self._active_devices.discard(row.device_id)
        await self._append(
            saved,
            action,
            message,
            metadata=metadata,
            device_id=saved.device_id,
        )
        return saved

    async def _append(
        self,
        row: ProvisionToken,
        action: AuditAction,
        message: str,
        *,
        metadata: dict[str, object] | None = None,
        device_id: str | None = None,
        ip_address: str | None = None,
    ) -> None:
        entry = ProvisionLogEntry(
            token_id=row.id,
            action=action,
            message=message,
            timestamp=self._clock(),
            metadata=dict(metadata or {}),
            device_id=device_id,
            ip_address=ip_address,
        )
        with _persistence("Appending audit entry"):
            await self._audit.append(entry)

    # -- internals: publishing ------------------------------------------------

    async def _reply(self, topic: str, reply: AckMessage | RejectMessage) -> None:
        try:
            await self._mqtt.publish(topic, reply.to_json(), retain=False, qos=1)
        except TransientTransportError:
            logger.exception("Failed to publish claim %s to %s", reply.status, topic)
            if isinstance(reply, AckMessage):
                logger.warning(
                    "Token %s… stays CLAIMED; cancel and reissue it to provision %s again",
                    reply.token[:8],
                    reply.device_id,
                )

    async def _emit(self, event: str, row: ProvisionToken) -> None:
        if not self._settings.publish_events:
            return
        payload = DomainEvent(
            event=event,  # type: ignore[arg-type]
            token_id=row.id,
            room=row.room,
            device_id=row.device_id,
            status=str(row.status),
            timestamp=self._clock(),
        )
        topic = provision_events_topic(self.namespace)
        try:
            await self._mqtt.publish(topic, payload.to_json(), retain=False, qos=1)
        except Exception:
            logger.exception("Failed to publish %s event to %s", event, topic)
