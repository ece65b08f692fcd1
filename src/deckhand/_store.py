"""Provisioning data model and persistence ports.

The relational store behind the dashboard is an external collaborator.
Deckhand talks to it through three small async ports:

* :class:`TokenStore` — provisioning tokens with optimistic concurrency
  (every row carries a ``version``; :meth:`TokenStore.update` fails with
  :class:`~deckhand._errors.StaleVersionError` if it moved on).
* :class:`AuditSink` — append-only provisioning log.
* :class:`CredentialStore` — password verifiers for issued credentials.

The in-memory adapters below back tests, ``--dry-run`` and single
process deployments.  They never await between read and write, so each
call is atomic on the event loop.
"""

from __future__ import annotations

import itertools
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import StrEnum
from typing import Literal, Protocol, runtime_checkable

from deckhand._errors import NotFoundError, StaleVersionError

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class TokenStatus(StrEnum):
    """Lifecycle states of a provisioning token."""

    PENDING = "PENDING"
    CLAIMED = "CLAIMED"
    ACTIVE = "ACTIVE"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"
    DELETED = "DELETED"


class AuditAction(StrEnum):
    """Kinds of provisioning log entries."""

    CREATE = "CREATE"
    CLAIM = "CLAIM"
    REJECT = "REJECT"
    ACTIVATE = "ACTIVATE"
    EXPIRE = "EXPIRE"
    CANCEL = "CANCEL"
    DELETE = "DELETE"


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class ProvisionToken:
    """One provisioning token row.

    Rows are immutable; a transition produces a new value via
    :func:`dataclasses.replace` and is persisted with
    :meth:`TokenStore.update`.  ``used_at`` and ``device_id`` are set
    together, when the token is claimed.
    """

    id: int
    token: str
    room: str
    site: str
    status: TokenStatus
    expires_at: datetime
    created_at: datetime
    updated_at: datetime
    qr_payload: str
    used_at: datetime | None = None
    device_id: str | None = None
    created_by: str | None = None
    version: int = 0

    def is_past_deadline(self, now: datetime) -> bool:
        """Whether a PENDING token is due for lazy expiry at *now*."""
        return self.status is TokenStatus.PENDING and now >= self.expires_at


@dataclass(frozen=True, slots=True)
class ProvisionLogEntry:
    """One append-only audit entry."""

    token_id: int
    action: AuditAction
    message: str
    timestamp: datetime
    metadata: dict[str, object] = field(default_factory=dict)
    device_id: str | None = None
    ip_address: str | None = None


@dataclass(frozen=True, slots=True)
class TopicGrant:
    """Broker ACL entry handed out with a set of credentials."""

    topic: str
    access: Literal["publish", "subscribe"]


@dataclass(frozen=True, slots=True)
class CredentialRecord:
    """Persisted side of issued credentials: the verifier, never the password."""

    client_id: str
    username: str
    device_id: str
    password_hash: str = field(repr=False)
    topic_grants: tuple[TopicGrant, ...] = ()
    created_at: datetime | None = None


# ---------------------------------------------------------------------------
# Ports
# ---------------------------------------------------------------------------


@runtime_checkable
class TokenStore(Protocol):
    """Persistence port for provisioning tokens."""

    async def create(self, token: ProvisionToken) -> ProvisionToken:
        """Insert *token*; the store assigns ``id`` and ``version``."""
        ...

    async def get(self, token_id: int) -> ProvisionToken | None: ...

    async def find_by_token(self, token: str) -> ProvisionToken | None: ...

    async def find_by_device_id(self, device_id: str) -> ProvisionToken | None: ...

    async def update(
        self,
        token: ProvisionToken,
        *,
        expected_version: int,
    ) -> ProvisionToken:
        """Replace the row if its version still equals *expected_version*.

        Raises:
            StaleVersionError: If the row changed since it was read.
            NotFoundError: If the row does not exist.
        """
        ...

    async def list(self) -> list[ProvisionToken]: ...


@runtime_checkable
class AuditSink(Protocol):
    """Append-only provisioning log."""

    async def append(self, entry: ProvisionLogEntry) -> None: ...

    async def list_by_token(self, token_id: int) -> list[ProvisionLogEntry]:
        """Return entries for *token_id*, oldest first."""
        ...


@runtime_checkable
class CredentialStore(Protocol):
    """Persistence port for credential verifiers."""

    async def save(self, record: CredentialRecord) -> None: ...

    async def get(self, client_id: str) -> CredentialRecord | None: ...

    async def delete(self, client_id: str) -> None:
        """Remove the verifier for *client_id*; unknown ids are ignored."""
        ...


# ---------------------------------------------------------------------------
# In-memory adapters
# ---------------------------------------------------------------------------


@dataclass
class InMemoryTokenStore:
    """Dictionary-backed :class:`TokenStore`."""

    _rows: dict[int, ProvisionToken] = field(default_factory=dict, init=False, repr=False)
    _ids: itertools.count[int] = field(
        default_factory=lambda: itertools.count(1),
        init=False,
        repr=False,
    )

    async def create(self, token: ProvisionToken) -> ProvisionToken:
        row = replace(token, id=next(self._ids), version=1)
        self._rows[row.id] = row
        return row

    async def get(self, token_id: int) -> ProvisionToken | None:
        return self._rows.get(token_id)

    async def find_by_token(self, token: str) -> ProvisionToken | None:
        return next((row for row in self._rows.values() if row.token == token), None)

    async def find_by_device_id(self, device_id: str) -> ProvisionToken | None:
        return next(
            (row for row in self._rows.values() if row.device_id == device_id),
            None,
        )

    async def update(
        self,
        token: ProvisionToken,
        *,
        expected_version: int,
    ) -> ProvisionToken:
        current = self._rows.get(token.id)
        if current is None:
            msg = f"Token {token.id} not found"
            raise NotFoundError(msg)
        if current.version != expected_version:
            msg = (
                f"Token {token.id} changed concurrently "
                f"(expected version {expected_version}, found {current.version})"
            )
            raise StaleVersionError(msg)
        row = replace(token, version=expected_version + 1)
        self._rows[row.id] = row
        return row

    async def list(self) -> list[ProvisionToken]:
        return list(self._rows.values())


@dataclass
class InMemoryAuditLog:
    """List-backed :class:`AuditSink`."""

    entries: list[ProvisionLogEntry] = field(default_factory=list)

    async def append(self, entry: ProvisionLogEntry) -> None:
        self.entries.append(entry)

    async def list_by_token(self, token_id: int) -> list[ProvisionLogEntry]:
        return [entry for entry in self.entries if entry.token_id == token_id]


@dataclass
class InMemoryCredentialStore:
    """Dictionary-backed :class:`CredentialStore`."""

    _records: dict[str, CredentialRecord] = field(default_factory=dict, init=False, repr=False)

    async def save(self, record: CredentialRecord) -> None:
        self._records[record.client_id] = record

    async def get(self, client_id: str) -> CredentialRecord | None:
        return self._records.get(client_id)

    async def delete(self, client_id: str) -> None:
        self._records.pop(client_id, None)
