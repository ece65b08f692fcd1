"""Per-device broker credentials.

A successful claim hands the device a client id, a username and a
random password.  The plaintext password leaves the coordinator exactly
once, inside the ack; only a bcrypt verifier is persisted.

Naming::

    client_id = "{namespace}_{device_type}_{device_id}"
    username  = "{device_type}_{device_id}"
"""

from __future__ import annotations

import asyncio
import logging
import secrets
import string
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime

import bcrypt

from deckhand._clock import utc_now
from deckhand._errors import DeckhandError, PersistenceError
from deckhand._messages import DeviceType
from deckhand._store import CredentialRecord, CredentialStore, TopicGrant
from deckhand._topics import DeviceTopics

logger = logging.getLogger(__name__)

PASSWORD_ALPHABET = string.ascii_letters + string.digits + "!@#$%^&*"
MIN_PASSWORD_LENGTH = 16
DEFAULT_PASSWORD_LENGTH = 24
DEFAULT_BCRYPT_ROUNDS = 12


def generate_password(length: int = DEFAULT_PASSWORD_LENGTH) -> str:
    """Return a random password drawn from :data:`PASSWORD_ALPHABET`.

    Raises:
        ValueError: If *length* is below :data:`MIN_PASSWORD_LENGTH`.
    """
    if length < MIN_PASSWORD_LENGTH:
        msg = f"Password length must be at least {MIN_PASSWORD_LENGTH}, got {length}"
        raise ValueError(msg)
    return "".join(secrets.choice(PASSWORD_ALPHABET) for _ in range(length))


def hash_password(password: str, *, rounds: int = DEFAULT_BCRYPT_ROUNDS) -> str:
    """Return the bcrypt verifier for *password*."""
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    """Check *password* against a bcrypt verifier."""
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        return False


def grants_for(topics: DeviceTopics) -> tuple[TopicGrant, ...]:
    """Publish on telemetry and status, subscribe on command."""
    return (
        TopicGrant(topic=topics.telemetry, access="publish"),
        TopicGrant(topic=topics.status, access="publish"),
        TopicGrant(topic=topics.command, access="subscribe"),
    )


@dataclass(frozen=True, slots=True)
class IssuedCredentials:
    """Credentials returned once to the claimant."""

    client_id: str
    username: str
    password: str = field(repr=False)
    topic_grants: tuple[TopicGrant, ...] = ()


@dataclass
class CredentialIssuer:
    """Generates device credentials and persists their verifiers.

    Args:
        store: Where verifiers are kept.
        namespace: Topic namespace, also the client id prefix.
        password_length: Length of generated passwords (at least 16).
        rounds: bcrypt cost factor.  Tests lower it to keep hashing fast.
        clock: Wall clock used to stamp records.
    """

    store: CredentialStore
    namespace: str
    password_length: int = DEFAULT_PASSWORD_LENGTH
    rounds: int = DEFAULT_BCRYPT_ROUNDS
    clock: Callable[[], datetime] = field(default=utc_now, repr=False)

    def __post_init__(self) -> None:
        if self.password_length < MIN_PASSWORD_LENGTH:
            msg = (
                f"password_length must be at least {MIN_PASSWORD_LENGTH}, "
                f"got {self.password_length}"
            )
            raise ValueError(msg)

    def issue(
        self,
        device_id: str,
        device_type: DeviceType,
        *,
        topics: DeviceTopics,
    ) -> IssuedCredentials:
        """Generate fresh credentials for *device_id*."""
        return IssuedCredentials(
            client_id=f"{self.namespace}_{device_type}_{device_id}",
            username=f"{device_type}_{device_id}",
            password=generate_password(self.password_length),
            topic_grants=grants_for(topics),
        )

    async def persist(self, credentials: IssuedCredentials, device_id: str) -> CredentialRecord:
        """Hash the password off the event loop and store the verifier.

        Raises:
            PersistenceError: If the credential store fails.
        """
        password_hash = await asyncio.to_thread(
            hash_password,
            credentials.password,
            rounds=self.rounds,
        )
        record = CredentialRecord(
            client_id=credentials.client_id,
            username=credentials.username,
            device_id=device_id,
            password_hash=password_hash,
            topic_grants=credentials.topic_grants,
            created_at=self.clock(),
        )
        try:
            await self.store.save(record)
        except DeckhandError:
            raise
        except Exception as exc:
            msg = f"Could not store credentials for {credentials.client_id}: {exc}"
            raise PersistenceError(msg) from exc
        logger.debug("Stored verifier for %s", credentials.client_id)
        return record

    async def revoke(self, client_id: str) -> None:
        """Drop the stored verifier for *client_id*.

        Raises:
            PersistenceError: If the credential store fails.
        """
        try:
            await self.store.delete(client_id)
        except DeckhandError:
            raise
        except Exception as exc:
            msg = f"Could not remove credentials for {client_id}: {exc}"
            raise PersistenceError(msg) from exc
        logger.debug("Removed verifier for %s", client_id)

    async def verify(self, client_id: str, password: str) -> bool:
        """Check *password* for *client_id*; unknown clients never verify."""
        record = await self.store.get(client_id)
        if record is None:
            return False
        return await asyncio.to_thread(verify_password, password, record.password_hash)
