"""Tests for deckhand._credentials — passwords, verifiers and issuance.

Test Techniques Used:
    - Boundary Value Analysis: minimum password length
    - Specification-based Testing: client id / username naming, ACL grants
    - Mock-based Isolation: failing credential store
"""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from deckhand._credentials import (
    MIN_PASSWORD_LENGTH,
    PASSWORD_ALPHABET,
    CredentialIssuer,
    generate_password,
    grants_for,
    hash_password,
    verify_password,
)
from deckhand._errors import PersistenceError
from deckhand._messages import DeviceType
from deckhand._store import InMemoryCredentialStore
from deckhand._topics import DeviceTopics

TOPICS = DeviceTopics.for_device("obedio", "main", "Lobby", "BUT-2026-ABCDEF01")


@pytest.fixture
def issuer() -> CredentialIssuer:
    return CredentialIssuer(store=InMemoryCredentialStore(), namespace="obedio", rounds=4)


# ---------------------------------------------------------------------------
# Passwords
# ---------------------------------------------------------------------------


class TestGeneratePassword:
    """Technique: Boundary Value Analysis."""

    def test_minimum_length_accepted(self) -> None:
        password = generate_password(MIN_PASSWORD_LENGTH)
        assert len(password) == MIN_PASSWORD_LENGTH
        assert set(password) <= set(PASSWORD_ALPHABET)

    def test_below_minimum_raises(self) -> None:
        with pytest.raises(ValueError, match="at least 16"):
            generate_password(MIN_PASSWORD_LENGTH - 1)

    def test_passwords_differ(self) -> None:
        assert generate_password() != generate_password()


class TestHashing:
    """Technique: Specification-based Testing."""

    def test_verify_round_trip(self) -> None:
        password_hash = hash_password("correct horse battery", rounds=4)
        assert password_hash.startswith("$2")
        assert verify_password("correct horse battery", password_hash)
        assert not verify_password("wrong horse battery", password_hash)

    def test_malformed_hash_does_not_verify(self) -> None:
        assert not verify_password("anything", "not-a-bcrypt-hash")


# ---------------------------------------------------------------------------
# Grants
# ---------------------------------------------------------------------------


class TestGrants:
    """Technique: Specification-based Testing."""

    def test_device_publishes_readings_and_subscribes_to_commands(self) -> None:
        grants = {(g.topic, g.access) for g in grants_for(TOPICS)}
        assert grants == {
            (TOPICS.telemetry, "publish"),
            (TOPICS.status, "publish"),
            (TOPICS.command, "subscribe"),
        }


# ---------------------------------------------------------------------------
# CredentialIssuer
# ---------------------------------------------------------------------------


class TestCredentialIssuer:
    """Technique: Specification-based and Error Condition Testing."""

    def test_short_password_length_rejected(self) -> None:
        with pytest.raises(ValueError, match="password_length"):
            CredentialIssuer(store=InMemoryCredentialStore(), namespace="ns", password_length=8)

    def test_issue_naming(self, issuer: CredentialIssuer) -> None:
        creds = issuer.issue("BUT-2026-ABCDEF01", DeviceType.BUTTON, topics=TOPICS)
        assert creds.client_id == "obedio_button_BUT-2026-ABCDEF01"
        assert creds.username == "button_BUT-2026-ABCDEF01"
        assert len(creds.password) == 24
        assert creds.password not in repr(creds)

    async def test_persist_stores_only_verifier(self, issuer: CredentialIssuer) -> None:
        creds = issuer.issue("BUT-1", DeviceType.BUTTON, topics=TOPICS)
        record = await issuer.persist(creds, "BUT-1")
        assert record.password_hash != creds.password
        assert record.topic_grants == creds.topic_grants
        assert await issuer.verify(creds.client_id, creds.password)
        assert not await issuer.verify(creds.client_id, "x" * 24)

    async def test_unknown_client_never_verifies(self, issuer: CredentialIssuer) -> None:
        assert not await issuer.verify("obedio_button_nobody", "whatever-password")

    async def test_store_failure_is_persistence_error(self) -> None:
        store = AsyncMock()
        store.save.side_effect = OSError("disk full")
        issuer = CredentialIssuer(store=store, namespace="obedio", rounds=4)
        creds = issuer.issue("BUT-1", DeviceType.BUTTON, topics=TOPICS)
        with pytest.raises(PersistenceError, match="disk full"):
            await issuer.persist(creds, "BUT-1")
