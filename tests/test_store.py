"""Unit tests for auth/store.py -- IdentityStore and SessionStore against SQLite.

Covers:
- Identity create / lookup / update, including the field whitelist
- Case-insensitive unique index on email
- Session replace / swap (compare-and-swap) / delete / purge
- Connectivity failures surface as StoreUnavailable
"""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from auth.errors import StoreUnavailable
from auth.models import Identity, Session


def _identity(email: str = "nurse@example.com") -> Identity:
    return Identity(email=email, role="member", password_hash="$2b$04$hash", zone_id="z1")


def _session(identity_id: str, device_id: str = "phone", token_hash: str = "a" * 64, expires_in: int = 3600):
    return Session(
        identity_id=identity_id,
        device_id=device_id,
        token_hash=token_hash,
        expires_at=datetime.now(timezone.utc) + timedelta(seconds=expires_in),
        access_token_id="b" * 32,
        access_expires_at=datetime.now(timezone.utc) + timedelta(minutes=15),
    )


class TestIdentityStore:
    def test_create_assigns_id_and_timestamps(self, identity_store) -> None:
        created = identity_store.create(_identity())
        assert created.id
        assert created.created_at == created.updated_at
        fetched = identity_store.get_by_id(created.id)
        assert fetched.email == "nurse@example.com"
        assert fetched.is_active is True

    def test_get_by_email_ignores_case(self, identity_store) -> None:
        identity_store.create(_identity())
        assert identity_store.get_by_email("NURSE@Example.com") is not None
        assert identity_store.get_by_email("other@example.com") is None

    def test_unique_index_is_case_insensitive(self, identity_store) -> None:
        identity_store.create(_identity("a@x.com"))
        with pytest.raises(IntegrityError):
            identity_store.create(_identity("A@X.COM"))

    def test_update_returns_fresh_record(self, identity_store) -> None:
        created = identity_store.create(_identity())
        updated = identity_store.update(created.id, role="coordinator", permission_overrides=["create:client"])
        assert updated.role == "coordinator"
        assert updated.permission_overrides == frozenset({"create:client"})

    def test_update_rejects_unknown_fields(self, identity_store) -> None:
        created = identity_store.create(_identity())
        with pytest.raises(ValueError):
            identity_store.update(created.id, email="new@example.com")

    def test_update_missing_identity(self, identity_store) -> None:
        assert identity_store.update("missing", role="coordinator") is None


class TestSessionStore:
    def test_replace_returns_previous(self, session_store) -> None:
        assert session_store.replace(_session("u1", token_hash="a" * 64)) is None
        previous = session_store.replace(_session("u1", token_hash="c" * 64))
        assert previous.token_hash == "a" * 64
        assert session_store.get("u1", "phone").token_hash == "c" * 64

    def test_get_returns_utc_datetimes(self, session_store) -> None:
        session_store.replace(_session("u1"))
        record = session_store.get("u1", "phone")
        assert record.expires_at.tzinfo is not None

    def test_swap_only_matches_current_hash(self, session_store) -> None:
        session_store.replace(_session("u1", token_hash="a" * 64))
        assert session_store.swap("a" * 64, _session("u1", token_hash="c" * 64)) is True
        # The old hash has moved on; a second swap from it loses.
        assert session_store.swap("a" * 64, _session("u1", token_hash="d" * 64)) is False
        assert session_store.get("u1", "phone").token_hash == "c" * 64

    def test_delete(self, session_store) -> None:
        session_store.replace(_session("u1"))
        assert session_store.delete("u1", "phone") is not None
        assert session_store.delete("u1", "phone") is None

    def test_delete_all_returns_removed(self, session_store) -> None:
        session_store.replace(_session("u1", "phone", "a" * 64))
        session_store.replace(_session("u1", "laptop", "c" * 64))
        session_store.replace(_session("u2", "phone", "d" * 64))
        removed = session_store.delete_all("u1")
        assert sorted(s.device_id for s in removed) == ["laptop", "phone"]
        assert session_store.get("u2", "phone") is not None

    def test_list_active_skips_expired(self, session_store) -> None:
        session_store.replace(_session("u1", "phone", "a" * 64))
        session_store.replace(_session("u1", "old", "c" * 64, expires_in=-60))
        assert [s.device_id for s in session_store.list_active("u1")] == ["phone"]

    def test_purge_expired(self, session_store) -> None:
        session_store.replace(_session("u1", "phone", "a" * 64))
        session_store.replace(_session("u1", "old", "c" * 64, expires_in=-60))
        assert session_store.purge_expired() == 1
        assert session_store.get("u1", "old") is None

    def test_connection_failure_is_store_unavailable(self, session_store, monkeypatch) -> None:
        def refuse():
            raise OperationalError("SELECT 1", {}, Exception("unable to open database file"))

        monkeypatch.setattr(session_store.engine, "connect", refuse)
        with pytest.raises(StoreUnavailable):
            session_store.ping()
