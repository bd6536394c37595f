"""
auth/store.py -- SQLAlchemy Core persistence layer for identities and sessions.

Pattern: Repository + Data Mapper.
IdentityStore and SessionStore are the repositories; _row_to_identity /
_row_to_session are the mappers. Service and route code never touches SQL.

Security:
  All queries use bound parameters. No f-strings in SQL.

  Email uniqueness is enforced by a unique functional index on lower(email),
  not by a check-then-insert. Two concurrent registrations race on the index
  and exactly one gets IntegrityError [R1].

  Session rotation is a compare-and-swap: UPDATE ... WHERE token_hash = :old.
  A rowcount of 0 means another request already rotated the token [R2].

Timeouts:
  Every engine is created with a short connect / busy / pool timeout. A
  timeout or dropped connection surfaces as StoreUnavailable, never as an
  empty result that callers could mistake for "not found".

DB path: auth/caregate_auth.db unless DATABASE_URL is set.

Layer rule: no imports from api/ or cache/.
"""

from __future__ import annotations

import json
import logging
import math
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import (
    Column,
    DateTime,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    func,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from auth.errors import StoreUnavailable
from auth.models import Identity, Session

logger = logging.getLogger("caregate.auth.store")

DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'caregate_auth.db'}"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_identities = Table(
    "identities",
    _metadata,
    Column("id", String(32), primary_key=True),
    Column("email", String(255), nullable=False),  # normalized: trimmed, lower-cased
    Column("password_hash", Text, nullable=False),
    Column("role", String(30), nullable=False, server_default="member"),
    Column("zone_id", String(64)),  # NULL for administrators
    Column("first_name", String(100), nullable=False, server_default=""),
    Column("last_name", String(100), nullable=False, server_default=""),
    Column("permission_overrides", Text),  # JSON list
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

# [R1] case-insensitive uniqueness at the database level
Index("uq_identities_email_lower", func.lower(_identities.c.email), unique=True)

_sessions = Table(
    "sessions",
    _metadata,
    Column("id", String(32), primary_key=True),
    Column("identity_id", String(32), nullable=False, index=True),
    Column("device_id", String(128), nullable=False),
    Column("token_hash", String(64), nullable=False, unique=True),  # SHA-256 hex
    Column("expires_at", DateTime(timezone=True), nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("access_token_id", String(32)),
    Column("access_expires_at", DateTime(timezone=True)),
    UniqueConstraint("identity_id", "device_id", name="uq_sessions_identity_device"),
)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def open_engine(db_url: str = DEFAULT_DB_URL, timeout_seconds: float = 2.0) -> Engine:
    """Create the engine for the auth tables and make sure the schema exists."""
    connect_args: dict = {}
    engine_kwargs: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
        connect_args["timeout"] = timeout_seconds  # busy timeout
    else:
        engine_kwargs["pool_timeout"] = timeout_seconds
        engine_kwargs["pool_pre_ping"] = True
        if db_url.startswith("postgresql"):
            connect_args["connect_timeout"] = max(1, math.ceil(timeout_seconds))
            connect_args["options"] = f"-c statement_timeout={int(timeout_seconds * 1000)}"
    engine = create_engine(db_url, connect_args=connect_args, **engine_kwargs)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_wal_mode)
    with _store_call("create schema"):
        _metadata.create_all(engine)
    return engine


@contextmanager
def _store_call(operation: str) -> Iterator[None]:
    """Translate connectivity failures into StoreUnavailable.

    IntegrityError is a DBAPIError but not an OperationalError, so uniqueness
    violations pass through untouched for the caller to interpret.
    """
    try:
        yield
    except (OperationalError, InterfaceError, PoolTimeoutError) as exc:
        logger.error("Store call failed during %s: %s", operation, exc.__class__.__name__, exc_info=True)
        raise StoreUnavailable() from exc


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; every value we write is UTC.
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex


# ---------------------------------------------------------------------------
# Repositories
# ---------------------------------------------------------------------------


class IdentityStore:
    """Repository for Identity entities.

    Usage:
        store = IdentityStore(open_engine())
        identity = store.create(Identity(email="nurse@example.com", role="member", ...))
        store.get_by_email("NURSE@example.com")
    """

    # Columns update() may touch. Anything else is a programming error.
    _MUTABLE_FIELDS: frozenset[str] = frozenset(
        {"role", "zone_id", "first_name", "last_name", "permission_overrides", "is_active", "password_hash"}
    )

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def create(self, identity: Identity) -> Identity:
        """Insert a new identity and return it with id and timestamps filled in.

        Raises sqlalchemy.exc.IntegrityError if the email already exists in
        any letter case. Callers translate that into DuplicateIdentity [R1].
        """
        now = _now_iso()
        identity_id = identity.id or _new_id()
        with _store_call("create identity"), self.engine.connect() as conn:
            conn.execute(
                _identities.insert().values(
                    id=identity_id,
                    email=identity.email,
                    password_hash=identity.password_hash,
                    role=identity.role,
                    zone_id=identity.zone_id,
                    first_name=identity.first_name,
                    last_name=identity.last_name,
                    permission_overrides=json.dumps(sorted(identity.permission_overrides)),
                    is_active=1 if identity.is_active else 0,
                    created_at=now,
                    updated_at=now,
                )
            )
            conn.commit()
        identity.id = identity_id
        identity.created_at = now
        identity.updated_at = now
        return identity

    def get_by_email(self, email: str) -> Identity | None:
        """Look up an identity by email, ignoring letter case. Returns None if not found."""
        with _store_call("get identity by email"), self.engine.connect() as conn:
            row = conn.execute(
                _identities.select().where(func.lower(_identities.c.email) == email.strip().lower())
            ).fetchone()
        return _row_to_identity(row) if row is not None else None

    def get_by_id(self, identity_id: str) -> Identity | None:
        with _store_call("get identity by id"), self.engine.connect() as conn:
            row = conn.execute(_identities.select().where(_identities.c.id == identity_id)).fetchone()
        return _row_to_identity(row) if row is not None else None

    def update(self, identity_id: str, **fields) -> Identity | None:
        """Update mutable fields and return the fresh record, or None if not found.

        permission_overrides may be any iterable of strings; is_active must be
        a bool. Unknown field names raise ValueError.
        """
        unknown = set(fields) - self._MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown identity fields: {unknown!r}")
        if "is_active" in fields:
            fields["is_active"] = 1 if fields["is_active"] else 0
        if "permission_overrides" in fields:
            fields["permission_overrides"] = json.dumps(sorted(set(fields["permission_overrides"])))
        if fields:
            fields["updated_at"] = _now_iso()
            with _store_call("update identity"), self.engine.connect() as conn:
                conn.execute(_identities.update().where(_identities.c.id == identity_id).values(**fields))
                conn.commit()
        return self.get_by_id(identity_id)


class SessionStore:
    """Repository for refresh-token session records.

    At most one row exists per (identity_id, device_id). replace() swaps it
    inside a single transaction; swap() is the compare-and-swap used by
    rotation [R2].
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def replace(self, session: Session) -> Session | None:
        """Atomically install session as the only record for its device.

        Returns the record it replaced, if any, so the caller can denylist
        that record's access token.
        """
        key = (_sessions.c.identity_id == session.identity_id) & (_sessions.c.device_id == session.device_id)
        session.id = session.id or _new_id()
        session.created_at = session.created_at or _now()
        with _store_call("replace session"), self.engine.begin() as conn:
            previous = conn.execute(_sessions.select().where(key)).fetchone()
            conn.execute(_sessions.delete().where(key))
            conn.execute(_sessions.insert().values(**_session_values(session)))
        return _row_to_session(previous) if previous is not None else None

    def get(self, identity_id: str, device_id: str) -> Session | None:
        with _store_call("get session"), self.engine.connect() as conn:
            row = conn.execute(
                _sessions.select().where(
                    (_sessions.c.identity_id == identity_id) & (_sessions.c.device_id == device_id)
                )
            ).fetchone()
        return _row_to_session(row) if row is not None else None

    def swap(self, expected_hash: str, session: Session) -> bool:
        """Replace the device's token only if it still holds expected_hash.

        Returns False when the stored hash has already moved on -- the caller
        lost a race against a concurrent rotation of the same token [R2].
        """
        with _store_call("rotate session"), self.engine.connect() as conn:
            result = conn.execute(
                _sessions.update()
                .where(
                    (_sessions.c.identity_id == session.identity_id)
                    & (_sessions.c.device_id == session.device_id)
                    & (_sessions.c.token_hash == expected_hash)
                )
                .values(
                    token_hash=session.token_hash,
                    expires_at=session.expires_at,
                    access_token_id=session.access_token_id,
                    access_expires_at=session.access_expires_at,
                )
            )
            conn.commit()
        return result.rowcount == 1

    def delete(self, identity_id: str, device_id: str) -> Session | None:
        """Delete the device's record and return it, or None if there was none."""
        key = (_sessions.c.identity_id == identity_id) & (_sessions.c.device_id == device_id)
        with _store_call("delete session"), self.engine.begin() as conn:
            row = conn.execute(_sessions.select().where(key)).fetchone()
            if row is not None:
                conn.execute(_sessions.delete().where(key))
        return _row_to_session(row) if row is not None else None

    def delete_all(self, identity_id: str) -> list[Session]:
        """Delete every record of the identity and return what was deleted."""
        with _store_call("delete all sessions"), self.engine.begin() as conn:
            rows = conn.execute(_sessions.select().where(_sessions.c.identity_id == identity_id)).fetchall()
            conn.execute(_sessions.delete().where(_sessions.c.identity_id == identity_id))
        return [_row_to_session(r) for r in rows]

    def list_active(self, identity_id: str) -> list[Session]:
        """Return the identity's unexpired records, newest first."""
        with _store_call("list sessions"), self.engine.connect() as conn:
            rows = conn.execute(
                _sessions.select()
                .where((_sessions.c.identity_id == identity_id) & (_sessions.c.expires_at > _now()))
                .order_by(_sessions.c.created_at.desc())
            ).fetchall()
        return [_row_to_session(r) for r in rows]

    def purge_expired(self) -> int:
        """Delete every expired record. Returns the number of rows removed."""
        with _store_call("purge sessions"), self.engine.connect() as conn:
            result = conn.execute(_sessions.delete().where(_sessions.c.expires_at <= _now()))
            conn.commit()
        return result.rowcount

    def ping(self) -> None:
        """Raise StoreUnavailable unless the database answers a trivial query."""
        with _store_call("ping"), self.engine.connect() as conn:
            conn.execute(select(1))


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _session_values(session: Session) -> dict:
    return {
        "id": session.id,
        "identity_id": session.identity_id,
        "device_id": session.device_id,
        "token_hash": session.token_hash,
        "expires_at": session.expires_at,
        "created_at": session.created_at,
        "access_token_id": session.access_token_id,
        "access_expires_at": session.access_expires_at,
    }


def _row_to_identity(row) -> Identity:
    overrides = json.loads(row.permission_overrides) if row.permission_overrides else []
    return Identity(
        id=row.id,
        email=row.email,
        password_hash=row.password_hash,
        role=row.role,
        zone_id=row.zone_id,
        first_name=row.first_name,
        last_name=row.last_name,
        permission_overrides=frozenset(overrides),
        is_active=bool(row.is_active),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _row_to_session(row) -> Session:
    return Session(
        id=row.id,
        identity_id=row.identity_id,
        device_id=row.device_id,
        token_hash=row.token_hash,
        expires_at=_as_utc(row.expires_at),
        created_at=_as_utc(row.created_at),
        access_token_id=row.access_token_id,
        access_expires_at=_as_utc(row.access_expires_at),
    )
