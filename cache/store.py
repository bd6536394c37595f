"""
cache/store.py -- TTL key stores backing the Revocation Ledger.

Two interchangeable backends behind the RevocationStore protocol
(auth/revocation.py):

  SQLiteRevocationStore  local file (or ":memory:"), expiry column checked on
                         read and trimmed by purge_expired(). The default for
                         single-node deployments and tests.
  RedisRevocationStore   SET key 1 EX ttl / EXISTS. Redis expires entries on
                         its own, so purge_expired() is a no-op.

Both use short timeouts and raise StoreUnavailable when the backend cannot
answer. A revocation check that cannot be answered must never read as
"not revoked".

Usage:
    store = open_revocation_store("redis://localhost:6379/0", timeout_seconds=2.0)
    store.put("5f0c...", ttl_seconds=3600)
    store.exists("5f0c...")      # True until the TTL runs out
    store.purge_expired()        # call periodically (SQLite only)

Layer rule: may import auth.errors; no imports from api/.
"""

import logging
import sqlite3
import threading
import time
from pathlib import Path

import redis

from auth.errors import StoreUnavailable

logger = logging.getLogger("caregate.cache")

_DEFAULT_DB = Path(__file__).parent / "caregate_revocations.db"
_KEY_PREFIX = "revoked:"

_DDL = """
CREATE TABLE IF NOT EXISTS revoked_tokens (
    token_id    TEXT PRIMARY KEY,
    expires_at  REAL NOT NULL
);
"""


class SQLiteRevocationStore:
    def __init__(self, db_path: Path | str = _DEFAULT_DB, timeout_seconds: float = 2.0) -> None:
        self._lock = threading.Lock()
        try:
            self._conn = sqlite3.connect(db_path, timeout=timeout_seconds, check_same_thread=False)
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute(_DDL)
            self._conn.commit()
        except sqlite3.OperationalError as exc:
            logger.error("Revocation store could not be opened at %s: %s", db_path, exc)
            raise StoreUnavailable() from exc

    def put(self, key: str, ttl_seconds: int) -> None:
        """Store key until ttl_seconds from now, replacing any existing entry."""
        self._execute(
            "INSERT OR REPLACE INTO revoked_tokens (token_id, expires_at) VALUES (?, ?)",
            (key, time.time() + ttl_seconds),
            commit=True,
        )

    def exists(self, key: str) -> bool:
        """Return True if key is stored and its TTL has not run out."""
        row = self._execute(
            "SELECT 1 FROM revoked_tokens WHERE token_id = ? AND expires_at > ?",
            (key, time.time()),
            fetch=True,
        )
        return row is not None

    def purge_expired(self) -> int:
        """Delete all expired entries. Returns number of rows removed."""
        cursor = self._execute("DELETE FROM revoked_tokens WHERE expires_at <= ?", (time.time(),), commit=True)
        return cursor.rowcount

    def ping(self) -> None:
        self._execute("SELECT 1")

    def _execute(self, sql: str, params: tuple = (), commit: bool = False, fetch: bool = False):
        """Run one statement under the lock. fetch=True also reads the first row there."""
        try:
            with self._lock:
                cursor = self._conn.execute(sql, params)
                if fetch:
                    return cursor.fetchone()
                if commit:
                    self._conn.commit()
                return cursor
        except sqlite3.OperationalError as exc:
            logger.error("Revocation store call failed: %s", exc, exc_info=True)
            raise StoreUnavailable() from exc

    def close(self) -> None:
        self._conn.close()


class RedisRevocationStore:
    """Revocation entries as Redis keys with a native TTL.

    The client is created with socket and connect timeouts so a stalled Redis
    fails the request quickly instead of hanging it.
    """

    def __init__(self, client: redis.Redis) -> None:
        self.client = client

    @classmethod
    def from_url(cls, url: str, timeout_seconds: float = 2.0) -> "RedisRevocationStore":
        client = redis.Redis.from_url(
            url,
            decode_responses=True,
            socket_timeout=timeout_seconds,
            socket_connect_timeout=timeout_seconds,
        )
        return cls(client)

    def put(self, key: str, ttl_seconds: int) -> None:
        try:
            self.client.set(_KEY_PREFIX + key, "1", ex=max(1, int(ttl_seconds)))
        except redis.RedisError as exc:
            logger.error("Redis SET failed: %s", exc, exc_info=True)
            raise StoreUnavailable() from exc

    def exists(self, key: str) -> bool:
        try:
            return bool(self.client.exists(_KEY_PREFIX + key))
        except redis.RedisError as exc:
            logger.error("Redis EXISTS failed: %s", exc, exc_info=True)
            raise StoreUnavailable() from exc

    def purge_expired(self) -> int:
        return 0

    def ping(self) -> None:
        try:
            self.client.ping()
        except redis.RedisError as exc:
            raise StoreUnavailable() from exc

    def close(self) -> None:
        self.client.close()


def open_revocation_store(url: str = "", timeout_seconds: float = 2.0):
    """Return the backend named by url: redis:// / rediss:// or a SQLite path."""
    if url.startswith(("redis://", "rediss://", "unix://")):
        return RedisRevocationStore.from_url(url, timeout_seconds=timeout_seconds)
    return SQLiteRevocationStore(url or _DEFAULT_DB, timeout_seconds=timeout_seconds)
