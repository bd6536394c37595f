"""
auth/revocation.py -- Revocation Ledger: a TTL-bounded token denylist.

Entries are keyed by token identifier (the jti claim) and live exactly as
long as the token they deny would have. Once the token would have expired
anyway, the entry disappears on its own; the ledger never grows without
bound and needs no cleanup job beyond what the backend does itself.

The storage capability is the RevocationStore protocol; cache/store.py
provides SQLite and Redis implementations.

Layer rule: no imports from api/ or cache/.
"""

from __future__ import annotations

import logging
import math
from datetime import datetime, timezone
from typing import Protocol

logger = logging.getLogger("caregate.auth.revocation")


class RevocationStore(Protocol):
    def put(self, key: str, ttl_seconds: int) -> None: ...

    def exists(self, key: str) -> bool: ...

    def purge_expired(self) -> int: ...

    def ping(self) -> None: ...

    def close(self) -> None: ...


class RevocationLedger:
    def __init__(self, store: RevocationStore) -> None:
        self.store = store

    def denylist(self, token_id: str, until: datetime) -> bool:
        """Deny token_id until the given instant.

        Returns False without writing when until is already in the past:
        the token is dead on its own and an entry would be pure overhead.
        """
        remaining = (until - datetime.now(timezone.utc)).total_seconds()
        if remaining <= 0:
            return False
        self.store.put(token_id, math.ceil(remaining))
        logger.debug("Denylisted token jti=%s ttl=%ds", token_id, math.ceil(remaining))
        return True

    def is_denied(self, token_id: str) -> bool:
        """Return True if token_id is denylisted. Raises StoreUnavailable if unknown."""
        return self.store.exists(token_id)
