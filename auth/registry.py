"""
auth/registry.py -- Refresh Token Registry: single-use rotation with replay detection.

One record per (identity, device), holding only the SHA-256 of the current
refresh token. Every successful refresh swaps the record for a new token, so
each refresh token works exactly once.

Replay detection [T1]:
  A correctly signed, unexpired refresh token whose hash does not match the
  device's record has already been rotated away. Either the legitimate client
  or an attacker holds a copy. We cannot tell which, so every session of the
  identity is revoked (all devices) and the caller gets SessionCompromised.

Concurrency [R2]:
  Two concurrent rotations of the same token both pass the hash check, but
  only one compare-and-swap can match the old hash. The loser is handled as a
  replay.

Layer rule: no imports from api/ or cache/.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from auth.errors import AccountDisabled, DeviceMismatch, SessionCompromised, SessionExpired, TokenExpired
from auth.models import Identity, Session, TokenPair
from auth.tokens import REFRESH, hash_refresh_token

if TYPE_CHECKING:
    from auth.revocation import RevocationLedger
    from auth.store import IdentityStore, SessionStore
    from auth.tokens import TokenIssuer

logger = logging.getLogger("caregate.auth.registry")


class RefreshTokenRegistry:
    def __init__(
        self,
        sessions: SessionStore,
        identities: IdentityStore,
        issuer: TokenIssuer,
        ledger: RevocationLedger,
    ) -> None:
        self.sessions = sessions
        self.identities = identities
        self.issuer = issuer
        self.ledger = ledger

    def issue(self, identity: Identity, device_id: str) -> TokenPair:
        """Mint a token pair for the device and make it the device's only session.

        Any previous record for the same device is replaced atomically and the
        access token minted with it is denylisted.
        """
        pair = self._mint_pair(identity, device_id)
        previous = self.sessions.replace(self._session_for(identity.id, device_id, pair))
        if previous is not None:
            self._deny_access_token(previous)
        return pair

    def rotate(self, raw_refresh_token: str, device_id: str | None = None) -> TokenPair:
        """Exchange a refresh token for a new pair.

        Raises SessionExpired, SessionCompromised, DeviceMismatch,
        AccountDisabled or TokenMalformed.
        """
        try:
            claims = self.issuer.verify(raw_refresh_token, expected_type=REFRESH)
        except TokenExpired as exc:
            raise SessionExpired() from exc
        identity_id = claims["sub"]
        token_device = claims["device_id"]
        if device_id is not None and device_id != token_device:
            logger.warning("Refresh rejected: device mismatch identity=%s", identity_id)
            raise DeviceMismatch()

        record = self.sessions.get(identity_id, token_device)
        if record is None:
            raise SessionExpired()
        if record.expires_at <= datetime.now(timezone.utc):
            self.sessions.delete(identity_id, token_device)
            raise SessionExpired()

        presented_hash = hash_refresh_token(raw_refresh_token)
        if record.token_hash != presented_hash:
            self._compromised(identity_id, token_device)

        identity = self.identities.get_by_id(identity_id)
        if identity is None:
            self.revoke_all(identity_id)
            raise SessionExpired()
        if not identity.is_active:
            self.revoke_all(identity_id)
            raise AccountDisabled()

        pair = self._mint_pair(identity, token_device)
        if not self.sessions.swap(presented_hash, self._session_for(identity_id, token_device, pair)):
            # [R2] a concurrent rotation of the same token won the swap
            self._compromised(identity_id, token_device)
        self._deny_access_token(record)
        logger.info("Refresh token rotated identity=%s device=%s", identity_id, token_device)
        return pair

    def revoke(self, identity_id: str, device_id: str) -> bool:
        """Delete the device's session and deny its access token. Returns False if there was none."""
        removed = self.sessions.delete(identity_id, device_id)
        if removed is None:
            return False
        self._deny_access_token(removed)
        return True

    def revoke_all(self, identity_id: str) -> int:
        """Delete every session of the identity and deny their live access tokens."""
        removed = self.sessions.delete_all(identity_id)
        for session in removed:
            self._deny_access_token(session)
        logger.info("Revoked %d session(s) identity=%s", len(removed), identity_id)
        return len(removed)

    def list_sessions(self, identity_id: str) -> list[Session]:
        return self.sessions.list_active(identity_id)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _compromised(self, identity_id: str, device_id: str) -> None:
        logger.warning(
            "Refresh token reuse detected identity=%s device=%s; revoking all sessions", identity_id, device_id
        )
        self.revoke_all(identity_id)
        raise SessionCompromised()

    def _mint_pair(self, identity: Identity, device_id: str) -> TokenPair:
        return TokenPair(
            access=self.issuer.mint_access(identity, device_id),
            refresh=self.issuer.mint_refresh(identity.id, device_id),
        )

    def _deny_access_token(self, session: Session) -> None:
        if session.access_token_id and session.access_expires_at:
            self.ledger.denylist(session.access_token_id, session.access_expires_at)

    @staticmethod
    def _session_for(identity_id: str, device_id: str, pair: TokenPair) -> Session:
        return Session(
            identity_id=identity_id,
            device_id=device_id,
            token_hash=hash_refresh_token(pair.refresh.token),
            expires_at=pair.refresh.expires_at,
            access_token_id=pair.access.token_id,
            access_expires_at=pair.access.expires_at,
        )
