"""
auth/service.py -- Orchestrates register, login, refresh, logout and authenticate.

AuthService is the only object route handlers talk to. It wires the
Credential Store Adapter, Token Issuer, Refresh Token Registry and
Revocation Ledger together; none of those components know about each
other beyond what their constructors take.

Layer rule: no imports from api/ or cache/.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from auth.credentials import CredentialStore, validate_profile
from auth.errors import AccountDisabled, IdentityNotFound, InvalidCredentials, TokenRevoked
from auth.models import AuthContext, Identity, Profile, Session, TokenPair
from auth.registry import RefreshTokenRegistry
from auth.revocation import RevocationLedger
from auth.store import IdentityStore, SessionStore
from auth.tokens import ACCESS, TokenIssuer

logger = logging.getLogger("caregate.auth")


@dataclass(frozen=True)
class AuthResult:
    identity: Identity
    tokens: TokenPair


class AuthService:
    def __init__(
        self,
        credentials: CredentialStore,
        issuer: TokenIssuer,
        registry: RefreshTokenRegistry,
        ledger: RevocationLedger,
    ) -> None:
        self.credentials = credentials
        self.issuer = issuer
        self.registry = registry
        self.ledger = ledger

    @classmethod
    def build(
        cls,
        identities: IdentityStore,
        sessions: SessionStore,
        issuer: TokenIssuer,
        ledger: RevocationLedger,
        bcrypt_rounds: int = 12,
    ) -> AuthService:
        """Assemble the service from its stores."""
        return cls(
            credentials=CredentialStore(identities, bcrypt_rounds=bcrypt_rounds),
            issuer=issuer,
            registry=RefreshTokenRegistry(sessions, identities, issuer, ledger),
            ledger=ledger,
        )

    @property
    def identities(self) -> IdentityStore:
        return self.credentials.identities

    # ------------------------------------------------------------------
    # Credential flows
    # ------------------------------------------------------------------

    def register(self, email: str, password: str, profile: Profile, device_id: str) -> AuthResult:
        identity = self.credentials.register(email, password, profile)
        tokens = self.registry.issue(identity, device_id)
        return AuthResult(identity=identity, tokens=tokens)

    def login(self, email: str, password: str, device_id: str) -> AuthResult:
        try:
            identity = self.credentials.verify(email, password)
        except (InvalidCredentials, AccountDisabled) as exc:
            # Email is not logged on failure: it may be a mistyped password.
            logger.warning("Login failed code=%s device=%s", exc.code, device_id)
            raise
        tokens = self.registry.issue(identity, device_id)
        logger.info("Login succeeded identity=%s device=%s", identity.id, device_id)
        return AuthResult(identity=identity, tokens=tokens)

    def refresh(self, raw_refresh_token: str, device_id: str | None = None) -> TokenPair:
        return self.registry.rotate(raw_refresh_token, device_id)

    # ------------------------------------------------------------------
    # Session teardown
    # ------------------------------------------------------------------

    def logout(self, context: AuthContext, device_id: str | None = None) -> None:
        """Deny the presented access token and drop the device's refresh record."""
        self.ledger.denylist(context.token_id, context.expires_at)
        self.registry.revoke(context.identity_id, device_id or context.device_id)
        logger.info("Logout identity=%s device=%s", context.identity_id, device_id or context.device_id)

    def logout_everywhere(self, context: AuthContext) -> int:
        self.ledger.denylist(context.token_id, context.expires_at)
        return self.registry.revoke_all(context.identity_id)

    def sessions_for(self, context: AuthContext) -> list[Session]:
        return self.registry.list_sessions(context.identity_id)

    def update_identity(self, identity_id: str, **fields) -> Identity:
        """Apply an administrative change; deactivation ends every session.

        Raises IdentityNotFound, or ValidationFailure when the resulting
        role/zone combination is invalid.
        """
        current = self.identities.get_by_id(identity_id)
        if current is None:
            raise IdentityNotFound(details={"identity_id": identity_id})
        validate_profile(
            Profile(
                first_name=current.first_name,
                last_name=current.last_name,
                role=fields.get("role", current.role),
                zone_id=fields.get("zone_id", current.zone_id),
            )
        )
        identity = self.identities.update(identity_id, **fields)
        if fields.get("is_active") is False:
            self.registry.revoke_all(identity_id)
            logger.info("Identity deactivated id=%s", identity_id)
        return identity

    # ------------------------------------------------------------------
    # Per-request authentication
    # ------------------------------------------------------------------

    def authenticate(self, raw_access_token: str) -> AuthContext:
        """Verify an access token and check the denylist.

        Raises TokenExpired, TokenMalformed, TokenRevoked, or StoreUnavailable
        when the denylist cannot be consulted.
        """
        claims = self.issuer.verify(raw_access_token, expected_type=ACCESS)
        if self.ledger.is_denied(claims["jti"]):
            raise TokenRevoked()
        return AuthContext(
            identity_id=claims["sub"],
            email=claims.get("email", ""),
            role=claims.get("role", ""),
            zone_id=claims.get("zone_id"),
            permissions=frozenset(claims.get("permissions") or ()),
            device_id=claims["device_id"],
            token_id=claims["jti"],
            expires_at=datetime.fromtimestamp(claims["exp"], tz=timezone.utc),
        )
