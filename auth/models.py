"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores and services do
the work; these classes only own the shape of the data.

Layer rule: no imports from api/ or cache/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime


@dataclass
class Identity:
    """A person who can authenticate against CareGate.

    email is always stored normalized (trimmed, lower-cased). Identities are
    never hard-deleted; is_active=False disables login and refresh.

    permission_overrides are granted on top of the role's static permissions
    and are embedded in every access token minted for this identity.
    """

    email: str
    role: str  # "member", "coordinator", "administrator"
    id: str | None = None
    password_hash: str | None = None
    zone_id: str | None = None
    first_name: str = ""
    last_name: str = ""
    permission_overrides: frozenset[str] = field(default_factory=frozenset)
    is_active: bool = True
    created_at: str | None = None
    updated_at: str | None = None


@dataclass
class Profile:
    """Registration input beyond the credential pair."""

    first_name: str
    last_name: str
    role: str = "member"
    zone_id: str | None = None
    permission_overrides: frozenset[str] = field(default_factory=frozenset)


@dataclass
class Session:
    """One refresh-token record per (identity, device).

    Security design:
    - token_hash is SHA-256 of the raw refresh token. The raw value is handed
      to the client once and never persisted.
    - access_token_id / access_expires_at track the access token minted with
      the current refresh token so it can be denylisted when the record is
      replaced or the identity's sessions are revoked.
    """

    identity_id: str
    device_id: str
    token_hash: str
    expires_at: datetime
    id: str | None = None
    created_at: datetime | None = None
    access_token_id: str | None = None
    access_expires_at: datetime | None = None


@dataclass(frozen=True)
class IssuedToken:
    """A freshly minted JWT together with its identifier and expiry."""

    token: str
    token_id: str  # the jti claim
    expires_at: datetime


@dataclass(frozen=True)
class TokenPair:
    access: IssuedToken
    refresh: IssuedToken


@dataclass(frozen=True)
class AuthContext:
    """The authenticated identity carried by a verified access token.

    Built by AuthService.authenticate() and handed to the authorization
    engine and to route handlers. Immutable so handlers cannot widen their
    own permissions mid-request.
    """

    identity_id: str
    email: str
    role: str
    zone_id: str | None
    permissions: frozenset[str]
    device_id: str
    token_id: str
    expires_at: datetime
