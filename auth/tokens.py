"""
auth/tokens.py -- Token Issuer: mint and verify signed access and refresh JWTs.

Security design decisions:
  Algorithm: python-jose with RS256. The private key only lives in the
       process that mints tokens; verification needs the public key alone.

  Every token carries a random jti. The Revocation Ledger keys its entries
       on it, and two tokens minted in the same second for the same device
       are still distinct.

  typ claim: "access" or "refresh". verify() rejects a refresh token
       presented as an access token and vice versa.

  iss / aud: fixed per deployment and checked on every verification.

  Refresh tokens are persisted as SHA-256 digests only (hash_refresh_token).
       They are long random-looking JWTs, so a fast hash is enough; the slow
       bcrypt path is reserved for low-entropy passwords.

The issuer is stateless given a key pair: it never touches storage.

Layer rule: no imports from api/ or cache/.
"""

from __future__ import annotations

import hashlib
import uuid
from datetime import datetime, timedelta, timezone

from jose import ExpiredSignatureError, JWTError, jwt

from auth.errors import TokenExpired, TokenMalformed
from auth.models import Identity, IssuedToken
from auth.permissions import permissions_for

ALGORITHM = "RS256"

ACCESS = "access"
REFRESH = "refresh"


def hash_refresh_token(raw_token: str) -> str:
    """Return the SHA-256 hex digest stored in place of a raw refresh token."""
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()


class TokenIssuer:
    """Mints and verifies RS256 JWTs.

    Args:
        private_key:  PEM-encoded RSA private key used to sign.
        public_key:   PEM-encoded RSA public key used to verify.
        issuer:       Value of the iss claim.
        audience:     Value of the aud claim.
        access_ttl:   Access token lifetime in seconds.
        refresh_ttl:  Refresh token lifetime in seconds.
    """

    def __init__(
        self,
        private_key: str,
        public_key: str,
        issuer: str,
        audience: str,
        access_ttl: int = 3600,
        refresh_ttl: int = 30 * 24 * 3600,
    ) -> None:
        self._private_key = private_key
        self._public_key = public_key
        self.issuer = issuer
        self.audience = audience
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl

    @classmethod
    def from_settings(cls, settings) -> TokenIssuer:
        return cls(
            private_key=settings.jwt_private_key,
            public_key=settings.jwt_public_key,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            access_ttl=settings.access_token_expire_seconds,
            refresh_ttl=settings.refresh_token_expire_seconds,
        )

    # ------------------------------------------------------------------
    # Minting
    # ------------------------------------------------------------------

    def mint_access(self, identity: Identity, device_id: str) -> IssuedToken:
        """Mint an access token carrying the identity's role, zone and effective permissions."""
        permissions = permissions_for(identity.role, identity.permission_overrides)
        return self._mint(
            {
                "sub": identity.id,
                "email": identity.email,
                "role": identity.role,
                "zone_id": identity.zone_id,
                "permissions": sorted(permissions),
                "device_id": device_id,
            },
            token_type=ACCESS,
            ttl=self.access_ttl,
        )

    def mint_refresh(self, identity_id: str, device_id: str) -> IssuedToken:
        return self._mint({"sub": identity_id, "device_id": device_id}, token_type=REFRESH, ttl=self.refresh_ttl)

    def _mint(self, claims: dict, token_type: str, ttl: int) -> IssuedToken:
        issued_at = datetime.now(timezone.utc)
        expires_at = issued_at + timedelta(seconds=ttl)
        token_id = uuid.uuid4().hex
        payload = {
            **claims,
            "typ": token_type,
            "jti": token_id,
            "iat": issued_at,
            "exp": expires_at,
            "iss": self.issuer,
            "aud": self.audience,
        }
        token = jwt.encode(payload, self._private_key, algorithm=ALGORITHM)
        # exp is serialized at one-second resolution; report what the token says.
        return IssuedToken(token=token, token_id=token_id, expires_at=expires_at.replace(microsecond=0))

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def verify(self, token: str, expected_type: str = ACCESS) -> dict:
        """Verify signature, expiry, issuer, audience and token type.

        Returns the claims dict. Raises TokenExpired for a correctly signed
        but expired token and TokenMalformed for anything else.
        """
        try:
            claims = jwt.decode(
                token,
                self._public_key,
                algorithms=[ALGORITHM],
                audience=self.audience,
                issuer=self.issuer,
            )
        except ExpiredSignatureError as exc:
            raise TokenExpired() from exc
        except JWTError as exc:
            raise TokenMalformed() from exc
        if claims.get("typ") != expected_type:
            raise TokenMalformed(f"Expected a {expected_type} token")
        if not claims.get("sub") or not claims.get("jti") or not claims.get("device_id"):
            raise TokenMalformed("Token is missing required claims")
        return claims
