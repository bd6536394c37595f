"""
auth/errors.py -- Typed failures raised by the auth layer.

Every failure carries a machine-readable code, an HTTP status and a
human-readable message. The auth layer never builds HTTP responses itself;
api/main.py renders any AuthError into the standard error envelope.

Kinds:
  input          -> 400  ValidationFailure
  missing        -> 404  IdentityNotFound
  conflict       -> 409  DuplicateIdentity
  credential     -> 401  InvalidCredentials, AccountDisabled, TokenExpired,
                         TokenMalformed, TokenRevoked, SessionExpired,
                         SessionCompromised, DeviceMismatch
  authorization  -> 401/403  AccessDenied (wraps an authorization Decision)
  infrastructure -> 500  StoreUnavailable (retryable, never downgraded to allow)

Layer rule: no imports from api/ or cache/.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from auth.authorization import Decision


class AuthError(Exception):
    code = "AUTH_ERROR"
    status_code = 400
    default_message = "Authentication error"

    def __init__(self, message: str | None = None, *, details: dict[str, Any] | None = None) -> None:
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)


class ValidationFailure(AuthError):
    code = "VALIDATION_ERROR"
    status_code = 400
    default_message = "Invalid input"


class DuplicateIdentity(AuthError):
    code = "DUPLICATE_IDENTITY"
    status_code = 409
    default_message = "An account with this email already exists"


class InvalidCredentials(AuthError):
    # Same message for unknown email and wrong password -- no enumeration.
    code = "INVALID_CREDENTIALS"
    status_code = 401
    default_message = "Invalid email or password"


class AccountDisabled(AuthError):
    code = "ACCOUNT_DISABLED"
    status_code = 401
    default_message = "Account is disabled"


class TokenExpired(AuthError):
    code = "TOKEN_EXPIRED"
    status_code = 401
    default_message = "Token has expired"


class TokenMalformed(AuthError):
    code = "TOKEN_MALFORMED"
    status_code = 401
    default_message = "Token is invalid"


class TokenRevoked(AuthError):
    code = "TOKEN_REVOKED"
    status_code = 401
    default_message = "Token has been revoked"


class SessionExpired(AuthError):
    code = "SESSION_EXPIRED"
    status_code = 401
    default_message = "Session has expired, please log in again"


class SessionCompromised(AuthError):
    code = "SESSION_COMPROMISED"
    status_code = 401
    default_message = "Refresh token reuse detected; all sessions have been revoked"


class DeviceMismatch(AuthError):
    code = "DEVICE_MISMATCH"
    status_code = 401
    default_message = "Refresh token was issued to a different device"


class StoreUnavailable(AuthError):
    code = "INFRASTRUCTURE_UNAVAILABLE"
    status_code = 500
    default_message = "A backing store is temporarily unavailable, please retry"
    retryable = True


class AccessDenied(AuthError):
    """Raised by the transport layer when an authorization Decision is a denial."""

    def __init__(self, decision: Decision) -> None:
        self.decision = decision
        self.code = decision.code
        self.status_code = decision.status_code
        super().__init__(decision.message, details=decision.details)


class IdentityNotFound(AuthError):
    code = "IDENTITY_NOT_FOUND"
    status_code = 404
    default_message = "Identity not found"
