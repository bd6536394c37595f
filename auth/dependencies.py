"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication and authorization.

Every protected request goes through the same pipeline:
  1. Authorization: Bearer <token> header is extracted.
  2. AuthService.authenticate() verifies signature/expiry and consults the
     Revocation Ledger.
  3. The AuthorizationEngine evaluates the route's AccessPolicy.

authorize(policy) builds a dependency that raises
AccessDenied for any denial; require_roles(...) is the legacy role-only form.

A StoreUnavailable from the denylist lookup propagates untouched: an
unanswerable revocation check is a 500, never an implicit allow.

Layer rule: no imports from api/ or cache/.
  auth/dependencies.py may import from fastapi (for Request) because this
  module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from collections.abc import Callable

from fastapi import Request

from auth.authorization import AUTHENTICATED, AccessPolicy
from auth.errors import AccessDenied, TokenExpired, TokenMalformed, TokenRevoked
from auth.models import AuthContext

_BEARER_PREFIX = "bearer "


def _bearer_token(request: Request) -> tuple[str | None, str | None]:
    """Return (token, failure_reason) from the Authorization header."""
    header = request.headers.get("Authorization", "")
    if not header:
        return None, "missing_token"
    if not header.lower().startswith(_BEARER_PREFIX) or not header[len(_BEARER_PREFIX) :].strip():
        return None, "invalid_token_format"
    return header[len(_BEARER_PREFIX) :].strip(), None


def authenticate_request(request: Request) -> tuple[AuthContext | None, str | None]:
    """Authenticate the request. Returns (context, None) or (None, reason)."""
    token, reason = _bearer_token(request)
    if token is None:
        return None, reason
    try:
        return request.app.state.auth.authenticate(token), None
    except TokenExpired:
        return None, "token_expired"
    except TokenRevoked:
        return None, "token_revoked"
    except TokenMalformed:
        return None, "token_malformed"


def authorize(policy: AccessPolicy) -> Callable[[Request], AuthContext]:
    """Build a dependency enforcing policy. Raises AccessDenied on any denial.

    Use as a FastAPI dependency:
        @router.get("/zones/{zone_id}/clients")
        def route(context: AuthContext = Depends(authorize(AccessPolicy(permissions={"read:clients"})))): ...
    """

    def dependency(request: Request) -> AuthContext:
        context, reason = authenticate_request(request)
        decision = request.app.state.authorizer.evaluate(context, policy, request, reason=reason)
        if not decision.allowed:
            raise AccessDenied(decision)
        return context

    return dependency


def require_roles(*roles: str) -> Callable[[Request], AuthContext]:
    """Legacy form: allow any of the given roles, skip permission and zone checks."""
    return authorize(AccessPolicy.roles_only(roles))


get_auth_context = authorize(AUTHENTICATED)
