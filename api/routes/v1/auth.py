"""
api/routes/v1/auth.py -- Authentication and session management REST endpoints.

Routes:
  POST  /api/v1/auth/register               -- create identity + token pair; 201
  POST  /api/v1/auth/login                  -- email/password login; token pair
  POST  /api/v1/auth/refresh                -- rotate refresh token; new pair
  POST  /api/v1/auth/logout                 -- deny access token, drop device session; 204
  POST  /api/v1/auth/logout-all             -- revoke every session of the caller; 204
  GET   /api/v1/auth/me                     -- what the access token says about the caller
  GET   /api/v1/auth/sessions               -- caller's active devices
  PATCH /api/v1/auth/identities/{id}        -- role/zone/overrides/is_active (administrator only)

Security:
  [H1] POST /register is rate-limited per client address (REGISTER_RATE_LIMIT,
       default 5/hour); POST /login per LOGIN_RATE_LIMIT (default 10/15 minutes).
  [H2] Self-registration only ever yields a member. Any other role, any
       permission override, or registration while SELF_REGISTRATION_ENABLED is
       off requires an administrator bearer token.
  [C1] Login goes through CredentialStore.verify(), which equalizes timing.
  [M5] Cache-Control: no-store on every response that carries tokens.
  [M4] PATCH /identities/{id} refuses to let an administrator deactivate or
       demote themselves.

Errors are raised as auth.errors.AuthError subclasses; api/main.py renders
them into the standard envelope.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import JSONResponse

from api.limiter import limiter
from api.models import (
    AuthContextResponse,
    IdentityResponse,
    IdentityUpdate,
    LoginRequest,
    LogoutRequest,
    RefreshRequest,
    RegisterRequest,
    RoleEnum,
    SessionResponse,
    TokenResponse,
)
from auth.authorization import AccessPolicy
from auth.dependencies import authorize, get_auth_context, require_roles
from auth.errors import ValidationFailure
from auth.models import AuthContext, Profile, TokenPair
from auth.permissions import ADMINISTRATOR
from auth.service import AuthService
from core.config import get_settings

_settings = get_settings()

_require_admin_registrar = authorize(AccessPolicy.roles_only({ADMINISTRATOR}))

# Auth policy:
# - POST  /auth/register:          public for members; administrator for anything else [H2]
# - POST  /auth/login:             public
# - POST  /auth/refresh:           public -- the refresh token is the credential
# - POST  /auth/logout:            requires auth (get_auth_context)
# - POST  /auth/logout-all:        requires auth (get_auth_context)
# - GET   /auth/me:                requires auth (get_auth_context)
# - GET   /auth/sessions:          requires auth (get_auth_context)
# - PATCH /auth/identities/{id}:   administrator (require_roles, legacy role-only form)
router = APIRouter()


def _token_response(pair: TokenPair, status_code: int = 200, identity=None) -> JSONResponse:
    body = TokenResponse(
        access_token=pair.access.token,
        refresh_token=pair.refresh.token,
        token_type="bearer",  # noqa: S106 # nosec B106 -- OAuth token type, not a password
        expires_in=_settings.access_token_expire_seconds,
        identity=IdentityResponse.from_identity(identity) if identity is not None else None,
    )
    resp = JSONResponse(status_code=status_code, content=body.model_dump())
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/register", response_model=TokenResponse, status_code=201)
@limiter.limit(_settings.register_rate_limit)  # [H1]
def register(request: Request, body: RegisterRequest) -> JSONResponse:
    """Create an identity and log the registering device in.

    Members may self-register. Elevated roles and permission overrides need an
    administrator token in the Authorization header [H2].
    """
    elevated = body.role is not RoleEnum.member or bool(body.permission_overrides)
    if elevated or not _settings.self_registration_enabled:
        _require_admin_registrar(request)

    service: AuthService = request.app.state.auth
    result = service.register(
        body.email,
        body.password,
        Profile(
            first_name=body.first_name,
            last_name=body.last_name,
            role=body.role.value,
            zone_id=body.zone_id,
            permission_overrides=frozenset(body.permission_overrides),
        ),
        device_id=body.device_id,
    )
    return _token_response(result.tokens, status_code=201, identity=result.identity)


@router.post("/auth/login", response_model=TokenResponse)
@limiter.limit(_settings.login_rate_limit)  # [H1]
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password and issue a token pair for the device.

    Wrong email and wrong password produce the same 401 INVALID_CREDENTIALS [C1].
    """
    service: AuthService = request.app.state.auth
    result = service.login(body.email, body.password, body.device_id)
    return _token_response(result.tokens, identity=result.identity)


@router.post("/auth/refresh", response_model=TokenResponse)
def refresh(request: Request, body: RefreshRequest) -> JSONResponse:
    """Exchange a refresh token for a new pair. Each refresh token works once.

    Presenting a refresh token that was already rotated revokes every session
    of the identity and returns 401 SESSION_COMPROMISED.
    """
    service: AuthService = request.app.state.auth
    pair = service.refresh(body.refresh_token, body.device_id)
    return _token_response(pair)


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/logout", status_code=204)
def logout(
    request: Request,
    body: LogoutRequest | None = None,
    context: AuthContext = Depends(get_auth_context),
) -> Response:
    """Deny the presented access token immediately and drop the device's refresh record."""
    service: AuthService = request.app.state.auth
    service.logout(context, body.device_id if body else None)
    return Response(status_code=204)


@router.post("/auth/logout-all", status_code=204)
def logout_all(request: Request, context: AuthContext = Depends(get_auth_context)) -> Response:
    """Revoke every session of the caller on every device."""
    service: AuthService = request.app.state.auth
    service.logout_everywhere(context)
    return Response(status_code=204)


@router.get("/auth/me", response_model=AuthContextResponse)
def me(context: AuthContext = Depends(get_auth_context)) -> AuthContextResponse:
    return AuthContextResponse(
        identity_id=context.identity_id,
        email=context.email,
        role=context.role,
        zone_id=context.zone_id,
        permissions=sorted(context.permissions),
        device_id=context.device_id,
    )


@router.get("/auth/sessions", response_model=list[SessionResponse])
def list_sessions(request: Request, context: AuthContext = Depends(get_auth_context)) -> list[SessionResponse]:
    service: AuthService = request.app.state.auth
    return [SessionResponse.from_session(s) for s in service.sessions_for(context)]


# ---------------------------------------------------------------------------
# Administrator endpoints
# ---------------------------------------------------------------------------


@router.patch("/auth/identities/{identity_id}", response_model=IdentityResponse)
def update_identity(
    identity_id: str,
    body: IdentityUpdate,
    request: Request,
    context: AuthContext = Depends(require_roles(ADMINISTRATOR)),
) -> IdentityResponse:
    """Change an identity's role, zone, permission overrides or active flag.

    Deactivating an identity revokes all of its sessions. An administrator
    cannot deactivate or demote themselves [M4].
    """
    # zone_id may be cleared explicitly; every other null means "leave as is".
    requested = body.model_dump(exclude_unset=True, mode="json")
    fields = {k: v for k, v in requested.items() if v is not None or k == "zone_id"}
    if identity_id == context.identity_id and (
        fields.get("is_active") is False or fields.get("role", ADMINISTRATOR) != ADMINISTRATOR
    ):
        raise ValidationFailure("Administrators cannot deactivate or demote themselves")

    service: AuthService = request.app.state.auth
    identity = service.update_identity(identity_id, **fields)
    return IdentityResponse.from_identity(identity)
