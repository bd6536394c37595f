"""
API request and response models for the CareGate REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Only shape is checked here (types, presence, length limits). Email format and
password strength are domain rules enforced by auth/credentials.py so every
entry point (HTTP, CLI) applies the same policy.
"""

from enum import Enum
from typing import Annotated, Any, Optional

from pydantic import BaseModel, ConfigDict, Field, StringConstraints

from auth.models import Identity, Session

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class RoleEnum(str, Enum):
    member = "member"
    coordinator = "coordinator"
    administrator = "administrator"


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------

# Every request model trims device_id the same way so the value stored at login
# is the value later matched on refresh and logout.
DeviceId = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=128)]


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/auth/register.

    No str_strip_whitespace here: surrounding spaces are part of a password.
    The credential layer trims email and names itself.
    """

    email: str = Field(min_length=3, max_length=255)
    password: str = Field(min_length=1, max_length=255)
    first_name: str = Field(min_length=1, max_length=100)
    last_name: str = Field(min_length=1, max_length=100)
    role: RoleEnum = RoleEnum.member
    zone_id: Optional[str] = Field(default=None, min_length=1, max_length=64)
    device_id: DeviceId
    permission_overrides: list[str] = Field(default_factory=list, max_length=50)


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login."""

    email: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=255)
    device_id: DeviceId


class RefreshRequest(BaseModel):
    """Request body for POST /api/v1/auth/refresh.

    device_id is optional; when present it must match the device the refresh
    token was issued to.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    refresh_token: str = Field(min_length=1, max_length=4096)
    device_id: Optional[DeviceId] = None


class LogoutRequest(BaseModel):
    """Request body for POST /api/v1/auth/logout. Defaults to the token's own device."""

    model_config = ConfigDict(str_strip_whitespace=True)

    device_id: Optional[DeviceId] = None


class IdentityUpdate(BaseModel):
    """Request body for PATCH /api/v1/auth/identities/{identity_id}. All fields optional."""

    model_config = ConfigDict(str_strip_whitespace=True)

    role: Optional[RoleEnum] = None
    zone_id: Optional[str] = Field(default=None, min_length=1, max_length=64)
    permission_overrides: Optional[list[str]] = Field(default=None, max_length=50)
    is_active: Optional[bool] = None


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class IdentityResponse(BaseModel):
    """Public view of an identity. Never includes the password hash."""

    model_config = ConfigDict(frozen=True)

    id: str
    email: str
    role: str
    zone_id: Optional[str]
    first_name: str
    last_name: str
    permission_overrides: list[str]
    is_active: bool

    @classmethod
    def from_identity(cls, identity: Identity) -> "IdentityResponse":
        return cls(
            id=identity.id,
            email=identity.email,
            role=identity.role,
            zone_id=identity.zone_id,
            first_name=identity.first_name,
            last_name=identity.last_name,
            permission_overrides=sorted(identity.permission_overrides),
            is_active=identity.is_active,
        )


class TokenResponse(BaseModel):
    """Token pair returned by login, register and refresh."""

    model_config = ConfigDict(frozen=True)

    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int  # access token lifetime in seconds
    identity: Optional[IdentityResponse] = None


class AuthContextResponse(BaseModel):
    """Response for GET /api/v1/auth/me -- what the access token says about the caller."""

    model_config = ConfigDict(frozen=True)

    identity_id: str
    email: str
    role: str
    zone_id: Optional[str]
    permissions: list[str]
    device_id: str


class SessionResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    device_id: str
    created_at: Optional[str]
    expires_at: str

    @classmethod
    def from_session(cls, session: Session) -> "SessionResponse":
        return cls(
            device_id=session.device_id,
            created_at=session.created_at.isoformat() if session.created_at else None,
            expires_at=session.expires_at.isoformat(),
        )


class ZoneAccessResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    zone_id: str
    identity_id: str
    role: str


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    details: Optional[dict[str, Any]] = None
    timestamp: str  # ISO-8601, UTC
    request_id: str


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
