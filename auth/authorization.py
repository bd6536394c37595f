"""
auth/authorization.py -- Authorization Engine: role, permission and zone gates.

Evaluation order is fixed and short-circuits on the first denial:

  1. authentication presence   no valid, non-denied token   -> 401 AUTH_UNAUTHENTICATED
  2. role                      role not in policy.roles      -> 403 AUTH_INSUFFICIENT_ROLE
  3. permission                missing required permission   -> 403 AUTH_INSUFFICIENT_PERMISSIONS
  4. zone                      target zone != identity zone  -> 403 AUTH_ZONE_ACCESS_DENIED

Every stage is a pure function returning a Decision. The engine raises
nothing: the transport layer (auth/dependencies.py) decides how a denial
becomes a response. The only side effect is a log line per denial.

The wildcard permission "*" satisfies every permission check. A role whose
grant carries zone_bypass skips the zone check when the policy allows it.

Layer rule: no imports from api/ or cache/. The engine does not know about
FastAPI; zone resolvers receive whatever request object the transport passes.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from auth.models import AuthContext
from auth.permissions import ROLE_GRANTS, PermissionProvider, StaticPermissionProvider, has_permission

logger = logging.getLogger("caregate.auth.authz")

ZoneResolver = Callable[[Any], str | None]

# ---------------------------------------------------------------------------
# Outcomes
# ---------------------------------------------------------------------------


class Verdict(str, Enum):
    ALLOW = "allow"
    UNAUTHENTICATED = "unauthenticated"
    INSUFFICIENT_ROLE = "insufficient_role"
    INSUFFICIENT_PERMISSION = "insufficient_permission"
    ZONE_ACCESS_DENIED = "zone_access_denied"


_CODES = {
    Verdict.ALLOW: ("", 200),
    Verdict.UNAUTHENTICATED: ("AUTH_UNAUTHENTICATED", 401),
    Verdict.INSUFFICIENT_ROLE: ("AUTH_INSUFFICIENT_ROLE", 403),
    Verdict.INSUFFICIENT_PERMISSION: ("AUTH_INSUFFICIENT_PERMISSIONS", 403),
    Verdict.ZONE_ACCESS_DENIED: ("AUTH_ZONE_ACCESS_DENIED", 403),
}


@dataclass(frozen=True)
class Decision:
    verdict: Verdict
    message: str = ""
    details: dict[str, Any] | None = None

    @property
    def allowed(self) -> bool:
        return self.verdict is Verdict.ALLOW

    @property
    def code(self) -> str:
        return _CODES[self.verdict][0]

    @property
    def status_code(self) -> int:
        return _CODES[self.verdict][1]


ALLOW = Decision(Verdict.ALLOW)

# ---------------------------------------------------------------------------
# Policy
# ---------------------------------------------------------------------------


def path_param_resolver(name: str = "zone_id") -> ZoneResolver:
    """Resolve the target zone from a path parameter (the default)."""

    def resolve(request: Any) -> str | None:
        return getattr(request, "path_params", {}).get(name)

    return resolve


def query_param_resolver(name: str = "zone_id") -> ZoneResolver:
    def resolve(request: Any) -> str | None:
        return getattr(request, "query_params", {}).get(name)

    return resolve


@dataclass(frozen=True)
class AccessPolicy:
    """Declarative description of who may reach an endpoint.

    Empty roles / permissions mean "no requirement". The zone check runs by
    default and reads the zone_id path parameter unless zone_resolver says
    otherwise.
    """

    roles: frozenset[str] = field(default_factory=frozenset)
    permissions: frozenset[str] = field(default_factory=frozenset)
    zone_resolver: ZoneResolver = field(default_factory=path_param_resolver)
    enforce_zone_check: bool = True
    allow_admin_zone_bypass: bool = True

    def __post_init__(self) -> None:
        # Accept any iterable from callers but store frozensets.
        object.__setattr__(self, "roles", frozenset(self.roles))
        object.__setattr__(self, "permissions", frozenset(self.permissions))

    @classmethod
    def roles_only(cls, roles: Iterable[str]) -> AccessPolicy:
        """Legacy form: a bare list of allowed roles, no permission or zone checks."""
        return cls(roles=frozenset(roles), enforce_zone_check=False)


AUTHENTICATED = AccessPolicy(enforce_zone_check=False)

# ---------------------------------------------------------------------------
# Stages
# ---------------------------------------------------------------------------


def check_authenticated(context: AuthContext | None, reason: str | None = None) -> Decision:
    if context is not None:
        return ALLOW
    return Decision(
        Verdict.UNAUTHENTICATED,
        "Authentication required",
        {"reason": reason or "missing_token"},
    )


def check_role(context: AuthContext, policy: AccessPolicy) -> Decision:
    if not policy.roles or context.role in policy.roles:
        return ALLOW
    return Decision(
        Verdict.INSUFFICIENT_ROLE,
        "Insufficient role for this operation",
        {"required_roles": sorted(policy.roles), "user_role": context.role},
    )


def effective_permissions(context: AuthContext, provider: PermissionProvider) -> frozenset[str]:
    grant = provider.grant_for(context.role)
    base = grant.permissions if grant is not None else frozenset()
    return base | context.permissions


def check_permissions(context: AuthContext, policy: AccessPolicy, provider: PermissionProvider) -> Decision:
    if not policy.permissions:
        return ALLOW
    effective = effective_permissions(context, provider)
    missing = sorted(p for p in policy.permissions if not has_permission(effective, p))
    if not missing:
        return ALLOW
    return Decision(
        Verdict.INSUFFICIENT_PERMISSION,
        "Insufficient permissions for this operation",
        {"required_permissions": sorted(policy.permissions), "missing_permissions": missing},
    )


def check_zone(context: AuthContext, policy: AccessPolicy, request: Any, provider: PermissionProvider) -> Decision:
    if not policy.enforce_zone_check:
        return ALLOW
    requested = policy.zone_resolver(request)
    # No zone in the request means the resource is not zone-scoped.
    if not requested or requested == context.zone_id:
        return ALLOW
    if policy.allow_admin_zone_bypass:
        grant = provider.grant_for(context.role)
        if grant is not None and grant.zone_bypass:
            return ALLOW
    return Decision(
        Verdict.ZONE_ACCESS_DENIED,
        "Access to this zone is not permitted",
        {"requested_zone_id": requested, "user_zone_id": context.zone_id},
    )


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class AuthorizationEngine:
    """Runs the four stages against a policy.

    Usage:
        engine = AuthorizationEngine()
        decision = engine.evaluate(context, AccessPolicy(permissions={"read:clients"}), request)
        if not decision.allowed:
            ...
    """

    def __init__(self, provider: PermissionProvider | None = None) -> None:
        self.provider = provider or StaticPermissionProvider(ROLE_GRANTS)

    def evaluate(
        self,
        context: AuthContext | None,
        policy: AccessPolicy,
        request: Any = None,
        *,
        reason: str | None = None,
    ) -> Decision:
        decision = check_authenticated(context, reason)
        if decision.allowed:
            decision = check_role(context, policy)
        if decision.allowed:
            decision = check_permissions(context, policy, self.provider)
        if decision.allowed:
            decision = check_zone(context, policy, request, self.provider)
        if not decision.allowed:
            logger.info(
                "Authorization denied code=%s identity=%s role=%s details=%s",
                decision.code,
                context.identity_id if context else None,
                context.role if context else None,
                decision.details,
            )
        return decision
