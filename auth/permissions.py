"""
auth/permissions.py -- The Role-Permission Map and its provider interface.

The map is built once at import time and exposed read-only: a
MappingProxyType of frozen RoleGrant values whose permission sets are
frozensets. Nothing in the process can mutate it after startup.

Deployments that need per-tenant grants inject their own PermissionProvider
into the AuthorizationEngine instead of editing this module.

Layer rule: no imports from api/ or cache/.
"""

from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import Mapping, Protocol

WILDCARD = "*"

MEMBER = "member"
COORDINATOR = "coordinator"
ADMINISTRATOR = "administrator"

ROLES: tuple[str, ...] = (MEMBER, COORDINATOR, ADMINISTRATOR)


@dataclass(frozen=True)
class RoleGrant:
    permissions: frozenset[str]
    zone_bypass: bool = False  # role may act outside its own zone


_MEMBER_PERMISSIONS = frozenset(
    {
        "read:clients",
        "read:care-plans",
        "read:visits",
        "read:schedules",
        "create:visit",
        "update:visit",
        "update:visit-documentation",
        "delete:visit-draft",
        "create:visit-note",
        "create:alert",
        "resolve:alert",
        "create:message",
    }
)

_COORDINATOR_PERMISSIONS = (_MEMBER_PERMISSIONS - {"create:message"}) | {
    "delete:alert",
    "create:client",
    "update:client",
    "create:care-plan",
    "update:care-plan",
    "create:schedule",
    "update:schedule",
    "create:user",
}

ROLE_GRANTS: Mapping[str, RoleGrant] = MappingProxyType(
    {
        MEMBER: RoleGrant(permissions=_MEMBER_PERMISSIONS),
        COORDINATOR: RoleGrant(permissions=_COORDINATOR_PERMISSIONS),
        ADMINISTRATOR: RoleGrant(permissions=frozenset({WILDCARD}), zone_bypass=True),
    }
)


class PermissionProvider(Protocol):
    def grant_for(self, role: str) -> RoleGrant | None: ...


class StaticPermissionProvider:
    """PermissionProvider backed by a fixed mapping (ROLE_GRANTS by default)."""

    def __init__(self, grants: Mapping[str, RoleGrant] = ROLE_GRANTS) -> None:
        self._grants = MappingProxyType(dict(grants))

    def grant_for(self, role: str) -> RoleGrant | None:
        return self._grants.get(role)


def is_known_role(role: str) -> bool:
    return role in ROLE_GRANTS


def permissions_for(role: str, overrides: frozenset[str] | set[str] = frozenset()) -> frozenset[str]:
    """Return the effective permission set for a role plus per-identity overrides."""
    grant = ROLE_GRANTS.get(role)
    base = grant.permissions if grant is not None else frozenset()
    return base | frozenset(overrides)


def has_permission(effective: frozenset[str], permission: str) -> bool:
    return WILDCARD in effective or permission in effective
