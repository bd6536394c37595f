"""
api/routes/v1/zones.py -- Zone-scoped endpoints.

Routes:
  GET /api/v1/zones/{zone_id}/access   -- confirm the caller may read client data in a zone

The access policy is declared once per route and enforced by the
authorization dependency before the handler runs: the caller needs
read:clients and must belong to the zone in the path, unless their role
carries the administrative zone bypass.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from api.models import ZoneAccessResponse
from auth.authorization import AccessPolicy
from auth.dependencies import authorize
from auth.models import AuthContext

router = APIRouter()

READ_ZONE_CLIENTS = AccessPolicy(permissions=frozenset({"read:clients"}))


@router.get("/zones/{zone_id}/access", response_model=ZoneAccessResponse)
def zone_access(zone_id: str, context: AuthContext = Depends(authorize(READ_ZONE_CLIENTS))) -> ZoneAccessResponse:
    return ZoneAccessResponse(zone_id=zone_id, identity_id=context.identity_id, role=context.role)
