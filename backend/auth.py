"""
Caller identity for FastAPI endpoints

Sessions are owned by the studio application in front of this service; it
forwards the signed-in user's tenant, role and client id as headers. This
module only reads them.
"""

from fastapi import Security
from fastapi.security import APIKeyHeader
from typing import Optional

from models import Roles
from pipeline.asset_resolver import Caller

# Header names set by the session layer
TENANT_HEADER = "X-Tenant-Id"
ROLE_HEADER = "X-User-Role"
CLIENT_HEADER = "X-Client-Id"

tenant_header = APIKeyHeader(name=TENANT_HEADER, auto_error=False)
role_header = APIKeyHeader(name=ROLE_HEADER, auto_error=False)
client_header = APIKeyHeader(name=CLIENT_HEADER, auto_error=False)

KNOWN_ROLES = {Roles.TENANT_ADMIN, Roles.TEAM_MEMBER, Roles.CLIENT}


def _clean(value: Optional[str]) -> Optional[str]:
    value = (value or "").strip()
    return value or None


async def get_caller(
    tenant_id: Optional[str] = Security(tenant_header),
    role: Optional[str] = Security(role_header),
    client_id: Optional[str] = Security(client_header),
) -> Caller:
    """
    Build the Caller for this request; anonymous when no headers are present.

    Unknown roles are dropped so they can never count as staff.

    Usage:
        @router.get("/assets/{gallery_id}")
        async def get_asset(gallery_id: str, caller: Caller = Depends(get_caller)):
            ...
    """
    role = _clean(role)
    if role is not None:
        role = role.upper()
        if role not in KNOWN_ROLES:
            role = None
    return Caller(tenant_id=_clean(tenant_id), role=role, client_id=_clean(client_id))
