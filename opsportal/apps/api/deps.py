from __future__ import annotations

from typing import AsyncGenerator

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from opsportal.core.errors import AuthorizationError
from opsportal.persistence.db import get_session
from opsportal.services.tenancy import (
    ROLE_OWNER,
    ROLE_RESELLER,
    ROLE_TENANT,
    Principal,
    get_owned_tenant,
    resolve_principal,
)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


async def get_principal(
    x_user_id: str | None = Header(default=None, alias="X-User-Id"),
    db: AsyncSession = Depends(get_db),
) -> Principal:
    # The gateway authenticates the user; the portal derives role and tenancy from its own records.
    if not x_user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": "AUTH_UNAUTHORIZED", "message": "Missing X-User-Id header"},
        )
    return await resolve_principal(db, x_user_id)


def require_role(*roles: str):
    # Dependency factory to enforce role checks at the route level.
    async def _dependency(principal: Principal = Depends(get_principal)) -> Principal:
        if principal.role not in roles:
            raise AuthorizationError(
                "Caller lacks the required role",
                details={"required": sorted(roles), "role": principal.role},
            )
        return principal

    return _dependency


async def get_acting_tenant_id(
    request: Request,
    principal: Principal = Depends(require_role(ROLE_TENANT, ROLE_RESELLER)),
    db: AsyncSession = Depends(get_db),
) -> str:
    """Tenant a tenant-scoped route operates on.

    Tenants always act on themselves. Resellers act on one of their own
    tenants named in the route path; ownership is checked against the store.
    """
    path_tenant_id = request.path_params.get("tenant_id")
    if principal.role == ROLE_TENANT:
        if path_tenant_id and path_tenant_id != principal.tenant_id:
            raise AuthorizationError("Clients can only act on their own account")
        return str(principal.tenant_id)
    if not path_tenant_id:
        raise AuthorizationError("Resellers must address a tenant explicitly")
    tenant = await get_owned_tenant(db, reseller_id=str(principal.reseller_id), tenant_id=path_tenant_id)
    return tenant.id


async def reject_tenant_id_in_body(request: Request) -> None:
    # Reject client-supplied tenant_id; tenancy comes from the caller identity.
    content_type = (request.headers.get("content-type") or "").lower()
    if not content_type.startswith("application/json"):
        return
    try:
        payload = await request.json()
    except ValueError:
        return
    if isinstance(payload, dict) and "tenant_id" in payload:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "code": "TENANT_ID_NOT_ALLOWED",
                "message": "tenant_id must be derived from the caller identity",
            },
        )


require_owner = require_role(ROLE_OWNER)
require_reseller = require_role(ROLE_RESELLER)
require_tenant = require_role(ROLE_TENANT)
