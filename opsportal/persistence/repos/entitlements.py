from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from opsportal.domain.models import ClientService
from opsportal.persistence.guards import tenant_predicate

# Counters and is_active move through bulk UPDATEs; every read refreshes loaded rows.


async def get_entitlement(
    session: AsyncSession, *, tenant_id: str, service_id: str
) -> ClientService | None:
    result = await session.execute(
        select(ClientService).where(
            tenant_predicate(ClientService, tenant_id),
            ClientService.service_id == service_id,
        ).execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_active_entitlement(
    session: AsyncSession, *, tenant_id: str, service_id: str
) -> ClientService | None:
    result = await session.execute(
        select(ClientService).where(
            tenant_predicate(ClientService, tenant_id),
            ClientService.service_id == service_id,
            ClientService.is_active.is_(True),
        ).execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def list_entitlements(
    session: AsyncSession, *, tenant_id: str, active_only: bool = False
) -> list[ClientService]:
    stmt = select(ClientService).where(tenant_predicate(ClientService, tenant_id))
    if active_only:
        stmt = stmt.where(ClientService.is_active.is_(True))
    result = await session.execute(
        stmt.order_by(ClientService.assigned_at, ClientService.id).execution_options(populate_existing=True)
    )
    return list(result.scalars().all())
