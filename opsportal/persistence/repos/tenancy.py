from __future__ import annotations

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from opsportal.domain.models import ClientService, Reseller, ResellerServiceAssignment, Tenant


async def get_reseller(session: AsyncSession, reseller_id: str) -> Reseller | None:
    result = await session.execute(select(Reseller).where(Reseller.id == reseller_id))
    return result.scalar_one_or_none()


async def get_reseller_by_user(session: AsyncSession, user_id: str) -> Reseller | None:
    result = await session.execute(select(Reseller).where(Reseller.user_id == user_id))
    return result.scalar_one_or_none()


async def list_resellers(session: AsyncSession) -> list[Reseller]:
    result = await session.execute(select(Reseller).order_by(Reseller.created_at, Reseller.id))
    return list(result.scalars().all())


async def get_tenant(session: AsyncSession, tenant_id: str) -> Tenant | None:
    result = await session.execute(select(Tenant).where(Tenant.id == tenant_id))
    return result.scalar_one_or_none()


async def get_tenant_by_user(session: AsyncSession, user_id: str) -> Tenant | None:
    result = await session.execute(select(Tenant).where(Tenant.user_id == user_id))
    return result.scalar_one_or_none()


async def get_tenant_for_reseller(
    session: AsyncSession, *, reseller_id: str, tenant_id: str
) -> Tenant | None:
    # Resellers only ever see tenants they onboarded.
    result = await session.execute(
        select(Tenant).where(Tenant.id == tenant_id, Tenant.reseller_id == reseller_id)
    )
    return result.scalar_one_or_none()


async def list_tenants(session: AsyncSession, *, reseller_id: str) -> list[Tenant]:
    result = await session.execute(
        select(Tenant).where(Tenant.reseller_id == reseller_id).order_by(Tenant.created_at, Tenant.id)
    )
    return list(result.scalars().all())


async def get_assignment(
    session: AsyncSession, *, reseller_id: str, service_id: str
) -> ResellerServiceAssignment | None:
    result = await session.execute(
        select(ResellerServiceAssignment).where(
            ResellerServiceAssignment.reseller_id == reseller_id,
            ResellerServiceAssignment.service_id == service_id,
        )
    )
    return result.scalar_one_or_none()


async def list_enabled_service_ids(session: AsyncSession, *, reseller_id: str) -> set[str]:
    result = await session.execute(
        select(ResellerServiceAssignment.service_id).where(
            ResellerServiceAssignment.reseller_id == reseller_id,
            ResellerServiceAssignment.enabled.is_(True),
        )
    )
    return set(result.scalars().all())


async def list_assignments(session: AsyncSession, *, reseller_id: str) -> list[ResellerServiceAssignment]:
    result = await session.execute(
        select(ResellerServiceAssignment)
        .where(ResellerServiceAssignment.reseller_id == reseller_id)
        .order_by(ResellerServiceAssignment.assigned_at, ResellerServiceAssignment.id)
    )
    return list(result.scalars().all())


async def deactivate_reseller_entitlements(
    session: AsyncSession, *, reseller_id: str, service_id: str
) -> list[str]:
    # Returns the tenant ids whose entitlement was switched off so caches can be invalidated.
    tenant_ids = select(Tenant.id).where(Tenant.reseller_id == reseller_id)
    result = await session.execute(
        update(ClientService)
        .where(
            ClientService.service_id == service_id,
            ClientService.tenant_id.in_(tenant_ids),
            ClientService.is_active.is_(True),
        )
        .values(is_active=False)
        .returning(ClientService.tenant_id)
        .execution_options(synchronize_session=False)
    )
    return list(result.scalars().all())
