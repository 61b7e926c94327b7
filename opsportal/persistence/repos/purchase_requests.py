from __future__ import annotations

from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from opsportal.domain.models import PurchaseRequest
from opsportal.persistence.guards import tenant_predicate


async def get_request(session: AsyncSession, request_id: str) -> PurchaseRequest | None:
    result = await session.execute(select(PurchaseRequest).where(PurchaseRequest.id == request_id))
    return result.scalar_one_or_none()


async def get_pending(session: AsyncSession, *, tenant_id: str, service_id: str) -> PurchaseRequest | None:
    result = await session.execute(
        select(PurchaseRequest).where(
            tenant_predicate(PurchaseRequest, tenant_id),
            PurchaseRequest.service_id == service_id,
            PurchaseRequest.status == "pending",
        )
    )
    return result.scalar_one_or_none()


async def resolve_pending(
    session: AsyncSession,
    *,
    request_id: str,
    reseller_id: str,
    status: str,
    reviewed_by: str | None,
    reviewed_at: datetime,
) -> PurchaseRequest | None:
    # Only one reviewer can move a request out of pending; a lost race returns None.
    result = await session.execute(
        update(PurchaseRequest)
        .where(
            PurchaseRequest.id == request_id,
            PurchaseRequest.reseller_id == reseller_id,
            PurchaseRequest.status == "pending",
        )
        .values(status=status, reviewed_by=reviewed_by, reviewed_at=reviewed_at)
        .returning(PurchaseRequest)
        .execution_options(synchronize_session=False, populate_existing=True)
    )
    return result.scalar_one_or_none()


async def latest_status_by_service(session: AsyncSession, *, tenant_id: str) -> dict[str, str]:
    # Most recent request per service drives the "request status" badge in the catalog.
    result = await session.execute(
        select(PurchaseRequest)
        .where(tenant_predicate(PurchaseRequest, tenant_id))
        .order_by(PurchaseRequest.created_at, PurchaseRequest.id)
    )
    statuses: dict[str, str] = {}
    for row in result.scalars().all():
        statuses[row.service_id] = row.status
    return statuses


async def list_for_tenant(session: AsyncSession, *, tenant_id: str) -> list[PurchaseRequest]:
    result = await session.execute(
        select(PurchaseRequest)
        .where(tenant_predicate(PurchaseRequest, tenant_id))
        .order_by(PurchaseRequest.created_at.desc(), PurchaseRequest.id)
    )
    return list(result.scalars().all())


async def list_for_reseller(
    session: AsyncSession, *, reseller_id: str, status: str | None = None
) -> list[PurchaseRequest]:
    stmt = select(PurchaseRequest).where(PurchaseRequest.reseller_id == reseller_id)
    if status:
        stmt = stmt.where(PurchaseRequest.status == status)
    result = await session.execute(stmt.order_by(PurchaseRequest.created_at.desc(), PurchaseRequest.id))
    return list(result.scalars().all())
