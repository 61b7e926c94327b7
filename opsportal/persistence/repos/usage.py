from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import func, select, update
from sqlalchemy.engine import Row
from sqlalchemy.ext.asyncio import AsyncSession

from opsportal.domain.models import ClientService, UsageEvent, utc_now
from opsportal.persistence.guards import tenant_predicate


async def increment_consumed(
    session: AsyncSession, *, tenant_id: str, service_id: str, quantity: int
) -> Row | None:
    # Single UPDATE ... RETURNING; the database serializes concurrent increments.
    result = await session.execute(
        update(ClientService)
        .where(
            tenant_predicate(ClientService, tenant_id),
            ClientService.service_id == service_id,
        )
        .values(
            usage_consumed=ClientService.usage_consumed + quantity,
            updated_at=utc_now(),
        )
        .returning(
            ClientService.id,
            ClientService.usage_consumed,
            ClientService.usage_limit,
            ClientService.reset_period,
            ClientService.is_active,
        )
        .execution_options(synchronize_session=False)
    )
    return result.one_or_none()


def append_event(
    session: AsyncSession,
    *,
    tenant_id: str,
    service_id: str,
    quantity: int,
    unit_cost: Decimal | None,
    source: str | None,
    occurred_at: datetime,
) -> UsageEvent:
    event = UsageEvent(
        tenant_id=tenant_id,
        service_id=service_id,
        quantity=quantity,
        unit_cost=unit_cost,
        source=source,
        occurred_at=occurred_at,
    )
    session.add(event)
    return event


async def list_events(
    session: AsyncSession,
    *,
    tenant_id: str,
    service_id: str | None = None,
    occurred_from: datetime | None = None,
    occurred_to: datetime | None = None,
    limit: int = 100,
) -> list[UsageEvent]:
    stmt = select(UsageEvent).where(tenant_predicate(UsageEvent, tenant_id))
    if service_id:
        stmt = stmt.where(UsageEvent.service_id == service_id)
    if occurred_from:
        stmt = stmt.where(UsageEvent.occurred_at >= occurred_from)
    if occurred_to:
        stmt = stmt.where(UsageEvent.occurred_at <= occurred_to)
    stmt = stmt.order_by(UsageEvent.occurred_at.desc(), UsageEvent.id.desc()).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def sum_events(session: AsyncSession, *, tenant_id: str, service_id: str) -> int:
    # Lifetime total from the append-only history; unaffected by rollovers.
    result = await session.execute(
        select(func.coalesce(func.sum(UsageEvent.quantity), 0)).where(
            tenant_predicate(UsageEvent, tenant_id),
            UsageEvent.service_id == service_id,
        )
    )
    return int(result.scalar_one())


async def list_resettable(session: AsyncSession) -> list[ClientService]:
    # Rollover candidates across all tenants; only the scheduled job calls this.
    result = await session.execute(
        select(ClientService)
        .where(ClientService.reset_period != "none")
        .order_by(ClientService.id)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def reset_counter(session: AsyncSession, *, entitlement_id: str, reset_at: datetime) -> int | None:
    result = await session.execute(
        update(ClientService)
        .where(ClientService.id == entitlement_id)
        .values(usage_consumed=0, last_reset_at=reset_at, updated_at=reset_at)
        .returning(ClientService.usage_consumed)
        .execution_options(synchronize_session=False)
    )
    return result.scalar_one_or_none()
