from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from opsportal.domain.models import AuditEvent
from opsportal.persistence.guards import tenant_predicate


async def list_events(
    session: AsyncSession,
    *,
    tenant_id: str,
    event_type: str | None = None,
    resource_id: str | None = None,
    occurred_from: datetime | None = None,
    limit: int = 50,
) -> list[AuditEvent]:
    # Scope all audit queries to a tenant to prevent cross-tenant leakage.
    stmt = select(AuditEvent).where(tenant_predicate(AuditEvent, tenant_id))
    if event_type:
        stmt = stmt.where(AuditEvent.event_type == event_type)
    if resource_id:
        stmt = stmt.where(AuditEvent.resource_id == resource_id)
    if occurred_from:
        stmt = stmt.where(AuditEvent.occurred_at >= occurred_from)
    stmt = stmt.order_by(AuditEvent.occurred_at.desc(), AuditEvent.id.desc()).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())
