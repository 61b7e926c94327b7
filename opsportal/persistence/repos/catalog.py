from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from opsportal.domain.models import Service, ServicePlan, WorkflowTemplate


async def get_service(session: AsyncSession, service_id: str) -> Service | None:
    result = await session.execute(select(Service).where(Service.id == service_id))
    return result.scalar_one_or_none()


async def get_service_by_slug(session: AsyncSession, slug: str) -> Service | None:
    result = await session.execute(select(Service).where(Service.slug == slug))
    return result.scalar_one_or_none()


async def list_services(session: AsyncSession, *, active_only: bool = True) -> list[Service]:
    # Stable ordering keeps the client catalog deterministic between requests.
    stmt = select(Service)
    if active_only:
        stmt = stmt.where(Service.is_active.is_(True))
    result = await session.execute(stmt.order_by(Service.category, Service.name, Service.id))
    return list(result.scalars().all())


async def get_plan(session: AsyncSession, plan_id: str) -> ServicePlan | None:
    result = await session.execute(select(ServicePlan).where(ServicePlan.id == plan_id))
    return result.scalar_one_or_none()


async def list_plans(
    session: AsyncSession,
    *,
    service_ids: list[str] | None = None,
    active_only: bool = True,
) -> list[ServicePlan]:
    stmt = select(ServicePlan)
    if service_ids is not None:
        if not service_ids:
            return []
        stmt = stmt.where(ServicePlan.service_id.in_(service_ids))
    if active_only:
        stmt = stmt.where(ServicePlan.is_active.is_(True))
    result = await session.execute(stmt.order_by(ServicePlan.service_id, ServicePlan.name, ServicePlan.id))
    return list(result.scalars().all())


async def get_template(session: AsyncSession, template_id: str) -> WorkflowTemplate | None:
    result = await session.execute(select(WorkflowTemplate).where(WorkflowTemplate.id == template_id))
    return result.scalar_one_or_none()


async def get_active_template(session: AsyncSession, service_id: str) -> WorkflowTemplate | None:
    # Newest active template wins when a service has been re-templated.
    result = await session.execute(
        select(WorkflowTemplate)
        .where(WorkflowTemplate.service_id == service_id, WorkflowTemplate.is_active.is_(True))
        .order_by(WorkflowTemplate.created_at.desc(), WorkflowTemplate.id.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def list_templates(session: AsyncSession, service_id: str) -> list[WorkflowTemplate]:
    result = await session.execute(
        select(WorkflowTemplate)
        .where(WorkflowTemplate.service_id == service_id)
        .order_by(WorkflowTemplate.created_at.desc(), WorkflowTemplate.id.desc())
    )
    return list(result.scalars().all())
