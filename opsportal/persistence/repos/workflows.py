from __future__ import annotations

from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from opsportal.domain.models import WorkflowCredential, WorkflowInstance
from opsportal.persistence.guards import tenant_predicate


async def get_instance(
    session: AsyncSession, *, tenant_id: str, instance_id: str
) -> WorkflowInstance | None:
    # Ensure tenant scoping to prevent cross-tenant instance access.
    result = await session.execute(
        select(WorkflowInstance).where(
            tenant_predicate(WorkflowInstance, tenant_id),
            WorkflowInstance.id == instance_id,
        )
    )
    return result.scalar_one_or_none()


async def get_instance_for_service(
    session: AsyncSession, *, tenant_id: str, service_id: str
) -> WorkflowInstance | None:
    result = await session.execute(
        select(WorkflowInstance).where(
            tenant_predicate(WorkflowInstance, tenant_id),
            WorkflowInstance.service_id == service_id,
        )
    )
    return result.scalar_one_or_none()


async def list_instances(session: AsyncSession, *, tenant_id: str) -> list[WorkflowInstance]:
    result = await session.execute(
        select(WorkflowInstance)
        .where(tenant_predicate(WorkflowInstance, tenant_id))
        .order_by(WorkflowInstance.created_at, WorkflowInstance.id)
    )
    return list(result.scalars().all())


async def list_provisioned_service_ids(session: AsyncSession, *, tenant_id: str) -> set[str]:
    result = await session.execute(
        select(WorkflowInstance.service_id).where(tenant_predicate(WorkflowInstance, tenant_id))
    )
    return set(result.scalars().all())


async def list_slots(session: AsyncSession, instance_id: str) -> list[WorkflowCredential]:
    # Position mirrors the template's required_credentials order.
    result = await session.execute(
        select(WorkflowCredential)
        .where(WorkflowCredential.workflow_instance_id == instance_id)
        .order_by(WorkflowCredential.position, WorkflowCredential.name)
    )
    return list(result.scalars().all())


async def get_slot(session: AsyncSession, *, instance_id: str, name: str) -> WorkflowCredential | None:
    result = await session.execute(
        select(WorkflowCredential).where(
            WorkflowCredential.workflow_instance_id == instance_id,
            WorkflowCredential.name == name,
        )
    )
    return result.scalar_one_or_none()


async def increment_execution(
    session: AsyncSession, *, tenant_id: str, instance_id: str, executed_at: datetime
) -> int | None:
    # Atomic increment so concurrent execution callbacks never lose a count.
    result = await session.execute(
        update(WorkflowInstance)
        .where(
            tenant_predicate(WorkflowInstance, tenant_id),
            WorkflowInstance.id == instance_id,
        )
        .values(
            execution_count=WorkflowInstance.execution_count + 1,
            last_executed_at=executed_at,
        )
        .returning(WorkflowInstance.execution_count)
        .execution_options(synchronize_session=False)
    )
    return result.scalar_one_or_none()
