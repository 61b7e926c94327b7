from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from opsportal.core.errors import InvalidStateError, NotFoundError
from opsportal.domain.state import WorkflowStatus
from opsportal.persistence.repos import catalog as catalog_repo
from opsportal.persistence.repos import workflows as workflows_repo
from opsportal.providers.capabilities.base import CapabilityProvider, CapabilityRequest, CapabilityResult
from opsportal.providers.capabilities.factory import get_capability_provider
from opsportal.services import credentials as vault
from opsportal.services.entitlements import require_entitlement
from opsportal.services.quota import UsageRecordResult, get_quota_ledger


logger = logging.getLogger(__name__)


async def invoke_capability(
    session: AsyncSession,
    *,
    tenant_id: str,
    service_id: str,
    payload: dict[str, Any] | None = None,
    provider: CapabilityProvider | None = None,
) -> tuple[CapabilityResult, UsageRecordResult]:
    """Start new usage of a capability on behalf of a tenant.

    Gating happens here rather than in the ledger: the tenant needs an active
    entitlement, an ACTIVE instance and headroom under the quota. Units the
    provider reports are then recorded against the entitlement.
    """
    await require_entitlement(session, tenant_id=tenant_id, service_id=service_id)
    ledger = get_quota_ledger()
    await ledger.check_quota(session, tenant_id=tenant_id, service_id=service_id)

    instance = await workflows_repo.get_instance_for_service(session, tenant_id=tenant_id, service_id=service_id)
    if instance is None:
        raise NotFoundError("Workflow instance not found", details={"service_id": service_id})
    if instance.status != WorkflowStatus.ACTIVE.value or not instance.is_active:
        raise InvalidStateError(
            "Workflow instance is not active",
            details={"instance_id": instance.id, "status": instance.status},
        )
    service = await catalog_repo.get_service(session, service_id)
    credentials = await vault.read_values(session, tenant_id=tenant_id, instance_id=instance.id)

    result = await (provider or get_capability_provider()).invoke(
        CapabilityRequest(
            tenant_id=tenant_id,
            service_slug=service.slug if service else service_id,
            instance_id=instance.id,
            webhook_endpoint=instance.webhook_endpoint,
            payload=dict(payload or {}),
            credentials=credentials,
        )
    )
    logger.info(
        "capability_invoked tenant_id=%s service_id=%s status=%s units=%s",
        tenant_id,
        service_id,
        result.status,
        result.units,
    )
    if result.units <= 0:
        snapshot = await ledger.current_usage(session, tenant_id=tenant_id, service_id=service_id)
        return result, UsageRecordResult(snapshot=snapshot)
    usage = await ledger.record_usage(
        session,
        tenant_id=tenant_id,
        service_id=service_id,
        quantity=result.units,
        source=f"capability:{result.external_id or instance.id}",
    )
    return result, usage
