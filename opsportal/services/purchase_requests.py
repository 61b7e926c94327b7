from __future__ import annotations

import logging

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from opsportal.core.errors import (
    AuthorizationError,
    ConflictError,
    InvalidStateError,
    NotFoundError,
    PortalError,
    ValidationError,
)
from opsportal.domain.events import EntitlementGranted, PurchaseRequestResolved, PurchaseRequestSubmitted
from opsportal.domain.models import PurchaseRequest, utc_now
from opsportal.domain.state import PurchaseRequestStatus, ResetPeriod
from opsportal.persistence.repos import catalog as catalog_repo
from opsportal.persistence.repos import entitlements as entitlements_repo
from opsportal.persistence.repos import purchase_requests as requests_repo
from opsportal.persistence.repos import tenancy as tenancy_repo
from opsportal.services.entitlements import invalidate_entitlements_cache, upsert_entitlement
from opsportal.services.events import publish


logger = logging.getLogger(__name__)


async def submit_request(
    session: AsyncSession,
    *,
    tenant_id: str,
    service_id: str,
    plan_id: str | None = None,
    message: str | None = None,
    actor_id: str | None = None,
) -> PurchaseRequest:
    """Record a tenant's self-service ask for a locked service.

    Only one pending request may exist per tenant and service; a second
    submission is a conflict until the first is resolved.
    """
    tenant = await tenancy_repo.get_tenant(session, tenant_id)
    if tenant is None:
        raise NotFoundError("Tenant not found", details={"tenant_id": tenant_id})
    service = await catalog_repo.get_service(session, service_id)
    if service is None or not service.is_active:
        raise NotFoundError("Service not found", details={"service_id": service_id})
    assignment = await tenancy_repo.get_assignment(session, reseller_id=tenant.reseller_id, service_id=service_id)
    if assignment is None or not assignment.enabled:
        raise AuthorizationError("Service is not offered by your administrator", details={"service_id": service_id})
    if await entitlements_repo.get_active_entitlement(session, tenant_id=tenant_id, service_id=service_id):
        raise ConflictError("Service is already active for this tenant", details={"service_id": service_id})
    if plan_id is not None:
        plan = await catalog_repo.get_plan(session, plan_id)
        if plan is None or plan.service_id != service_id or not plan.is_active:
            raise ValidationError("Invalid plan", field_errors={"plan_id": "Plan is not available for this service"})
    if await requests_repo.get_pending(session, tenant_id=tenant_id, service_id=service_id):
        raise ConflictError("A request for this service is already pending", details={"service_id": service_id})

    request = PurchaseRequest(
        tenant_id=tenant_id,
        reseller_id=tenant.reseller_id,
        service_id=service_id,
        plan_id=plan_id,
        message=(message or "").strip() or None,
        status=PurchaseRequestStatus.PENDING.value,
    )
    session.add(request)
    try:
        await session.commit()
    except IntegrityError as exc:
        await session.rollback()
        raise ConflictError(
            "A request for this service is already pending", details={"service_id": service_id}
        ) from exc
    await session.refresh(request)
    invalidate_entitlements_cache(tenant_id)
    logger.info("purchase_request_submitted request_id=%s tenant_id=%s", request.id, tenant_id)
    await publish(
        PurchaseRequestSubmitted(
            tenant_id=tenant_id,
            actor_id=actor_id,
            request_id=request.id,
            reseller_id=tenant.reseller_id,
            service_id=service_id,
            service_name=service.name,
            tenant_name=tenant.company_name,
        )
    )
    return request


async def _load_for_reseller(session: AsyncSession, *, reseller_id: str, request_id: str) -> PurchaseRequest:
    request = await requests_repo.get_request(session, request_id)
    if request is None or request.reseller_id != reseller_id:
        raise NotFoundError("Purchase request not found", details={"request_id": request_id})
    if request.status != PurchaseRequestStatus.PENDING.value:
        raise InvalidStateError(
            "Purchase request is already resolved",
            details={"request_id": request_id, "status": request.status},
        )
    return request


async def _claim(
    session: AsyncSession,
    *,
    reseller_id: str,
    request_id: str,
    status: str,
    actor_id: str | None,
) -> PurchaseRequest:
    await _load_for_reseller(session, reseller_id=reseller_id, request_id=request_id)
    # A concurrent reviewer may resolve the request between the read and this write.
    claimed = await requests_repo.resolve_pending(
        session,
        request_id=request_id,
        reseller_id=reseller_id,
        status=status,
        reviewed_by=actor_id,
        reviewed_at=utc_now(),
    )
    if claimed is None:
        await session.rollback()
        raise InvalidStateError("Purchase request is already resolved", details={"request_id": request_id})
    return claimed


async def approve_request(
    session: AsyncSession,
    *,
    reseller_id: str,
    request_id: str,
    plan_id: str | None = None,
    usage_limit: int | None = None,
    reset_period: str = ResetPeriod.MONTHLY.value,
    actor_id: str | None = None,
) -> PurchaseRequest:
    # Approval grants the entitlement in the same transaction as the status change.
    request = await _claim(
        session,
        reseller_id=reseller_id,
        request_id=request_id,
        status=PurchaseRequestStatus.APPROVED.value,
        actor_id=actor_id,
    )
    try:
        entitlement, service = await upsert_entitlement(
            session,
            reseller_id=reseller_id,
            tenant_id=request.tenant_id,
            service_id=request.service_id,
            plan_id=plan_id or request.plan_id,
            usage_limit=usage_limit,
            reset_period=reset_period,
            actor_id=actor_id,
        )
        await session.commit()
    except PortalError:
        await session.rollback()
        raise
    except IntegrityError as exc:
        await session.rollback()
        raise ConflictError("Purchase request changed concurrently; retry") from exc
    invalidate_entitlements_cache(request.tenant_id)
    logger.info("purchase_request_approved request_id=%s", request.id)
    await publish(
        EntitlementGranted(
            tenant_id=request.tenant_id,
            actor_id=actor_id,
            service_id=request.service_id,
            service_name=service.name,
            plan_id=entitlement.plan_id,
            usage_limit=entitlement.usage_limit,
        )
    )
    await publish(
        PurchaseRequestResolved(
            tenant_id=request.tenant_id,
            actor_id=actor_id,
            request_id=request.id,
            service_id=request.service_id,
            service_name=service.name,
            status=request.status,
        )
    )
    return request


async def reject_request(
    session: AsyncSession,
    *,
    reseller_id: str,
    request_id: str,
    actor_id: str | None = None,
) -> PurchaseRequest:
    request = await _claim(
        session,
        reseller_id=reseller_id,
        request_id=request_id,
        status=PurchaseRequestStatus.REJECTED.value,
        actor_id=actor_id,
    )
    await session.commit()
    invalidate_entitlements_cache(request.tenant_id)
    service = await catalog_repo.get_service(session, request.service_id)
    logger.info("purchase_request_rejected request_id=%s", request.id)
    await publish(
        PurchaseRequestResolved(
            tenant_id=request.tenant_id,
            actor_id=actor_id,
            request_id=request.id,
            service_id=request.service_id,
            service_name=service.name if service else request.service_id,
            status=request.status,
        )
    )
    return request


async def list_for_tenant(session: AsyncSession, *, tenant_id: str) -> list[PurchaseRequest]:
    return await requests_repo.list_for_tenant(session, tenant_id=tenant_id)


async def list_for_reseller(
    session: AsyncSession, *, reseller_id: str, status: str | None = None
) -> list[PurchaseRequest]:
    return await requests_repo.list_for_reseller(session, reseller_id=reseller_id, status=status)
