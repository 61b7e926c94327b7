from __future__ import annotations

from dataclasses import dataclass
import asyncio
import logging
import time

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from opsportal.core.config import get_settings
from opsportal.core.errors import (
    AuthorizationError,
    ConflictError,
    DatabaseError,
    NotFoundError,
    ValidationError,
)
from opsportal.domain.events import EntitlementGranted, EntitlementRevoked
from opsportal.domain.models import ClientService, Service, ServicePlan, utc_now
from opsportal.domain.state import PurchaseRequestStatus, ResetPeriod
from opsportal.persistence.repos import catalog as catalog_repo
from opsportal.persistence.repos import entitlements as entitlements_repo
from opsportal.persistence.repos import purchase_requests as requests_repo
from opsportal.persistence.repos import tenancy as tenancy_repo
from opsportal.services.events import publish


logger = logging.getLogger(__name__)

LOCK_REASON = "Contact your administrator to activate this service."


@dataclass(frozen=True)
class ServiceView:
    # One catalog entry as seen by a specific tenant.
    definition: Service
    is_unlocked: bool
    lock_reason: str | None
    entitlement: ClientService | None
    available_plans: list[ServicePlan]
    request_status: str | None = None
    can_request: bool = False


_resolve_cache: dict[str, tuple[float, list[ServiceView]]] = {}
_resolve_cache_lock = asyncio.Lock()


def invalidate_entitlements_cache(tenant_id: str) -> None:
    # Drop the cached catalog after grants, revocations and approvals.
    _resolve_cache.pop(tenant_id, None)


def reset_entitlements_cache() -> None:
    # Clear cached catalogs for deterministic tests.
    _resolve_cache.clear()


async def resolve(session: AsyncSession, tenant_id: str) -> list[ServiceView]:
    """Project the catalog for one tenant.

    A service is unlocked only when the tenant holds an active entitlement for
    it; reseller enablement alone never unlocks anything. Plans are offered for
    a locked service only when the tenant's reseller has the service enabled.
    Results are cached per tenant for ``entitlement_cache_ttl_s`` seconds.
    """
    now = time.monotonic()
    cached = _resolve_cache.get(tenant_id)
    if cached and cached[0] > now:
        return cached[1]

    try:
        views = await _compute_views(session, tenant_id)
    except SQLAlchemyError as exc:
        logger.error("entitlement_resolve_failed tenant_id=%s", tenant_id, exc_info=exc)
        raise DatabaseError("Catalog is temporarily unavailable") from exc

    ttl = get_settings().entitlement_cache_ttl_s
    if ttl > 0:
        async with _resolve_cache_lock:
            _resolve_cache[tenant_id] = (now + ttl, views)
    return views


async def _compute_views(session: AsyncSession, tenant_id: str) -> list[ServiceView]:
    tenant = await tenancy_repo.get_tenant(session, tenant_id)
    if tenant is None:
        raise NotFoundError("Tenant not found", details={"tenant_id": tenant_id})

    entitlements = {
        row.service_id: row
        for row in await entitlements_repo.list_entitlements(session, tenant_id=tenant_id)
    }
    enabled_ids = await tenancy_repo.list_enabled_service_ids(session, reseller_id=tenant.reseller_id)
    request_statuses = await requests_repo.latest_status_by_service(session, tenant_id=tenant_id)
    services = await catalog_repo.list_services(session, active_only=False)
    plans = await catalog_repo.list_plans(session, service_ids=[service.id for service in services])
    plans_by_service: dict[str, list[ServicePlan]] = {}
    for plan in plans:
        plans_by_service.setdefault(plan.service_id, []).append(plan)

    views: list[ServiceView] = []
    for service in services:
        entitlement = entitlements.get(service.id)
        unlocked = entitlement is not None and entitlement.is_active
        # Retired services stay visible only to tenants still entitled to them.
        if not service.is_active and not unlocked:
            continue
        offered = service.id in enabled_ids
        request_status = request_statuses.get(service.id)
        views.append(
            ServiceView(
                definition=service,
                is_unlocked=unlocked,
                lock_reason=None if unlocked else LOCK_REASON,
                entitlement=entitlement if unlocked else None,
                available_plans=list(plans_by_service.get(service.id, [])) if (unlocked or offered) else [],
                request_status=request_status,
                can_request=(
                    not unlocked
                    and offered
                    and request_status != PurchaseRequestStatus.PENDING.value
                ),
            )
        )
    return views


async def require_entitlement(session: AsyncSession, *, tenant_id: str, service_id: str) -> ClientService:
    # Gate every tenant-initiated operation on an active entitlement.
    entitlement = await entitlements_repo.get_active_entitlement(
        session, tenant_id=tenant_id, service_id=service_id
    )
    if entitlement is None:
        raise AuthorizationError(
            "Tenant is not entitled to this service",
            details={"tenant_id": tenant_id, "service_id": service_id},
        )
    return entitlement


async def list_entitlements(session: AsyncSession, *, tenant_id: str) -> list[ClientService]:
    return await entitlements_repo.list_entitlements(session, tenant_id=tenant_id)


def _reset_period(value: str) -> str:
    try:
        return ResetPeriod(value).value
    except ValueError as exc:
        allowed = ", ".join(member.value for member in ResetPeriod)
        raise ValidationError(
            "Invalid reset period", field_errors={"reset_period": f"Must be one of: {allowed}"}
        ) from exc


async def upsert_entitlement(
    session: AsyncSession,
    *,
    reseller_id: str,
    tenant_id: str,
    service_id: str,
    plan_id: str | None = None,
    usage_limit: int | None = None,
    reset_period: str = ResetPeriod.MONTHLY.value,
    actor_id: str | None = None,
) -> tuple[ClientService, Service]:
    """Create or reactivate a tenant entitlement without committing.

    Guards run before any mutation: the tenant must belong to the reseller and
    the reseller must have the service enabled.
    """
    tenant = await tenancy_repo.get_tenant_for_reseller(session, reseller_id=reseller_id, tenant_id=tenant_id)
    if tenant is None:
        raise AuthorizationError("Tenant does not belong to this reseller", details={"tenant_id": tenant_id})
    service = await catalog_repo.get_service(session, service_id)
    if service is None:
        raise NotFoundError("Service not found", details={"service_id": service_id})
    assignment = await tenancy_repo.get_assignment(session, reseller_id=reseller_id, service_id=service_id)
    if assignment is None or not assignment.enabled:
        raise AuthorizationError(
            "Service is not enabled for this reseller",
            details={"service_id": service_id},
        )
    if usage_limit is not None and usage_limit < 0:
        raise ValidationError("Invalid usage limit", field_errors={"usage_limit": "Must not be negative"})
    period = _reset_period(reset_period)

    plan: ServicePlan | None = None
    if plan_id is not None:
        plan = await catalog_repo.get_plan(session, plan_id)
        if plan is None or plan.service_id != service_id or not plan.is_active:
            raise ValidationError("Invalid plan", field_errors={"plan_id": "Plan is not available for this service"})
    resolved_limit = usage_limit if usage_limit is not None else (plan.usage_limit if plan else None)

    entitlement = await entitlements_repo.get_entitlement(session, tenant_id=tenant_id, service_id=service_id)
    if entitlement is None:
        entitlement = ClientService(
            tenant_id=tenant_id,
            service_id=service_id,
            usage_consumed=0,
            last_reset_at=utc_now(),
        )
        session.add(entitlement)
    entitlement.plan_id = plan.id if plan else None
    entitlement.usage_limit = resolved_limit
    entitlement.reset_period = period
    entitlement.is_active = True
    entitlement.assigned_by = actor_id
    entitlement.assigned_at = utc_now()
    return entitlement, service


async def grant_entitlement(
    session: AsyncSession,
    *,
    reseller_id: str,
    tenant_id: str,
    service_id: str,
    plan_id: str | None = None,
    usage_limit: int | None = None,
    reset_period: str = ResetPeriod.MONTHLY.value,
    actor_id: str | None = None,
) -> ClientService:
    entitlement, service = await upsert_entitlement(
        session,
        reseller_id=reseller_id,
        tenant_id=tenant_id,
        service_id=service_id,
        plan_id=plan_id,
        usage_limit=usage_limit,
        reset_period=reset_period,
        actor_id=actor_id,
    )
    try:
        await session.commit()
    except IntegrityError as exc:
        await session.rollback()
        raise ConflictError("Entitlement was granted concurrently; retry") from exc
    await session.refresh(entitlement)
    invalidate_entitlements_cache(tenant_id)
    logger.info("entitlement_granted tenant_id=%s service_id=%s", tenant_id, service_id)
    await publish(
        EntitlementGranted(
            tenant_id=tenant_id,
            actor_id=actor_id,
            service_id=service_id,
            service_name=service.name,
            plan_id=entitlement.plan_id,
            usage_limit=entitlement.usage_limit,
        )
    )
    return entitlement


async def revoke_entitlement(
    session: AsyncSession,
    *,
    reseller_id: str,
    tenant_id: str,
    service_id: str,
    actor_id: str | None = None,
) -> ClientService:
    # Deactivate rather than delete so usage history stays attached.
    tenant = await tenancy_repo.get_tenant_for_reseller(session, reseller_id=reseller_id, tenant_id=tenant_id)
    if tenant is None:
        raise AuthorizationError("Tenant does not belong to this reseller", details={"tenant_id": tenant_id})
    entitlement = await entitlements_repo.get_entitlement(session, tenant_id=tenant_id, service_id=service_id)
    if entitlement is None:
        raise NotFoundError(
            "Entitlement not found", details={"tenant_id": tenant_id, "service_id": service_id}
        )
    service = await catalog_repo.get_service(session, service_id)
    entitlement.is_active = False
    await session.commit()
    invalidate_entitlements_cache(tenant_id)
    logger.info("entitlement_revoked tenant_id=%s service_id=%s", tenant_id, service_id)
    await publish(
        EntitlementRevoked(
            tenant_id=tenant_id,
            actor_id=actor_id,
            service_id=service_id,
            service_name=service.name if service else service_id,
        )
    )
    return entitlement
