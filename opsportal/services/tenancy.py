from __future__ import annotations

from dataclasses import dataclass
import logging

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from opsportal.core.config import get_settings
from opsportal.core.errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from opsportal.domain.events import EnablementChanged, EntitlementRevoked
from opsportal.domain.models import Reseller, ResellerServiceAssignment, Tenant, utc_now
from opsportal.persistence.repos import catalog as catalog_repo
from opsportal.persistence.repos import tenancy as tenancy_repo
from opsportal.services.entitlements import invalidate_entitlements_cache
from opsportal.services.events import publish


logger = logging.getLogger(__name__)

ROLE_OWNER = "owner"
ROLE_RESELLER = "reseller"
ROLE_TENANT = "tenant"


@dataclass(frozen=True)
class Principal:
    # Identity re-derived from the gateway user id; never from a request body.
    user_id: str
    role: str
    reseller_id: str | None = None
    tenant_id: str | None = None


async def resolve_principal(session: AsyncSession, user_id: str) -> Principal:
    if not user_id:
        raise AuthorizationError("Missing caller identity")
    if user_id in get_settings().owner_user_ids():
        return Principal(user_id=user_id, role=ROLE_OWNER)
    reseller = await tenancy_repo.get_reseller_by_user(session, user_id)
    if reseller is not None:
        if not reseller.is_active:
            raise AuthorizationError("Reseller account is disabled")
        return Principal(user_id=user_id, role=ROLE_RESELLER, reseller_id=reseller.id)
    tenant = await tenancy_repo.get_tenant_by_user(session, user_id)
    if tenant is not None:
        if not tenant.is_active:
            raise AuthorizationError("Client account is disabled")
        return Principal(
            user_id=user_id, role=ROLE_TENANT, reseller_id=tenant.reseller_id, tenant_id=tenant.id
        )
    raise AuthorizationError("Caller is not registered with the portal")


async def get_reseller(session: AsyncSession, reseller_id: str) -> Reseller:
    reseller = await tenancy_repo.get_reseller(session, reseller_id)
    if reseller is None:
        raise NotFoundError("Reseller not found", details={"reseller_id": reseller_id})
    return reseller


async def get_tenant(session: AsyncSession, tenant_id: str) -> Tenant:
    tenant = await tenancy_repo.get_tenant(session, tenant_id)
    if tenant is None:
        raise NotFoundError("Tenant not found", details={"tenant_id": tenant_id})
    return tenant


async def get_owned_tenant(session: AsyncSession, *, reseller_id: str, tenant_id: str) -> Tenant:
    # Tenants outside the reseller's book look identical to unknown ones.
    tenant = await tenancy_repo.get_tenant_for_reseller(session, reseller_id=reseller_id, tenant_id=tenant_id)
    if tenant is None:
        raise NotFoundError("Tenant not found", details={"tenant_id": tenant_id})
    return tenant


async def onboard_reseller(session: AsyncSession, *, user_id: str, company_name: str) -> Reseller:
    if not company_name or not company_name.strip():
        raise ValidationError("Company name is required", field_errors={"company_name": "This field is required"})
    reseller = Reseller(user_id=user_id, company_name=company_name.strip())
    session.add(reseller)
    try:
        await session.commit()
    except IntegrityError as exc:
        await session.rollback()
        raise ConflictError("User is already onboarded", details={"user_id": user_id}) from exc
    await session.refresh(reseller)
    logger.info("reseller_onboarded reseller_id=%s", reseller.id)
    return reseller


async def onboard_tenant(
    session: AsyncSession,
    *,
    reseller_id: str,
    user_id: str,
    company_name: str,
    industry: str | None = None,
) -> Tenant:
    await get_reseller(session, reseller_id)
    if not company_name or not company_name.strip():
        raise ValidationError("Company name is required", field_errors={"company_name": "This field is required"})
    # A user id belongs to exactly one role.
    if await tenancy_repo.get_reseller_by_user(session, user_id) is not None:
        raise ConflictError("User is already onboarded", details={"user_id": user_id})
    tenant = Tenant(
        user_id=user_id,
        reseller_id=reseller_id,
        company_name=company_name.strip(),
        industry=industry,
    )
    session.add(tenant)
    try:
        await session.commit()
    except IntegrityError as exc:
        await session.rollback()
        raise ConflictError("User is already onboarded", details={"user_id": user_id}) from exc
    await session.refresh(tenant)
    logger.info("tenant_onboarded tenant_id=%s reseller_id=%s", tenant.id, reseller_id)
    return tenant


async def list_resellers(session: AsyncSession) -> list[Reseller]:
    return await tenancy_repo.list_resellers(session)


async def list_tenants(session: AsyncSession, *, reseller_id: str) -> list[Tenant]:
    return await tenancy_repo.list_tenants(session, reseller_id=reseller_id)


async def set_reseller_enablement(
    session: AsyncSession,
    *,
    reseller_id: str,
    service_id: str,
    enabled: bool,
    actor_id: str | None = None,
) -> tuple[ResellerServiceAssignment, int]:
    """Enable or disable a service for a reseller.

    Disabling also switches off every tenant entitlement for that service under
    the reseller, since an entitlement may only be active for enabled services.
    Returns the assignment and the number of entitlements deactivated.
    """
    await get_reseller(session, reseller_id)
    service = await catalog_repo.get_service(session, service_id)
    if service is None:
        raise NotFoundError("Service not found", details={"service_id": service_id})

    assignment = await tenancy_repo.get_assignment(session, reseller_id=reseller_id, service_id=service_id)
    if assignment is None:
        assignment = ResellerServiceAssignment(reseller_id=reseller_id, service_id=service_id)
        session.add(assignment)
    assignment.enabled = enabled
    assignment.assigned_by = actor_id
    assignment.assigned_at = utc_now()

    affected: list[str] = []
    if not enabled:
        affected = await tenancy_repo.deactivate_reseller_entitlements(
            session, reseller_id=reseller_id, service_id=service_id
        )
    try:
        await session.commit()
    except IntegrityError as exc:
        await session.rollback()
        raise ConflictError("Enablement changed concurrently; retry") from exc
    await session.refresh(assignment)
    for tenant_id in affected:
        invalidate_entitlements_cache(tenant_id)

    logger.info(
        "reseller_enablement_changed reseller_id=%s service_id=%s enabled=%s deactivated=%s",
        reseller_id,
        service_id,
        enabled,
        len(affected),
    )
    await publish(
        EnablementChanged(
            tenant_id=None,
            actor_id=actor_id,
            reseller_id=reseller_id,
            service_id=service_id,
            enabled=enabled,
            deactivated_entitlements=len(affected),
        )
    )
    for tenant_id in affected:
        await publish(
            EntitlementRevoked(
                tenant_id=tenant_id,
                actor_id=actor_id,
                service_id=service_id,
                service_name=service.name,
                reason="service disabled for reseller",
            )
        )
    return assignment, len(affected)


async def list_enablements(session: AsyncSession, *, reseller_id: str) -> list[ResellerServiceAssignment]:
    await get_reseller(session, reseller_id)
    return await tenancy_repo.list_assignments(session, reseller_id=reseller_id)
