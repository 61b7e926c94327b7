from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from opsportal.apps.api.deps import get_db, require_reseller
from opsportal.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from opsportal.apps.api.response import SuccessEnvelope, success_response
from opsportal.apps.api.schemas import (
    AuditEventResponse,
    EnablementResponse,
    EntitlementResponse,
    PurchaseRequestResponse,
    TenantResponse,
    audit_payload,
    enablement_payload,
    entitlement_payload,
    purchase_request_payload,
    tenant_payload,
)
from opsportal.domain.state import ResetPeriod
from opsportal.persistence.repos import audit as audit_repo
from opsportal.services import entitlements, purchase_requests, tenancy
from opsportal.services.tenancy import Principal


router = APIRouter(prefix="/reseller", tags=["reseller-admin"], responses=DEFAULT_ERROR_RESPONSES)


class TenantCreateRequest(BaseModel):
    user_id: str = Field(min_length=1, max_length=128)
    company_name: str = Field(min_length=1, max_length=256)
    industry: str | None = Field(default=None, max_length=128)


class EntitlementGrantRequest(BaseModel):
    plan_id: str | None = None
    usage_limit: int | None = Field(default=None, ge=0)
    reset_period: ResetPeriod = ResetPeriod.MONTHLY


class PurchaseApprovalRequest(BaseModel):
    plan_id: str | None = None
    usage_limit: int | None = Field(default=None, ge=0)
    reset_period: ResetPeriod = ResetPeriod.MONTHLY


class TenantListResponse(BaseModel):
    items: list[TenantResponse]


class EntitlementListResponse(BaseModel):
    items: list[EntitlementResponse]


class EnablementListResponse(BaseModel):
    items: list[EnablementResponse]


class PurchaseRequestListResponse(BaseModel):
    items: list[PurchaseRequestResponse]


class AuditEventListResponse(BaseModel):
    items: list[AuditEventResponse]


@router.get("/services", response_model=SuccessEnvelope[EnablementListResponse])
async def list_enabled_services(
    request: Request,
    principal: Principal = Depends(require_reseller),
    db: AsyncSession = Depends(get_db),
) -> dict:
    rows = await tenancy.list_enablements(db, reseller_id=str(principal.reseller_id))
    payload = EnablementListResponse(items=[enablement_payload(row) for row in rows])
    return success_response(request=request, data=payload)


@router.get("/tenants", response_model=SuccessEnvelope[TenantListResponse])
async def list_tenants(
    request: Request,
    principal: Principal = Depends(require_reseller),
    db: AsyncSession = Depends(get_db),
) -> dict:
    rows = await tenancy.list_tenants(db, reseller_id=str(principal.reseller_id))
    payload = TenantListResponse(items=[tenant_payload(row) for row in rows])
    return success_response(request=request, data=payload)


@router.post("/tenants", status_code=201, response_model=SuccessEnvelope[TenantResponse])
async def onboard_tenant(
    request: Request,
    body: TenantCreateRequest,
    principal: Principal = Depends(require_reseller),
    db: AsyncSession = Depends(get_db),
) -> dict:
    row = await tenancy.onboard_tenant(
        db,
        reseller_id=str(principal.reseller_id),
        user_id=body.user_id,
        company_name=body.company_name,
        industry=body.industry,
    )
    return success_response(request=request, data=tenant_payload(row))


@router.get("/tenants/{tenant_id}/entitlements", response_model=SuccessEnvelope[EntitlementListResponse])
async def list_tenant_entitlements(
    request: Request,
    tenant_id: str,
    principal: Principal = Depends(require_reseller),
    db: AsyncSession = Depends(get_db),
) -> dict:
    tenant = await tenancy.get_owned_tenant(db, reseller_id=str(principal.reseller_id), tenant_id=tenant_id)
    rows = await entitlements.list_entitlements(db, tenant_id=tenant.id)
    payload = EntitlementListResponse(items=[entitlement_payload(row) for row in rows])
    return success_response(request=request, data=payload)


@router.put(
    "/tenants/{tenant_id}/entitlements/{service_id}",
    response_model=SuccessEnvelope[EntitlementResponse],
)
async def grant_entitlement(
    request: Request,
    tenant_id: str,
    service_id: str,
    body: EntitlementGrantRequest,
    principal: Principal = Depends(require_reseller),
    db: AsyncSession = Depends(get_db),
) -> dict:
    row = await entitlements.grant_entitlement(
        db,
        reseller_id=str(principal.reseller_id),
        tenant_id=tenant_id,
        service_id=service_id,
        plan_id=body.plan_id,
        usage_limit=body.usage_limit,
        reset_period=body.reset_period.value,
        actor_id=principal.user_id,
    )
    return success_response(request=request, data=entitlement_payload(row))


@router.delete(
    "/tenants/{tenant_id}/entitlements/{service_id}",
    response_model=SuccessEnvelope[EntitlementResponse],
)
async def revoke_entitlement(
    request: Request,
    tenant_id: str,
    service_id: str,
    principal: Principal = Depends(require_reseller),
    db: AsyncSession = Depends(get_db),
) -> dict:
    row = await entitlements.revoke_entitlement(
        db,
        reseller_id=str(principal.reseller_id),
        tenant_id=tenant_id,
        service_id=service_id,
        actor_id=principal.user_id,
    )
    return success_response(request=request, data=entitlement_payload(row))


@router.get("/tenants/{tenant_id}/audit-events", response_model=SuccessEnvelope[AuditEventListResponse])
async def list_tenant_audit_events(
    request: Request,
    tenant_id: str,
    event_type: str | None = Query(default=None),
    resource_id: str | None = Query(default=None),
    occurred_from: datetime | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    principal: Principal = Depends(require_reseller),
    db: AsyncSession = Depends(get_db),
) -> dict:
    tenant = await tenancy.get_owned_tenant(db, reseller_id=str(principal.reseller_id), tenant_id=tenant_id)
    rows = await audit_repo.list_events(
        db,
        tenant_id=tenant.id,
        event_type=event_type,
        resource_id=resource_id,
        occurred_from=occurred_from,
        limit=limit,
    )
    payload = AuditEventListResponse(items=[audit_payload(row) for row in rows])
    return success_response(request=request, data=payload)


@router.get("/purchase-requests", response_model=SuccessEnvelope[PurchaseRequestListResponse])
async def list_purchase_requests(
    request: Request,
    status: str | None = Query(default=None),
    principal: Principal = Depends(require_reseller),
    db: AsyncSession = Depends(get_db),
) -> dict:
    rows = await purchase_requests.list_for_reseller(db, reseller_id=str(principal.reseller_id), status=status)
    payload = PurchaseRequestListResponse(items=[purchase_request_payload(row) for row in rows])
    return success_response(request=request, data=payload)


@router.post(
    "/purchase-requests/{request_id}/approve",
    response_model=SuccessEnvelope[PurchaseRequestResponse],
)
async def approve_purchase_request(
    request: Request,
    request_id: str,
    body: PurchaseApprovalRequest,
    principal: Principal = Depends(require_reseller),
    db: AsyncSession = Depends(get_db),
) -> dict:
    row = await purchase_requests.approve_request(
        db,
        reseller_id=str(principal.reseller_id),
        request_id=request_id,
        plan_id=body.plan_id,
        usage_limit=body.usage_limit,
        reset_period=body.reset_period.value,
        actor_id=principal.user_id,
    )
    return success_response(request=request, data=purchase_request_payload(row))


@router.post(
    "/purchase-requests/{request_id}/reject",
    response_model=SuccessEnvelope[PurchaseRequestResponse],
)
async def reject_purchase_request(
    request: Request,
    request_id: str,
    principal: Principal = Depends(require_reseller),
    db: AsyncSession = Depends(get_db),
) -> dict:
    row = await purchase_requests.reject_request(
        db,
        reseller_id=str(principal.reseller_id),
        request_id=request_id,
        actor_id=principal.user_id,
    )
    return success_response(request=request, data=purchase_request_payload(row))
