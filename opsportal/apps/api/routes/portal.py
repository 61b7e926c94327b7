from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from opsportal.apps.api.deps import get_acting_tenant_id, get_db, reject_tenant_id_in_body, require_tenant
from opsportal.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from opsportal.apps.api.response import SuccessEnvelope, success_response
from opsportal.apps.api.schemas import (
    PlanResponse,
    PurchaseRequestResponse,
    ServiceResponse,
    UsageResponse,
    plan_payload,
    purchase_request_payload,
    service_payload,
    usage_payload,
)
from opsportal.persistence.repos import usage as usage_repo
from opsportal.services import entitlements, purchase_requests
from opsportal.services.quota import current_usage, get_quota_ledger, record_usage
from opsportal.services.tenancy import Principal


# Tenant-scoped views; also mounted under /reseller/tenants/{tenant_id} for resellers.
router = APIRouter(prefix="/portal", tags=["portal"], responses=DEFAULT_ERROR_RESPONSES)


class CatalogEntryResponse(BaseModel):
    service: ServiceResponse
    is_unlocked: bool
    lock_reason: str | None
    plan_id: str | None
    usage: UsageResponse | None
    available_plans: list[PlanResponse]
    request_status: str | None
    can_request: bool


class CatalogResponse(BaseModel):
    items: list[CatalogEntryResponse]


class PurchaseRequestCreateRequest(BaseModel):
    service_id: str
    plan_id: str | None = None
    message: str | None = Field(default=None, max_length=2048)


class PurchaseRequestListResponse(BaseModel):
    items: list[PurchaseRequestResponse]


class UsageListResponse(BaseModel):
    items: list[UsageResponse]


class UsageEventCreateRequest(BaseModel):
    service_id: str
    quantity: int = Field(gt=0)
    unit_cost: float | str | None = None
    source: str | None = Field(default=None, max_length=256)


class UsageEventResponse(BaseModel):
    id: int
    service_id: str
    quantity: int
    unit_cost: str | None
    source: str | None
    occurred_at: str


class UsageRecordResponse(BaseModel):
    usage: UsageResponse
    crossed: list[str]


class UsageHistoryResponse(BaseModel):
    service_id: str
    lifetime_total: int
    items: list[UsageEventResponse]


@router.get("/catalog", response_model=SuccessEnvelope[CatalogResponse])
async def resolved_catalog(
    request: Request,
    tenant_id: str = Depends(get_acting_tenant_id),
    db: AsyncSession = Depends(get_db),
) -> dict:
    views = await entitlements.resolve(db, tenant_id)
    ledger = get_quota_ledger()
    items = []
    for view in views:
        snapshot = ledger.snapshot_for(view.entitlement) if view.entitlement is not None else None
        items.append(
            CatalogEntryResponse(
                service=service_payload(view.definition),
                is_unlocked=view.is_unlocked,
                lock_reason=view.lock_reason,
                plan_id=view.entitlement.plan_id if view.entitlement is not None else None,
                usage=usage_payload(snapshot) if snapshot is not None else None,
                available_plans=[plan_payload(plan) for plan in view.available_plans],
                request_status=view.request_status,
                can_request=view.can_request,
            )
        )
    return success_response(request=request, data=CatalogResponse(items=items))


@router.get("/purchase-requests", response_model=SuccessEnvelope[PurchaseRequestListResponse])
async def list_purchase_requests(
    request: Request,
    tenant_id: str = Depends(get_acting_tenant_id),
    db: AsyncSession = Depends(get_db),
) -> dict:
    rows = await purchase_requests.list_for_tenant(db, tenant_id=tenant_id)
    payload = PurchaseRequestListResponse(items=[purchase_request_payload(row) for row in rows])
    return success_response(request=request, data=payload)


@router.post(
    "/purchase-requests",
    status_code=201,
    response_model=SuccessEnvelope[PurchaseRequestResponse],
    dependencies=[Depends(reject_tenant_id_in_body)],
)
async def submit_purchase_request(
    request: Request,
    body: PurchaseRequestCreateRequest,
    principal: Principal = Depends(require_tenant),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Only the client itself asks for a service; resellers grant directly instead.
    row = await purchase_requests.submit_request(
        db,
        tenant_id=str(principal.tenant_id),
        service_id=body.service_id,
        plan_id=body.plan_id,
        message=body.message,
        actor_id=principal.user_id,
    )
    return success_response(request=request, data=purchase_request_payload(row))


@router.get("/usage", response_model=SuccessEnvelope[UsageListResponse])
async def list_usage(
    request: Request,
    tenant_id: str = Depends(get_acting_tenant_id),
    db: AsyncSession = Depends(get_db),
) -> dict:
    ledger = get_quota_ledger()
    rows = await entitlements.list_entitlements(db, tenant_id=tenant_id)
    payload = UsageListResponse(items=[usage_payload(ledger.snapshot_for(row)) for row in rows if row.is_active])
    return success_response(request=request, data=payload)


@router.get("/usage/{service_id}", response_model=SuccessEnvelope[UsageResponse])
async def get_usage(
    request: Request,
    service_id: str,
    tenant_id: str = Depends(get_acting_tenant_id),
    db: AsyncSession = Depends(get_db),
) -> dict:
    snapshot = await current_usage(db, tenant_id=tenant_id, service_id=service_id)
    return success_response(request=request, data=usage_payload(snapshot))


@router.get("/usage/{service_id}/events", response_model=SuccessEnvelope[UsageHistoryResponse])
async def list_usage_events(
    request: Request,
    service_id: str,
    occurred_from: datetime | None = Query(default=None),
    occurred_to: datetime | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=1000),
    tenant_id: str = Depends(get_acting_tenant_id),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # History survives counter resets, so the lifetime total can exceed the current period.
    rows = await usage_repo.list_events(
        db,
        tenant_id=tenant_id,
        service_id=service_id,
        occurred_from=occurred_from,
        occurred_to=occurred_to,
        limit=limit,
    )
    total = await usage_repo.sum_events(db, tenant_id=tenant_id, service_id=service_id)
    payload = UsageHistoryResponse(
        service_id=service_id,
        lifetime_total=total,
        items=[
            UsageEventResponse(
                id=row.id,
                service_id=row.service_id,
                quantity=row.quantity,
                unit_cost=str(row.unit_cost) if row.unit_cost is not None else None,
                source=row.source,
                occurred_at=row.occurred_at.isoformat(),
            )
            for row in rows
        ],
    )
    return success_response(request=request, data=payload)


@router.post(
    "/usage/events",
    status_code=201,
    response_model=SuccessEnvelope[UsageRecordResponse],
    dependencies=[Depends(reject_tenant_id_in_body)],
)
async def record_usage_event(
    request: Request,
    body: UsageEventCreateRequest,
    tenant_id: str = Depends(get_acting_tenant_id),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Recording never blocks on the limit; the snapshot reports over-limit instead.
    result = await record_usage(
        db,
        tenant_id=tenant_id,
        service_id=body.service_id,
        quantity=body.quantity,
        unit_cost=body.unit_cost,
        source=body.source,
    )
    payload = UsageRecordResponse(usage=usage_payload(result.snapshot), crossed=list(result.crossed))
    return success_response(request=request, data=payload)
