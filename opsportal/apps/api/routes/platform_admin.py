from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from opsportal.apps.api.deps import get_db, require_owner
from opsportal.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from opsportal.apps.api.response import SuccessEnvelope, success_response
from opsportal.apps.api.schemas import (
    EnablementResponse,
    ResellerResponse,
    enablement_payload,
    reseller_payload,
)
from opsportal.services import tenancy
from opsportal.services.tenancy import Principal


router = APIRouter(prefix="/platform", tags=["platform-admin"], responses=DEFAULT_ERROR_RESPONSES)


class ResellerCreateRequest(BaseModel):
    user_id: str = Field(min_length=1, max_length=128)
    company_name: str = Field(min_length=1, max_length=256)


class EnablementRequest(BaseModel):
    enabled: bool


class ResellerListResponse(BaseModel):
    items: list[ResellerResponse]


class EnablementListResponse(BaseModel):
    items: list[EnablementResponse]


class EnablementChangeResponse(EnablementResponse):
    deactivated_entitlements: int


@router.get("/resellers", response_model=SuccessEnvelope[ResellerListResponse])
async def list_resellers(
    request: Request,
    principal: Principal = Depends(require_owner),
    db: AsyncSession = Depends(get_db),
) -> dict:
    rows = await tenancy.list_resellers(db)
    payload = ResellerListResponse(items=[reseller_payload(row) for row in rows])
    return success_response(request=request, data=payload)


@router.post("/resellers", status_code=201, response_model=SuccessEnvelope[ResellerResponse])
async def onboard_reseller(
    request: Request,
    body: ResellerCreateRequest,
    principal: Principal = Depends(require_owner),
    db: AsyncSession = Depends(get_db),
) -> dict:
    row = await tenancy.onboard_reseller(db, user_id=body.user_id, company_name=body.company_name)
    return success_response(request=request, data=reseller_payload(row))


@router.get("/resellers/{reseller_id}/services", response_model=SuccessEnvelope[EnablementListResponse])
async def list_enablements(
    request: Request,
    reseller_id: str,
    principal: Principal = Depends(require_owner),
    db: AsyncSession = Depends(get_db),
) -> dict:
    rows = await tenancy.list_enablements(db, reseller_id=reseller_id)
    payload = EnablementListResponse(items=[enablement_payload(row) for row in rows])
    return success_response(request=request, data=payload)


@router.put(
    "/resellers/{reseller_id}/services/{service_id}",
    response_model=SuccessEnvelope[EnablementChangeResponse],
)
async def set_enablement(
    request: Request,
    reseller_id: str,
    service_id: str,
    body: EnablementRequest,
    principal: Principal = Depends(require_owner),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Disabling cascades to every tenant entitlement for the service under this reseller.
    assignment, deactivated = await tenancy.set_reseller_enablement(
        db,
        reseller_id=reseller_id,
        service_id=service_id,
        enabled=body.enabled,
        actor_id=principal.user_id,
    )
    payload = EnablementChangeResponse(
        **enablement_payload(assignment).model_dump(),
        deactivated_entitlements=deactivated,
    )
    return success_response(request=request, data=payload)
