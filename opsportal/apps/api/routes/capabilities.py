from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from opsportal.apps.api.deps import get_acting_tenant_id, get_db, reject_tenant_id_in_body
from opsportal.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from opsportal.apps.api.response import SuccessEnvelope, success_response
from opsportal.apps.api.schemas import UsageResponse, usage_payload
from opsportal.services.capabilities import invoke_capability


router = APIRouter(
    prefix="/capabilities",
    tags=["capabilities"],
    responses=DEFAULT_ERROR_RESPONSES,
    dependencies=[Depends(reject_tenant_id_in_body)],
)


class CapabilityInvokeRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class CapabilityInvokeResponse(BaseModel):
    status: str
    units: int
    external_id: str | None
    usage: UsageResponse
    crossed: list[str]


@router.post("/{service_id}/invoke", response_model=SuccessEnvelope[CapabilityInvokeResponse])
async def invoke(
    request: Request,
    service_id: str,
    body: CapabilityInvokeRequest,
    tenant_id: str = Depends(get_acting_tenant_id),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Gated on entitlement, quota headroom and an active instance before the provider is called.
    result, usage = await invoke_capability(db, tenant_id=tenant_id, service_id=service_id, payload=body.payload)
    payload = CapabilityInvokeResponse(
        status=result.status,
        units=result.units,
        external_id=result.external_id,
        usage=usage_payload(usage.snapshot),
        crossed=list(usage.crossed),
    )
    return success_response(request=request, data=payload)
