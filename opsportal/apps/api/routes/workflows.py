from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from opsportal.apps.api.deps import get_acting_tenant_id, get_db, get_principal, reject_tenant_id_in_body
from opsportal.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from opsportal.apps.api.response import SuccessEnvelope, success_response
from opsportal.apps.api.schemas import (
    CredentialSlotResponse,
    WorkflowResponse,
    slot_payload,
    workflow_payload,
)
from opsportal.services import credentials as vault
from opsportal.services.tenancy import Principal
from opsportal.services.workflows import lifecycle


# Tenant-scoped; also mounted under /reseller/tenants/{tenant_id} for resellers.
router = APIRouter(
    prefix="/workflows",
    tags=["workflows"],
    responses=DEFAULT_ERROR_RESPONSES,
    dependencies=[Depends(reject_tenant_id_in_body)],
)


class WorkflowCreateRequest(BaseModel):
    service_id: str


class WorkflowConfigureRequest(BaseModel):
    # Credential slot names and declared config fields share one namespace.
    values: dict[str, Any] = Field(default_factory=dict)


class CredentialValuesRequest(BaseModel):
    values: dict[str, Any]


class CredentialStatusRequest(BaseModel):
    status: str


class WorkflowListResponse(BaseModel):
    items: list[WorkflowResponse]


class BulkCreateItem(BaseModel):
    service_id: str
    service_name: str
    ok: bool
    instance_id: str | None
    status: str | None
    error: str | None
    error_code: str | None


class BulkCreateResponse(BaseModel):
    total: int
    succeeded: int
    failed: int
    items: list[BulkCreateItem]
    progress: list[dict[str, int]]


class CredentialSlotListResponse(BaseModel):
    items: list[CredentialSlotResponse]


class CredentialUpdateResponse(BaseModel):
    updated: list[str]
    items: list[CredentialSlotResponse]


class ExecutionResponse(BaseModel):
    instance_id: str
    execution_count: int


async def _with_next_action(db: AsyncSession, tenant_id: str, instance) -> WorkflowResponse:
    action = await lifecycle.describe_next_action(db, tenant_id=tenant_id, instance=instance)
    return workflow_payload(instance, action)


@router.get("", response_model=SuccessEnvelope[WorkflowListResponse])
async def list_workflows(
    request: Request,
    tenant_id: str = Depends(get_acting_tenant_id),
    db: AsyncSession = Depends(get_db),
) -> dict:
    rows = await lifecycle.list_instances(db, tenant_id=tenant_id)
    items = [await _with_next_action(db, tenant_id, row) for row in rows]
    return success_response(request=request, data=WorkflowListResponse(items=items))


@router.post("", status_code=201, response_model=SuccessEnvelope[WorkflowResponse])
async def create_workflow(
    request: Request,
    body: WorkflowCreateRequest,
    tenant_id: str = Depends(get_acting_tenant_id),
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    row = await lifecycle.create(db, tenant_id=tenant_id, service_id=body.service_id, actor_id=principal.user_id)
    return success_response(request=request, data=await _with_next_action(db, tenant_id, row))


@router.post("/bulk", response_model=SuccessEnvelope[BulkCreateResponse])
async def create_missing_workflows(
    request: Request,
    tenant_id: str = Depends(get_acting_tenant_id),
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    progress: list[dict[str, int]] = []
    results = await lifecycle.create_all_missing(
        db,
        tenant_id=tenant_id,
        actor_id=principal.user_id,
        on_progress=progress.append,
    )
    items = [
        BulkCreateItem(
            service_id=item.service_id,
            service_name=item.service_name,
            ok=item.ok,
            instance_id=item.instance_id,
            status=item.status,
            error=item.error,
            error_code=item.error_code,
        )
        for item in results
    ]
    succeeded = sum(1 for item in results if item.ok)
    payload = BulkCreateResponse(
        total=len(results),
        succeeded=succeeded,
        failed=len(results) - succeeded,
        items=items,
        progress=progress,
    )
    return success_response(request=request, data=payload)


@router.get("/{instance_id}", response_model=SuccessEnvelope[WorkflowResponse])
async def get_workflow(
    request: Request,
    instance_id: str,
    tenant_id: str = Depends(get_acting_tenant_id),
    db: AsyncSession = Depends(get_db),
) -> dict:
    row = await lifecycle.get_instance(db, tenant_id=tenant_id, instance_id=instance_id)
    return success_response(request=request, data=await _with_next_action(db, tenant_id, row))


@router.post("/{instance_id}/configure", response_model=SuccessEnvelope[WorkflowResponse])
async def configure_workflow(
    request: Request,
    instance_id: str,
    body: WorkflowConfigureRequest,
    tenant_id: str = Depends(get_acting_tenant_id),
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    row = await lifecycle.configure(
        db, tenant_id=tenant_id, instance_id=instance_id, values=body.values, actor_id=principal.user_id
    )
    return success_response(request=request, data=await _with_next_action(db, tenant_id, row))


@router.post("/{instance_id}/activate", response_model=SuccessEnvelope[WorkflowResponse])
async def activate_workflow(
    request: Request,
    instance_id: str,
    tenant_id: str = Depends(get_acting_tenant_id),
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    row = await lifecycle.activate(db, tenant_id=tenant_id, instance_id=instance_id, actor_id=principal.user_id)
    return success_response(request=request, data=await _with_next_action(db, tenant_id, row))


@router.post("/{instance_id}/deactivate", response_model=SuccessEnvelope[WorkflowResponse])
async def deactivate_workflow(
    request: Request,
    instance_id: str,
    tenant_id: str = Depends(get_acting_tenant_id),
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    row = await lifecycle.deactivate(db, tenant_id=tenant_id, instance_id=instance_id, actor_id=principal.user_id)
    return success_response(request=request, data=await _with_next_action(db, tenant_id, row))


@router.post("/{instance_id}/retry-provisioning", response_model=SuccessEnvelope[WorkflowResponse])
async def retry_workflow_provisioning(
    request: Request,
    instance_id: str,
    tenant_id: str = Depends(get_acting_tenant_id),
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    row = await lifecycle.retry_provisioning(
        db, tenant_id=tenant_id, instance_id=instance_id, actor_id=principal.user_id
    )
    return success_response(request=request, data=await _with_next_action(db, tenant_id, row))


@router.post("/{instance_id}/executions", response_model=SuccessEnvelope[ExecutionResponse])
async def record_workflow_execution(
    request: Request,
    instance_id: str,
    tenant_id: str = Depends(get_acting_tenant_id),
    db: AsyncSession = Depends(get_db),
) -> dict:
    count = await lifecycle.record_execution(db, tenant_id=tenant_id, instance_id=instance_id)
    payload = ExecutionResponse(instance_id=instance_id, execution_count=count)
    return success_response(request=request, data=payload)


@router.get("/{instance_id}/credentials", response_model=SuccessEnvelope[CredentialSlotListResponse])
async def list_credential_slots(
    request: Request,
    instance_id: str,
    tenant_id: str = Depends(get_acting_tenant_id),
    db: AsyncSession = Depends(get_db),
) -> dict:
    views = await vault.list_slots(db, tenant_id=tenant_id, instance_id=instance_id)
    payload = CredentialSlotListResponse(items=[slot_payload(view) for view in views])
    return success_response(request=request, data=payload)


@router.put("/{instance_id}/credentials", response_model=SuccessEnvelope[CredentialUpdateResponse])
async def update_credentials(
    request: Request,
    instance_id: str,
    body: CredentialValuesRequest,
    tenant_id: str = Depends(get_acting_tenant_id),
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Replaces secrets in place; a pending instance advances to configured.
    updated = await vault.set_values(
        db, tenant_id=tenant_id, instance_id=instance_id, values=body.values, actor_id=principal.user_id
    )
    views = await vault.list_slots(db, tenant_id=tenant_id, instance_id=instance_id)
    payload = CredentialUpdateResponse(updated=updated, items=[slot_payload(view) for view in views])
    return success_response(request=request, data=payload)


@router.post(
    "/{instance_id}/credentials/{name}/status",
    response_model=SuccessEnvelope[CredentialSlotResponse],
)
async def mark_credential_status(
    request: Request,
    instance_id: str,
    name: str,
    body: CredentialStatusRequest,
    tenant_id: str = Depends(get_acting_tenant_id),
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    await vault.mark_status(
        db,
        tenant_id=tenant_id,
        instance_id=instance_id,
        name=name,
        status=body.status,
        actor_id=principal.user_id,
    )
    views = await vault.list_slots(db, tenant_id=tenant_id, instance_id=instance_id)
    view = next(item for item in views if item.name == name)
    return success_response(request=request, data=slot_payload(view))
