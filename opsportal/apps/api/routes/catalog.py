from __future__ import annotations

from typing import Any, Literal

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from opsportal.apps.api.deps import get_db, get_principal, require_owner
from opsportal.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from opsportal.apps.api.response import SuccessEnvelope, success_response
from opsportal.apps.api.schemas import (
    PlanResponse,
    ServiceResponse,
    TemplateResponse,
    plan_payload,
    service_payload,
    template_payload,
)
from opsportal.services import catalog as catalog_service
from opsportal.services.tenancy import ROLE_OWNER, Principal


router = APIRouter(prefix="/catalog", tags=["catalog"], responses=DEFAULT_ERROR_RESPONSES)


class ServiceCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=128)
    slug: str | None = Field(default=None, max_length=128)
    description: str | None = None
    category: str
    pricing_model: str
    base_price: float | str = 0
    features: list[dict[str, Any]] = Field(default_factory=list)
    is_active: bool = True


class ServiceUpdateRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=128)
    description: str | None = None
    category: str | None = None
    pricing_model: str | None = None
    base_price: float | str | None = None
    features: list[dict[str, Any]] | None = None
    is_active: bool | None = None


class PlanCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=128)
    tier: str | None = None
    usage_limit: int | None = Field(default=None, ge=0)
    price_per_unit: float | str | None = None
    monthly_price: float | str | None = None
    features: list[dict[str, Any]] = Field(default_factory=list)
    is_active: bool = True


class PlanStateRequest(BaseModel):
    is_active: bool


class TemplateCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=128)
    external_template_id: str | None = None
    description: str | None = None
    required_credentials: list[str] = Field(default_factory=list)
    credential_instructions: dict[str, str] = Field(default_factory=dict)
    default_config: dict[str, Any] = Field(default_factory=dict)
    config_schema: dict[str, Literal["string", "integer", "number", "boolean", "url", "phone"]] = Field(
        default_factory=dict
    )
    version: str = "1.0"
    is_active: bool = True


class ServiceListResponse(BaseModel):
    items: list[ServiceResponse]


class PlanListResponse(BaseModel):
    items: list[PlanResponse]


class TemplateListResponse(BaseModel):
    items: list[TemplateResponse]


@router.get("/services", response_model=SuccessEnvelope[ServiceListResponse])
async def list_services(
    request: Request,
    include_retired: bool = Query(default=False),
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Retired services stay visible to the owner only.
    active_only = not (include_retired and principal.role == ROLE_OWNER)
    rows = await catalog_service.list_services(db, active_only=active_only)
    payload = ServiceListResponse(items=[service_payload(row) for row in rows])
    return success_response(request=request, data=payload)


@router.post("/services", status_code=201, response_model=SuccessEnvelope[ServiceResponse])
async def create_service(
    request: Request,
    body: ServiceCreateRequest,
    principal: Principal = Depends(require_owner),
    db: AsyncSession = Depends(get_db),
) -> dict:
    row = await catalog_service.create_service(
        db,
        name=body.name,
        slug=body.slug,
        description=body.description,
        category=body.category,
        pricing_model=body.pricing_model,
        base_price=body.base_price,
        features=body.features,
        is_active=body.is_active,
        actor_id=principal.user_id,
    )
    return success_response(request=request, data=service_payload(row))


@router.get("/services/{service_id}", response_model=SuccessEnvelope[ServiceResponse])
async def get_service(
    request: Request,
    service_id: str,
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    row = await catalog_service.get_service(db, service_id)
    return success_response(request=request, data=service_payload(row))


@router.patch("/services/{service_id}", response_model=SuccessEnvelope[ServiceResponse])
async def update_service(
    request: Request,
    service_id: str,
    body: ServiceUpdateRequest,
    principal: Principal = Depends(require_owner),
    db: AsyncSession = Depends(get_db),
) -> dict:
    row = await catalog_service.update_service(
        db,
        service_id,
        changes=body.model_dump(exclude_unset=True),
        actor_id=principal.user_id,
    )
    return success_response(request=request, data=service_payload(row))


@router.get("/services/{service_id}/plans", response_model=SuccessEnvelope[PlanListResponse])
async def list_plans(
    request: Request,
    service_id: str,
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    rows = await catalog_service.list_plans(db, service_id, active_only=principal.role != ROLE_OWNER)
    payload = PlanListResponse(items=[plan_payload(row) for row in rows])
    return success_response(request=request, data=payload)


@router.post("/services/{service_id}/plans", status_code=201, response_model=SuccessEnvelope[PlanResponse])
async def create_plan(
    request: Request,
    service_id: str,
    body: PlanCreateRequest,
    principal: Principal = Depends(require_owner),
    db: AsyncSession = Depends(get_db),
) -> dict:
    row = await catalog_service.create_plan(
        db,
        service_id=service_id,
        name=body.name,
        tier=body.tier,
        usage_limit=body.usage_limit,
        price_per_unit=body.price_per_unit,
        monthly_price=body.monthly_price,
        features=body.features,
        is_active=body.is_active,
        actor_id=principal.user_id,
    )
    return success_response(request=request, data=plan_payload(row))


@router.patch("/plans/{plan_id}", response_model=SuccessEnvelope[PlanResponse])
async def set_plan_state(
    request: Request,
    plan_id: str,
    body: PlanStateRequest,
    principal: Principal = Depends(require_owner),
    db: AsyncSession = Depends(get_db),
) -> dict:
    row = await catalog_service.set_plan_active(db, plan_id, is_active=body.is_active, actor_id=principal.user_id)
    return success_response(request=request, data=plan_payload(row))


@router.get("/services/{service_id}/templates", response_model=SuccessEnvelope[TemplateListResponse])
async def list_templates(
    request: Request,
    service_id: str,
    principal: Principal = Depends(require_owner),
    db: AsyncSession = Depends(get_db),
) -> dict:
    rows = await catalog_service.list_templates(db, service_id)
    payload = TemplateListResponse(items=[template_payload(row) for row in rows])
    return success_response(request=request, data=payload)


@router.post(
    "/services/{service_id}/templates", status_code=201, response_model=SuccessEnvelope[TemplateResponse]
)
async def create_template(
    request: Request,
    service_id: str,
    body: TemplateCreateRequest,
    principal: Principal = Depends(require_owner),
    db: AsyncSession = Depends(get_db),
) -> dict:
    row = await catalog_service.create_template(
        db,
        service_id=service_id,
        name=body.name,
        external_template_id=body.external_template_id,
        description=body.description,
        required_credentials=body.required_credentials,
        credential_instructions=body.credential_instructions,
        default_config=body.default_config,
        config_schema=dict(body.config_schema),
        version=body.version,
        is_active=body.is_active,
        actor_id=principal.user_id,
    )
    return success_response(request=request, data=template_payload(row))
