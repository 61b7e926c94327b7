from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel

from opsportal.domain.models import (
    AuditEvent,
    ClientService,
    Notification,
    PurchaseRequest,
    Reseller,
    ResellerServiceAssignment,
    Service,
    ServicePlan,
    Tenant,
    WorkflowInstance,
    WorkflowTemplate,
)
from opsportal.domain.state import NextAction
from opsportal.services.credentials import SlotView
from opsportal.services.quota import UsageSnapshot


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _money(value: Decimal | None) -> str | None:
    # Decimal prices travel as strings so clients never see float rounding.
    return str(value) if value is not None else None


class ServiceResponse(BaseModel):
    id: str
    name: str
    slug: str
    description: str | None
    category: str
    pricing_model: str
    base_price: str | None
    features: list[dict[str, Any]]
    is_active: bool
    created_at: str | None
    updated_at: str | None


class PlanResponse(BaseModel):
    id: str
    service_id: str
    name: str
    tier: str | None
    usage_limit: int | None
    price_per_unit: str | None
    monthly_price: str | None
    features: list[dict[str, Any]]
    is_active: bool


class TemplateResponse(BaseModel):
    id: str
    service_id: str
    name: str
    external_template_id: str | None
    description: str | None
    required_credentials: list[str]
    credential_instructions: dict[str, str]
    default_config: dict[str, Any]
    config_schema: dict[str, str]
    version: str
    is_active: bool


class ResellerResponse(BaseModel):
    id: str
    user_id: str
    company_name: str
    is_active: bool
    created_at: str | None


class TenantResponse(BaseModel):
    id: str
    user_id: str
    reseller_id: str
    company_name: str
    industry: str | None
    is_active: bool
    created_at: str | None


class EnablementResponse(BaseModel):
    reseller_id: str
    service_id: str
    enabled: bool
    assigned_by: str | None
    assigned_at: str | None


class EntitlementResponse(BaseModel):
    id: str
    tenant_id: str
    service_id: str
    plan_id: str | None
    is_active: bool
    usage_limit: int | None
    usage_consumed: int
    reset_period: str
    last_reset_at: str | None
    assigned_at: str | None


class UsageResponse(BaseModel):
    service_id: str
    consumed: int
    limit: int | None
    reset_period: str
    remaining: int | None
    percent_used: float | None
    warning: bool
    at_limit: bool
    over_limit: bool


class WorkflowResponse(BaseModel):
    id: str
    service_id: str
    template_id: str | None
    name: str
    status: str
    is_active: bool
    external_reference: str | None
    webhook_endpoint: str | None
    custom_config: dict[str, Any]
    error_message: str | None
    provisioned_at: str | None
    last_executed_at: str | None
    execution_count: int
    created_at: str | None
    next_action: str | None = None


class CredentialSlotResponse(BaseModel):
    # Status only; stored values never leave the vault through the API.
    name: str
    kind: str
    status: str
    configured_at: str | None
    last_validated_at: str | None
    is_sensitive: bool
    instructions: str | None


class PurchaseRequestResponse(BaseModel):
    id: str
    tenant_id: str
    reseller_id: str
    service_id: str
    plan_id: str | None
    status: str
    message: str | None
    reviewed_by: str | None
    reviewed_at: str | None
    created_at: str | None


class NotificationResponse(BaseModel):
    id: str
    event_type: str
    title: str
    message: str
    severity: str
    action_url: str | None
    is_read: bool
    created_at: str | None


class AuditEventResponse(BaseModel):
    id: int
    occurred_at: str | None
    tenant_id: str | None
    actor_type: str
    actor_id: str | None
    actor_role: str | None
    event_type: str
    outcome: str
    resource_type: str | None
    resource_id: str | None
    metadata: dict[str, Any]


def service_payload(row: Service) -> ServiceResponse:
    return ServiceResponse(
        id=row.id,
        name=row.name,
        slug=row.slug,
        description=row.description,
        category=row.category,
        pricing_model=row.pricing_model,
        base_price=_money(row.base_price),
        features=list(row.features_json or []),
        is_active=row.is_active,
        created_at=_iso(row.created_at),
        updated_at=_iso(row.updated_at),
    )


def plan_payload(row: ServicePlan) -> PlanResponse:
    return PlanResponse(
        id=row.id,
        service_id=row.service_id,
        name=row.name,
        tier=row.tier,
        usage_limit=row.usage_limit,
        price_per_unit=_money(row.price_per_unit),
        monthly_price=_money(row.monthly_price),
        features=list(row.features_json or []),
        is_active=row.is_active,
    )


def template_payload(row: WorkflowTemplate) -> TemplateResponse:
    return TemplateResponse(
        id=row.id,
        service_id=row.service_id,
        name=row.name,
        external_template_id=row.external_template_id,
        description=row.description,
        required_credentials=list(row.required_credentials or []),
        credential_instructions=dict(row.credential_instructions or {}),
        default_config=dict(row.default_config or {}),
        config_schema=dict(row.config_schema or {}),
        version=row.version,
        is_active=row.is_active,
    )


def reseller_payload(row: Reseller) -> ResellerResponse:
    return ResellerResponse(
        id=row.id,
        user_id=row.user_id,
        company_name=row.company_name,
        is_active=row.is_active,
        created_at=_iso(row.created_at),
    )


def tenant_payload(row: Tenant) -> TenantResponse:
    return TenantResponse(
        id=row.id,
        user_id=row.user_id,
        reseller_id=row.reseller_id,
        company_name=row.company_name,
        industry=row.industry,
        is_active=row.is_active,
        created_at=_iso(row.created_at),
    )


def enablement_payload(row: ResellerServiceAssignment) -> EnablementResponse:
    return EnablementResponse(
        reseller_id=row.reseller_id,
        service_id=row.service_id,
        enabled=row.enabled,
        assigned_by=row.assigned_by,
        assigned_at=_iso(row.assigned_at),
    )


def entitlement_payload(row: ClientService) -> EntitlementResponse:
    return EntitlementResponse(
        id=row.id,
        tenant_id=row.tenant_id,
        service_id=row.service_id,
        plan_id=row.plan_id,
        is_active=row.is_active,
        usage_limit=row.usage_limit,
        usage_consumed=int(row.usage_consumed or 0),
        reset_period=row.reset_period,
        last_reset_at=_iso(row.last_reset_at),
        assigned_at=_iso(row.assigned_at),
    )


def usage_payload(snapshot: UsageSnapshot) -> UsageResponse:
    return UsageResponse(
        service_id=snapshot.service_id,
        consumed=snapshot.consumed,
        limit=snapshot.limit,
        reset_period=snapshot.reset_period,
        remaining=snapshot.remaining,
        percent_used=snapshot.percent_used,
        warning=snapshot.warning,
        at_limit=snapshot.at_limit,
        over_limit=snapshot.over_limit,
    )


def workflow_payload(row: WorkflowInstance, action: NextAction | None = None) -> WorkflowResponse:
    return WorkflowResponse(
        id=row.id,
        service_id=row.service_id,
        template_id=row.template_id,
        name=row.name,
        status=row.status,
        is_active=row.is_active,
        external_reference=row.external_reference,
        webhook_endpoint=row.webhook_endpoint,
        custom_config=dict(row.custom_config or {}),
        error_message=row.error_message,
        provisioned_at=_iso(row.provisioned_at),
        last_executed_at=_iso(row.last_executed_at),
        execution_count=int(row.execution_count or 0),
        created_at=_iso(row.created_at),
        next_action=action.value if action else None,
    )


def slot_payload(view: SlotView) -> CredentialSlotResponse:
    return CredentialSlotResponse(
        name=view.name,
        kind=view.kind,
        status=view.status,
        configured_at=_iso(view.configured_at),
        last_validated_at=_iso(view.last_validated_at),
        is_sensitive=view.is_sensitive,
        instructions=view.instructions,
    )


def purchase_request_payload(row: PurchaseRequest) -> PurchaseRequestResponse:
    return PurchaseRequestResponse(
        id=row.id,
        tenant_id=row.tenant_id,
        reseller_id=row.reseller_id,
        service_id=row.service_id,
        plan_id=row.plan_id,
        status=row.status,
        message=row.message,
        reviewed_by=row.reviewed_by,
        reviewed_at=_iso(row.reviewed_at),
        created_at=_iso(row.created_at),
    )


def notification_payload(row: Notification) -> NotificationResponse:
    return NotificationResponse(
        id=row.id,
        event_type=row.event_type,
        title=row.title,
        message=row.message,
        severity=row.severity,
        action_url=row.action_url,
        is_read=row.is_read,
        created_at=_iso(row.created_at),
    )


def audit_payload(row: AuditEvent) -> AuditEventResponse:
    return AuditEventResponse(
        id=row.id,
        occurred_at=_iso(row.occurred_at),
        tenant_id=row.tenant_id,
        actor_type=row.actor_type,
        actor_id=row.actor_id,
        actor_role=row.actor_role,
        event_type=row.event_type,
        outcome=row.outcome,
        resource_type=row.resource_type,
        resource_id=row.resource_id,
        metadata=dict(row.metadata_json or {}),
    )
