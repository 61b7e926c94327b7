from __future__ import annotations

from decimal import Decimal, InvalidOperation
import logging
import re
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from opsportal.core.errors import ConflictError, NotFoundError, ValidationError
from opsportal.domain.events import CatalogChanged
from opsportal.domain.models import Service, ServicePlan, WorkflowTemplate
from opsportal.domain.state import PlanTier, PricingModel, ServiceCategory
from opsportal.persistence.repos import catalog as catalog_repo
from opsportal.services.events import publish


logger = logging.getLogger(__name__)

# Field types a template may declare in config_schema.
CONFIG_FIELD_TYPES = {"string", "integer", "number", "boolean", "url", "phone"}

_SLUG_STRIP = re.compile(r"[^a-z0-9]+")
_SERVICE_FIELDS = {"name", "description", "category", "pricing_model", "base_price", "features", "is_active"}


def slugify(value: str) -> str:
    return _SLUG_STRIP.sub("-", value.lower()).strip("-")


def _enum_value(enum_cls, value: str, field: str) -> str:
    try:
        return enum_cls(value).value
    except ValueError as exc:
        allowed = ", ".join(member.value for member in enum_cls)
        raise ValidationError(
            f"Invalid {field}", field_errors={field: f"Must be one of: {allowed}"}
        ) from exc


def _price(value: Any, field: str) -> Decimal | None:
    if value is None:
        return None
    try:
        price = Decimal(str(value))
    except InvalidOperation as exc:
        raise ValidationError(f"Invalid {field}", field_errors={field: "Must be a number"}) from exc
    if price < 0:
        raise ValidationError(f"Invalid {field}", field_errors={field: "Must not be negative"})
    return price


async def _commit_unique(session: AsyncSession, message: str) -> None:
    # Uniqueness is owned by the database; a violation surfaces as a conflict.
    try:
        await session.commit()
    except IntegrityError as exc:
        await session.rollback()
        raise ConflictError(message) from exc


async def get_service(session: AsyncSession, service_id: str) -> Service:
    service = await catalog_repo.get_service(session, service_id)
    if service is None:
        raise NotFoundError("Service not found", details={"service_id": service_id})
    return service


async def get_service_by_slug(session: AsyncSession, slug: str) -> Service:
    service = await catalog_repo.get_service_by_slug(session, slug)
    if service is None:
        raise NotFoundError("Service not found", details={"slug": slug})
    return service


async def list_services(session: AsyncSession, *, active_only: bool = True) -> list[Service]:
    return await catalog_repo.list_services(session, active_only=active_only)


async def create_service(
    session: AsyncSession,
    *,
    name: str,
    category: str,
    pricing_model: str,
    slug: str | None = None,
    description: str | None = None,
    base_price: Any = 0,
    features: list[dict[str, Any]] | None = None,
    is_active: bool = True,
    actor_id: str | None = None,
) -> Service:
    if not name or not name.strip():
        raise ValidationError("Service name is required", field_errors={"name": "This field is required"})
    resolved_slug = slugify(slug or name)
    if not resolved_slug:
        raise ValidationError("Invalid slug", field_errors={"slug": "Must contain letters or digits"})
    service = Service(
        name=name.strip(),
        slug=resolved_slug,
        description=description,
        category=_enum_value(ServiceCategory, category, "category"),
        pricing_model=_enum_value(PricingModel, pricing_model, "pricing_model"),
        base_price=_price(base_price, "base_price") or Decimal("0"),
        features_json=list(features or []),
        is_active=is_active,
    )
    session.add(service)
    await _commit_unique(session, f"A service with slug '{resolved_slug}' already exists")
    await session.refresh(service)
    logger.info("service_created service_id=%s slug=%s", service.id, service.slug)
    await publish(
        CatalogChanged(
            tenant_id=None, actor_id=actor_id, resource_type="service", resource_id=service.id, action="created"
        )
    )
    return service


async def update_service(
    session: AsyncSession,
    service_id: str,
    *,
    changes: dict[str, Any],
    actor_id: str | None = None,
) -> Service:
    # Edits apply in place; provisioned instances pick up the new definition without a version bump.
    service = await get_service(session, service_id)
    unknown = set(changes) - _SERVICE_FIELDS
    if unknown:
        raise ValidationError(
            "Unknown service fields", field_errors={key: "Unknown field" for key in sorted(unknown)}
        )
    if "name" in changes:
        if not changes["name"] or not str(changes["name"]).strip():
            raise ValidationError("Service name is required", field_errors={"name": "This field is required"})
        service.name = str(changes["name"]).strip()
    if "description" in changes:
        service.description = changes["description"]
    if "category" in changes:
        service.category = _enum_value(ServiceCategory, changes["category"], "category")
    if "pricing_model" in changes:
        service.pricing_model = _enum_value(PricingModel, changes["pricing_model"], "pricing_model")
    if "base_price" in changes:
        service.base_price = _price(changes["base_price"], "base_price") or Decimal("0")
    if "features" in changes:
        service.features_json = list(changes["features"] or [])
    if "is_active" in changes:
        service.is_active = bool(changes["is_active"])
    await _commit_unique(session, "A service with this name already exists")
    await session.refresh(service)
    await publish(
        CatalogChanged(
            tenant_id=None, actor_id=actor_id, resource_type="service", resource_id=service.id, action="updated"
        )
    )
    return service


async def create_plan(
    session: AsyncSession,
    *,
    service_id: str,
    name: str,
    tier: str | None = None,
    usage_limit: int | None = None,
    price_per_unit: Any = None,
    monthly_price: Any = None,
    features: list[dict[str, Any]] | None = None,
    is_active: bool = True,
    actor_id: str | None = None,
) -> ServicePlan:
    await get_service(session, service_id)
    if usage_limit is not None and usage_limit < 0:
        raise ValidationError("Invalid usage limit", field_errors={"usage_limit": "Must not be negative"})
    plan = ServicePlan(
        service_id=service_id,
        name=name,
        tier=_enum_value(PlanTier, tier, "tier") if tier else None,
        usage_limit=usage_limit,
        price_per_unit=_price(price_per_unit, "price_per_unit"),
        monthly_price=_price(monthly_price, "monthly_price"),
        features_json=list(features or []),
        is_active=is_active,
    )
    session.add(plan)
    await session.commit()
    await session.refresh(plan)
    await publish(
        CatalogChanged(
            tenant_id=None, actor_id=actor_id, resource_type="service_plan", resource_id=plan.id, action="created"
        )
    )
    return plan


async def set_plan_active(
    session: AsyncSession, plan_id: str, *, is_active: bool, actor_id: str | None = None
) -> ServicePlan:
    plan = await catalog_repo.get_plan(session, plan_id)
    if plan is None:
        raise NotFoundError("Plan not found", details={"plan_id": plan_id})
    plan.is_active = is_active
    await session.commit()
    await publish(
        CatalogChanged(
            tenant_id=None,
            actor_id=actor_id,
            resource_type="service_plan",
            resource_id=plan.id,
            action="activated" if is_active else "deactivated",
        )
    )
    return plan


async def list_plans(
    session: AsyncSession, service_id: str, *, active_only: bool = True
) -> list[ServicePlan]:
    await get_service(session, service_id)
    return await catalog_repo.list_plans(session, service_ids=[service_id], active_only=active_only)


def _validate_template_shape(
    required_credentials: list[str],
    credential_instructions: dict[str, str],
    config_schema: dict[str, str],
) -> None:
    errors: dict[str, str] = {}
    names = [name.strip() for name in required_credentials]
    if any(not name for name in names):
        errors["required_credentials"] = "Credential names must not be empty"
    elif len(set(names)) != len(names):
        errors["required_credentials"] = "Credential names must be unique"
    stray = set(credential_instructions) - set(names)
    if stray:
        errors["credential_instructions"] = f"Unknown credentials: {', '.join(sorted(stray))}"
    bad_types = {key: kind for key, kind in config_schema.items() if kind not in CONFIG_FIELD_TYPES}
    if bad_types:
        errors["config_schema"] = (
            f"Unsupported types for {', '.join(sorted(bad_types))}; "
            f"allowed: {', '.join(sorted(CONFIG_FIELD_TYPES))}"
        )
    overlap = set(config_schema) & set(names)
    if overlap:
        errors["config_schema"] = f"Fields already declared as credentials: {', '.join(sorted(overlap))}"
    if errors:
        raise ValidationError("Invalid workflow template", field_errors=errors)


async def create_template(
    session: AsyncSession,
    *,
    service_id: str,
    name: str,
    external_template_id: str | None = None,
    description: str | None = None,
    required_credentials: list[str] | None = None,
    credential_instructions: dict[str, str] | None = None,
    default_config: dict[str, Any] | None = None,
    config_schema: dict[str, str] | None = None,
    version: str = "1.0",
    is_active: bool = True,
    actor_id: str | None = None,
) -> WorkflowTemplate:
    await get_service(session, service_id)
    required = list(required_credentials or [])
    instructions = dict(credential_instructions or {})
    schema = dict(config_schema or {})
    _validate_template_shape(required, instructions, schema)
    template = WorkflowTemplate(
        service_id=service_id,
        name=name,
        external_template_id=external_template_id,
        description=description,
        required_credentials=[item.strip() for item in required],
        credential_instructions=instructions,
        default_config=dict(default_config or {}),
        config_schema=schema,
        version=version,
        is_active=is_active,
    )
    session.add(template)
    await _commit_unique(session, "A template with this external reference already exists")
    await session.refresh(template)
    await publish(
        CatalogChanged(
            tenant_id=None,
            actor_id=actor_id,
            resource_type="workflow_template",
            resource_id=template.id,
            action="created",
        )
    )
    return template


async def get_active_template(session: AsyncSession, service_id: str) -> WorkflowTemplate | None:
    return await catalog_repo.get_active_template(session, service_id)


async def list_templates(session: AsyncSession, service_id: str) -> list[WorkflowTemplate]:
    await get_service(session, service_id)
    return await catalog_repo.list_templates(session, service_id)
