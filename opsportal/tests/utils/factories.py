from __future__ import annotations

from dataclasses import dataclass
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from opsportal.domain.models import Reseller, Service, ServicePlan, Tenant, WorkflowTemplate
from opsportal.services import catalog, entitlements, tenancy


DEFAULT_CREDENTIALS = ["api_key", "caller_phone", "callback_url"]

VALID_VALUES = {
    "api_key": "sk-live-0123456789",
    "caller_phone": "+14155550123",
    "callback_url": "https://hooks.example.com/calls",
}


@dataclass
class World:
    reseller: Reseller
    tenant: Tenant
    service: Service
    template: WorkflowTemplate | None
    plan: ServicePlan


def unique(prefix: str) -> str:
    return f"{prefix}-{uuid4().hex[:10]}"


async def seed_reseller(session: AsyncSession, *, user_id: str | None = None) -> Reseller:
    return await tenancy.onboard_reseller(
        session, user_id=user_id or unique("reseller-user"), company_name=unique("Reseller Co")
    )


async def seed_tenant(session: AsyncSession, reseller: Reseller, *, user_id: str | None = None) -> Tenant:
    return await tenancy.onboard_tenant(
        session,
        reseller_id=reseller.id,
        user_id=user_id or unique("tenant-user"),
        company_name=unique("Client Co"),
        industry="hospitality",
    )


async def seed_service(
    session: AsyncSession,
    *,
    name: str | None = None,
    required_credentials: list[str] | None = None,
    config_schema: dict[str, str] | None = None,
    with_template: bool = True,
    usage_limit: int | None = 100,
) -> tuple[Service, WorkflowTemplate | None, ServicePlan]:
    service = await catalog.create_service(
        session,
        name=name or unique("Voice Agent"),
        category="voice",
        pricing_model="per_minute",
        base_price="0.10",
    )
    template = None
    if with_template:
        template = await catalog.create_template(
            session,
            service_id=service.id,
            name=f"{service.name} template",
            external_template_id=unique("tpl"),
            required_credentials=(
                list(DEFAULT_CREDENTIALS) if required_credentials is None else required_credentials
            ),
            credential_instructions={"api_key": "Copy the key from the provider dashboard."}
            if required_credentials is None
            else {},
            default_config={"language": "en"},
            config_schema=config_schema or {},
        )
    plan = await catalog.create_plan(
        session,
        service_id=service.id,
        name="Standard",
        tier="standard",
        usage_limit=usage_limit,
        monthly_price="49.00",
    )
    return service, template, plan


async def enable_service(session: AsyncSession, reseller: Reseller, service: Service) -> None:
    await tenancy.set_reseller_enablement(session, reseller_id=reseller.id, service_id=service.id, enabled=True)


async def grant(
    session: AsyncSession,
    world: World,
    *,
    usage_limit: int | None = None,
    reset_period: str = "monthly",
    service: Service | None = None,
):
    target = service or world.service
    return await entitlements.grant_entitlement(
        session,
        reseller_id=world.reseller.id,
        tenant_id=world.tenant.id,
        service_id=target.id,
        usage_limit=usage_limit,
        reset_period=reset_period,
        actor_id=world.reseller.user_id,
    )


async def seed_world(
    session: AsyncSession,
    *,
    entitled: bool = True,
    usage_limit: int | None = None,
    required_credentials: list[str] | None = None,
    config_schema: dict[str, str] | None = None,
) -> World:
    reseller = await seed_reseller(session)
    tenant = await seed_tenant(session, reseller)
    service, template, plan = await seed_service(
        session, required_credentials=required_credentials, config_schema=config_schema
    )
    await enable_service(session, reseller, service)
    world = World(reseller=reseller, tenant=tenant, service=service, template=template, plan=plan)
    if entitled:
        await grant(session, world, usage_limit=usage_limit)
    return world
