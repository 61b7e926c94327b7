from __future__ import annotations

import asyncio
from dataclasses import dataclass

from opsportal.core.logging import configure_logging
from opsportal.persistence.db import SessionLocal
from opsportal.persistence.repos import catalog as catalog_repo
from opsportal.persistence.repos import tenancy as tenancy_repo
from opsportal.services import catalog, entitlements, tenancy


DEMO_RESELLER_USER = "demo-reseller"
DEMO_TENANT_USER = "demo-client"


@dataclass(frozen=True)
class DemoService:
    # Keep seed content deterministic so repeated runs are idempotent.
    name: str
    slug: str
    category: str
    pricing_model: str
    required_credentials: tuple[str, ...]
    instructions: dict[str, str]
    usage_limit: int


DEMO_SERVICES = (
    DemoService(
        name="Voice Telecaller",
        slug="voice-telecaller",
        category="voice",
        pricing_model="per_minute",
        required_credentials=("retell_api_key", "caller_id"),
        instructions={
            "retell_api_key": "Dashboard > API Keys > Create key.",
            "caller_id": "Verified outbound number in E.164 format.",
        },
        usage_limit=1000,
    ),
    DemoService(
        name="WhatsApp Messaging",
        slug="whatsapp-messaging",
        category="messaging",
        pricing_model="per_message",
        required_credentials=("whatsapp_access_token", "phone_number_id"),
        instructions={"whatsapp_access_token": "Meta Business settings > System users."},
        usage_limit=5000,
    ),
)


async def seed() -> None:
    configure_logging()
    async with SessionLocal() as session:
        reseller = await tenancy_repo.get_reseller_by_user(session, DEMO_RESELLER_USER)
        if reseller is None:
            reseller = await tenancy.onboard_reseller(
                session, user_id=DEMO_RESELLER_USER, company_name="Demo Reseller"
            )
        tenant = await tenancy_repo.get_tenant_by_user(session, DEMO_TENANT_USER)
        if tenant is None:
            tenant = await tenancy.onboard_tenant(
                session, reseller_id=reseller.id, user_id=DEMO_TENANT_USER, company_name="Demo Client"
            )
        for item in DEMO_SERVICES:
            service = await catalog_repo.get_service_by_slug(session, item.slug)
            if service is None:
                service = await catalog.create_service(
                    session,
                    name=item.name,
                    slug=item.slug,
                    category=item.category,
                    pricing_model=item.pricing_model,
                )
                await catalog.create_template(
                    session,
                    service_id=service.id,
                    name=f"{item.name} template",
                    required_credentials=list(item.required_credentials),
                    credential_instructions=item.instructions,
                )
                await catalog.create_plan(
                    session, service_id=service.id, name="Standard", tier="standard", usage_limit=item.usage_limit
                )
            await tenancy.set_reseller_enablement(
                session, reseller_id=reseller.id, service_id=service.id, enabled=True
            )
        first = await catalog_repo.get_service_by_slug(session, DEMO_SERVICES[0].slug)
        await entitlements.grant_entitlement(
            session,
            reseller_id=reseller.id,
            tenant_id=tenant.id,
            service_id=first.id,
            usage_limit=DEMO_SERVICES[0].usage_limit,
        )
        print(f"seeded reseller={reseller.id} tenant={tenant.id} services={len(DEMO_SERVICES)}")


if __name__ == "__main__":
    asyncio.run(seed())
