from __future__ import annotations

import pytest

from opsportal.core.errors import AuthorizationError
from opsportal.domain.models import ClientService
from opsportal.services import catalog, entitlements, purchase_requests, tenancy
from opsportal.services.entitlements import LOCK_REASON
from opsportal.tests.utils.factories import (
    World,
    enable_service,
    grant,
    seed_reseller,
    seed_service,
    seed_tenant,
    seed_world,
)


def _view_for(views, service_id: str):
    return next(view for view in views if view.definition.id == service_id)


@pytest.mark.asyncio
async def test_enablement_alone_does_not_unlock(session) -> None:
    world = await seed_world(session, entitled=False)

    view = _view_for(await entitlements.resolve(session, world.tenant.id), world.service.id)

    assert view.is_unlocked is False
    assert view.lock_reason == LOCK_REASON
    assert view.entitlement is None
    # Plans are still offered because the reseller can sell this service.
    assert [plan.id for plan in view.available_plans] == [world.plan.id]
    assert view.can_request is True


@pytest.mark.asyncio
async def test_grant_unlocks_and_invalidates_cached_view(session) -> None:
    world = await seed_world(session, entitled=False)
    before = _view_for(await entitlements.resolve(session, world.tenant.id), world.service.id)
    assert before.is_unlocked is False

    await grant(session, world, usage_limit=50)

    after = _view_for(await entitlements.resolve(session, world.tenant.id), world.service.id)
    assert after.is_unlocked is True
    assert after.lock_reason is None
    assert after.entitlement is not None
    assert after.entitlement.usage_limit == 50
    assert after.can_request is False


@pytest.mark.asyncio
async def test_services_not_offered_by_reseller_have_no_plans(session) -> None:
    world = await seed_world(session)
    other, _template, _plan = await seed_service(session)

    view = _view_for(await entitlements.resolve(session, world.tenant.id), other.id)

    assert view.is_unlocked is False
    assert view.available_plans == []
    assert view.can_request is False


@pytest.mark.asyncio
async def test_retired_service_stays_visible_only_while_entitled(session) -> None:
    world = await seed_world(session)
    other_tenant = await seed_tenant(session, world.reseller)
    await catalog.update_service(session, world.service.id, changes={"is_active": False})
    entitlements.reset_entitlements_cache()

    entitled_ids = {view.definition.id for view in await entitlements.resolve(session, world.tenant.id)}
    other_ids = {view.definition.id for view in await entitlements.resolve(session, other_tenant.id)}

    assert world.service.id in entitled_ids
    assert world.service.id not in other_ids


@pytest.mark.asyncio
async def test_grant_requires_reseller_enablement(session) -> None:
    reseller = await seed_reseller(session)
    tenant = await seed_tenant(session, reseller)
    service, _template, _plan = await seed_service(session)

    with pytest.raises(AuthorizationError):
        await entitlements.grant_entitlement(
            session, reseller_id=reseller.id, tenant_id=tenant.id, service_id=service.id
        )


@pytest.mark.asyncio
async def test_grant_rejects_tenants_of_other_resellers(session) -> None:
    world = await seed_world(session, entitled=False)
    intruder = await seed_reseller(session)
    await enable_service(session, intruder, world.service)

    with pytest.raises(AuthorizationError):
        await entitlements.grant_entitlement(
            session, reseller_id=intruder.id, tenant_id=world.tenant.id, service_id=world.service.id
        )


@pytest.mark.asyncio
async def test_grant_defaults_limit_from_plan(session) -> None:
    world = await seed_world(session, entitled=False)

    row = await entitlements.grant_entitlement(
        session,
        reseller_id=world.reseller.id,
        tenant_id=world.tenant.id,
        service_id=world.service.id,
        plan_id=world.plan.id,
    )

    assert row.plan_id == world.plan.id
    assert row.usage_limit == world.plan.usage_limit


@pytest.mark.asyncio
async def test_revoke_locks_service_again(session) -> None:
    world = await seed_world(session)

    await entitlements.revoke_entitlement(
        session, reseller_id=world.reseller.id, tenant_id=world.tenant.id, service_id=world.service.id
    )

    view = _view_for(await entitlements.resolve(session, world.tenant.id), world.service.id)
    assert view.is_unlocked is False
    with pytest.raises(AuthorizationError):
        await entitlements.require_entitlement(session, tenant_id=world.tenant.id, service_id=world.service.id)


@pytest.mark.asyncio
async def test_disabling_reseller_service_deactivates_tenant_entitlements(session) -> None:
    world = await seed_world(session)
    second = await seed_tenant(session, world.reseller)
    await grant(session, World(world.reseller, second, world.service, world.template, world.plan))

    assignment, deactivated = await tenancy.set_reseller_enablement(
        session, reseller_id=world.reseller.id, service_id=world.service.id, enabled=False
    )

    assert assignment.enabled is False
    assert deactivated == 2
    rows = [
        await session.get(ClientService, row.id, populate_existing=True)
        for row in await entitlements.list_entitlements(session, tenant_id=world.tenant.id)
    ]
    assert all(row.is_active is False for row in rows)
    view = _view_for(await entitlements.resolve(session, second.id), world.service.id)
    assert view.is_unlocked is False


@pytest.mark.asyncio
async def test_pending_request_blocks_another_request(session) -> None:
    world = await seed_world(session, entitled=False)
    await purchase_requests.submit_request(session, tenant_id=world.tenant.id, service_id=world.service.id)

    view = _view_for(await entitlements.resolve(session, world.tenant.id), world.service.id)

    assert view.request_status == "pending"
    assert view.can_request is False
