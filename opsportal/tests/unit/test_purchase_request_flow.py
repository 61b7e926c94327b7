from __future__ import annotations

import asyncio

import pytest

from opsportal.core.errors import AuthorizationError, ConflictError, InvalidStateError, NotFoundError
from opsportal.domain.events import EntitlementGranted
from opsportal.domain.models import PurchaseRequest
from opsportal.domain.state import PurchaseRequestStatus
from opsportal.persistence.db import SessionLocal
from opsportal.services import entitlements, notifications, purchase_requests
from opsportal.services.events import get_event_bus
from opsportal.tests.utils.factories import seed_reseller, seed_service, seed_world


@pytest.mark.asyncio
async def test_approval_grants_the_entitlement_and_notifies_both_sides(session) -> None:
    world = await seed_world(session, entitled=False)

    request = await purchase_requests.submit_request(
        session,
        tenant_id=world.tenant.id,
        service_id=world.service.id,
        plan_id=world.plan.id,
        message="  We need this for the front desk.  ",
        actor_id=world.tenant.user_id,
    )
    assert request.status == PurchaseRequestStatus.PENDING.value
    assert request.message == "We need this for the front desk."

    inbox = await notifications.list_for_user(session, user_id=world.reseller.user_id)
    assert [item.title for item in inbox] == ["New service request"]

    views = {view.definition.id: view for view in await entitlements.resolve(session, world.tenant.id)}
    assert views[world.service.id].request_status == "pending"
    assert views[world.service.id].can_request is False

    approved = await purchase_requests.approve_request(
        session, reseller_id=world.reseller.id, request_id=request.id, actor_id=world.reseller.user_id
    )

    assert approved.status == PurchaseRequestStatus.APPROVED.value
    assert approved.reviewed_by == world.reseller.user_id
    entitlement = await entitlements.require_entitlement(
        session, tenant_id=world.tenant.id, service_id=world.service.id
    )
    assert entitlement.plan_id == world.plan.id
    assert entitlement.usage_limit == world.plan.usage_limit
    views = {view.definition.id: view for view in await entitlements.resolve(session, world.tenant.id)}
    assert views[world.service.id].is_unlocked is True

    titles = {item.title for item in await notifications.list_for_user(session, user_id=world.tenant.user_id)}
    assert titles == {"Service enabled", "Service request approved"}


@pytest.mark.asyncio
async def test_only_one_pending_request_per_service(session) -> None:
    world = await seed_world(session, entitled=False)
    await purchase_requests.submit_request(session, tenant_id=world.tenant.id, service_id=world.service.id)

    with pytest.raises(ConflictError):
        await purchase_requests.submit_request(session, tenant_id=world.tenant.id, service_id=world.service.id)

    assert len(await purchase_requests.list_for_tenant(session, tenant_id=world.tenant.id)) == 1


@pytest.mark.asyncio
async def test_rejection_allows_a_new_request(session) -> None:
    world = await seed_world(session, entitled=False)
    first = await purchase_requests.submit_request(session, tenant_id=world.tenant.id, service_id=world.service.id)

    rejected = await purchase_requests.reject_request(session, reseller_id=world.reseller.id, request_id=first.id)
    assert rejected.status == PurchaseRequestStatus.REJECTED.value
    with pytest.raises(InvalidStateError):
        await purchase_requests.approve_request(session, reseller_id=world.reseller.id, request_id=first.id)

    second = await purchase_requests.submit_request(session, tenant_id=world.tenant.id, service_id=world.service.id)
    pending = await purchase_requests.list_for_reseller(
        session, reseller_id=world.reseller.id, status=PurchaseRequestStatus.PENDING.value
    )
    assert [item.id for item in pending] == [second.id]


@pytest.mark.asyncio
async def test_requests_need_an_offered_locked_service(session) -> None:
    world = await seed_world(session)
    unoffered, _template, _plan = await seed_service(session)

    with pytest.raises(ConflictError):
        await purchase_requests.submit_request(session, tenant_id=world.tenant.id, service_id=world.service.id)
    with pytest.raises(AuthorizationError):
        await purchase_requests.submit_request(session, tenant_id=world.tenant.id, service_id=unoffered.id)


@pytest.mark.asyncio
async def test_resellers_only_see_their_own_requests(session) -> None:
    world = await seed_world(session, entitled=False)
    request = await purchase_requests.submit_request(session, tenant_id=world.tenant.id, service_id=world.service.id)
    stranger = await seed_reseller(session)

    assert await purchase_requests.list_for_reseller(session, reseller_id=stranger.id) == []
    with pytest.raises(NotFoundError):
        await purchase_requests.approve_request(session, reseller_id=stranger.id, request_id=request.id)


@pytest.mark.asyncio
async def test_concurrent_approvals_grant_exactly_once(session) -> None:
    world = await seed_world(session, entitled=False)
    request = await purchase_requests.submit_request(session, tenant_id=world.tenant.id, service_id=world.service.id)
    granted: list[EntitlementGranted] = []

    async def _recorder(event: EntitlementGranted) -> None:
        granted.append(event)

    get_event_bus().subscribe(EntitlementGranted, _recorder)

    async def _approve():
        async with SessionLocal() as db:
            return await purchase_requests.approve_request(
                db, reseller_id=world.reseller.id, request_id=request.id, actor_id=world.reseller.user_id
            )

    outcomes = await asyncio.gather(_approve(), _approve(), return_exceptions=True)

    approved = [item for item in outcomes if isinstance(item, PurchaseRequest)]
    refused = [item for item in outcomes if isinstance(item, InvalidStateError)]
    assert len(approved) == 1
    assert len(refused) == 1
    assert approved[0].status == PurchaseRequestStatus.APPROVED.value
    assert [event.tenant_id for event in granted] == [world.tenant.id]
