from __future__ import annotations

import pytest

from opsportal.core.errors import AuthorizationError, InvalidStateError, NotFoundError, QuotaExceededError
from opsportal.providers.capabilities.fake import FakeCapabilityProvider
from opsportal.services.capabilities import invoke_capability
from opsportal.services.workflows import lifecycle
from opsportal.tests.utils.factories import VALID_VALUES, seed_world


async def _active_world(session, *, usage_limit=None):
    world = await seed_world(session, usage_limit=usage_limit)
    instance = await lifecycle.create(session, tenant_id=world.tenant.id, service_id=world.service.id)
    await lifecycle.configure(session, tenant_id=world.tenant.id, instance_id=instance.id, values=VALID_VALUES)
    await lifecycle.activate(session, tenant_id=world.tenant.id, instance_id=instance.id)
    return world, instance


@pytest.mark.asyncio
async def test_invocation_records_provider_units(session, engine_provider) -> None:
    world, instance = await _active_world(session, usage_limit=100)
    provider = FakeCapabilityProvider(units=3)

    result, usage = await invoke_capability(
        session,
        tenant_id=world.tenant.id,
        service_id=world.service.id,
        payload={"to": "+14155550199"},
        provider=provider,
    )

    assert result.status == "accepted"
    assert usage.snapshot.consumed == 3
    sent = provider.requests[0]
    assert sent.instance_id == instance.id
    assert sent.service_slug == world.service.slug
    assert sent.credentials == VALID_VALUES
    assert sent.payload == {"to": "+14155550199"}
    assert "sk-live" not in repr(sent)


@pytest.mark.asyncio
async def test_quota_gate_blocks_new_usage_at_the_limit(session, engine_provider) -> None:
    world, _instance = await _active_world(session, usage_limit=5)
    provider = FakeCapabilityProvider(units=3)

    await invoke_capability(session, tenant_id=world.tenant.id, service_id=world.service.id, provider=provider)
    _result, usage = await invoke_capability(
        session, tenant_id=world.tenant.id, service_id=world.service.id, provider=provider
    )
    assert usage.snapshot.consumed == 6
    assert usage.crossed == ("limit",)

    with pytest.raises(QuotaExceededError):
        await invoke_capability(session, tenant_id=world.tenant.id, service_id=world.service.id, provider=provider)
    assert len(provider.requests) == 2


@pytest.mark.asyncio
async def test_inactive_instance_cannot_be_invoked(session, engine_provider) -> None:
    world = await seed_world(session)
    provider = FakeCapabilityProvider()

    with pytest.raises(NotFoundError):
        await invoke_capability(session, tenant_id=world.tenant.id, service_id=world.service.id, provider=provider)

    await lifecycle.create(session, tenant_id=world.tenant.id, service_id=world.service.id)
    with pytest.raises(InvalidStateError):
        await invoke_capability(session, tenant_id=world.tenant.id, service_id=world.service.id, provider=provider)
    assert provider.requests == []


@pytest.mark.asyncio
async def test_unentitled_tenant_is_refused(session, engine_provider) -> None:
    world = await seed_world(session, entitled=False)

    with pytest.raises(AuthorizationError):
        await invoke_capability(
            session, tenant_id=world.tenant.id, service_id=world.service.id, provider=FakeCapabilityProvider()
        )
