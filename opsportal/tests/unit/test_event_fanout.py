from __future__ import annotations

import pytest

from opsportal.core.errors import IntegrationError
from opsportal.domain.events import DomainEvent, QuotaThresholdCrossed
from opsportal.persistence.repos import audit as audit_repo
from opsportal.services import notifications, quota
from opsportal.services.audit import sanitize_metadata
from opsportal.services.events import get_event_bus, publish
from opsportal.services.notifications import build_messages
from opsportal.services.workflows import lifecycle
from opsportal.tests.utils.factories import VALID_VALUES, seed_world


def test_sensitive_metadata_is_redacted() -> None:
    cleaned = sanitize_metadata(
        {"slot_names": ["api_key"], "nested": {"Authorization": "Bearer x", "service_id": "s1"}, "token": "t"}
    )
    assert cleaned == {
        "slot_names": ["api_key"],
        "nested": {"Authorization": "[REDACTED]", "service_id": "s1"},
        "token": "[REDACTED]",
    }


def test_limit_crossing_escalates_to_the_reseller() -> None:
    class _Party:
        def __init__(self, user_id: str, name: str = "Acme Dental") -> None:
            self.user_id = user_id
            self.company_name = name

    event = QuotaThresholdCrossed(
        tenant_id="t1",
        service_id="s1",
        service_name="Voice Agent",
        threshold="limit",
        consumed=100,
        limit=100,
    )
    messages = build_messages(event, tenant=_Party("tenant-user"), reseller=_Party("reseller-user"))

    assert [(item.recipient, item.severity) for item in messages] == [
        ("tenant-user", "error"),
        ("reseller-user", "warning"),
    ]
    assert "Acme Dental" in messages[1].message


@pytest.mark.asyncio
async def test_lifecycle_transitions_produce_notifications_and_audit_rows(session, engine_provider) -> None:
    world = await seed_world(session)
    instance = await lifecycle.create(session, tenant_id=world.tenant.id, service_id=world.service.id)
    await lifecycle.configure(
        session,
        tenant_id=world.tenant.id,
        instance_id=instance.id,
        values=VALID_VALUES,
        actor_id=world.tenant.user_id,
    )
    await lifecycle.activate(session, tenant_id=world.tenant.id, instance_id=instance.id)

    titles = [item.title for item in await notifications.list_for_user(session, user_id=world.tenant.user_id)]
    assert "Workflow created" in titles
    assert "Workflow activated" in titles
    assert await notifications.unread_count(session, user_id=world.tenant.user_id) == len(titles)

    events = await audit_repo.list_events(session, tenant_id=world.tenant.id, resource_id=instance.id)
    event_types = {row.event_type for row in events}
    assert {
        "workflow.instance.created",
        "workflow.provisioning.succeeded",
        "workflow.instance.configured",
        "workflow.instance.activated",
    } <= event_types
    configured = next(row for row in events if row.event_type == "workflow.instance.configured")
    assert configured.actor_id == world.tenant.user_id
    assert configured.actor_type == "user"
    # Slot names are recorded, values never are.
    assert VALID_VALUES["api_key"] not in str(configured.metadata_json)


@pytest.mark.asyncio
async def test_failed_provisioning_is_audited_as_failure(session, engine_provider) -> None:
    world = await seed_world(session)
    engine_provider.fail_provision = "engine offline"

    with pytest.raises(IntegrationError):
        await lifecycle.create(session, tenant_id=world.tenant.id, service_id=world.service.id)

    rows = await audit_repo.list_events(
        session, tenant_id=world.tenant.id, event_type="workflow.provisioning.failed"
    )
    assert len(rows) == 1
    assert rows[0].outcome == "failure"
    assert rows[0].error_code == "INTEGRATION_ERROR"
    reseller_titles = [
        item.title for item in await notifications.list_for_user(session, user_id=world.reseller.user_id)
    ]
    assert "Client provisioning failed" in reseller_titles


@pytest.mark.asyncio
async def test_broken_subscriber_never_fails_the_publisher(session) -> None:
    world = await seed_world(session, usage_limit=10)
    seen: list[str] = []

    async def _broken(event: DomainEvent) -> None:
        raise RuntimeError("subscriber exploded")

    async def _recorder(event: DomainEvent) -> None:
        seen.append(event.event_type)

    bus = get_event_bus()
    bus.subscribe(DomainEvent, _broken)
    bus.subscribe(QuotaThresholdCrossed, _recorder)

    result = await quota.record_usage(session, tenant_id=world.tenant.id, service_id=world.service.id, quantity=10)

    assert result.crossed == ("limit",)
    assert seen == ["quota.threshold.crossed"]
    titles = [item.title for item in await notifications.list_for_user(session, user_id=world.tenant.user_id)]
    assert "Usage limit reached" in titles


@pytest.mark.asyncio
async def test_mark_read_is_scoped_to_the_recipient(session) -> None:
    world = await seed_world(session)
    inbox = await notifications.list_for_user(session, user_id=world.tenant.user_id)
    assert inbox

    assert await notifications.mark_read(session, user_id="someone-else", notification_id=inbox[0].id) is None
    marked = await notifications.mark_read(session, user_id=world.tenant.user_id, notification_id=inbox[0].id)
    assert marked.is_read is True

    await publish(
        QuotaThresholdCrossed(
            tenant_id=world.tenant.id,
            service_id=world.service.id,
            service_name=world.service.name,
            threshold="warning",
            consumed=80,
            limit=100,
        )
    )
    assert await notifications.unread_count(session, user_id=world.tenant.user_id) >= 1
    await notifications.mark_all_read(session, user_id=world.tenant.user_id)
    assert await notifications.unread_count(session, user_id=world.tenant.user_id) == 0
