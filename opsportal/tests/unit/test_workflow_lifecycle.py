from __future__ import annotations

import asyncio

import pytest

from opsportal.core.errors import (
    AuthorizationError,
    ConflictError,
    IntegrationError,
    InvalidStateError,
    ValidationError,
)
from opsportal.domain.models import CredentialSecret, WorkflowInstance
from opsportal.domain.state import CredentialStatus, NextAction, WorkflowStatus
from opsportal.persistence.db import SessionLocal
from opsportal.persistence.repos import workflows as workflows_repo
from opsportal.services import entitlements
from opsportal.services.workflows import lifecycle
from opsportal.tests.utils.factories import VALID_VALUES, seed_world


async def _fresh_instance(instance_id: str) -> WorkflowInstance:
    async with SessionLocal() as db:
        row = await db.get(WorkflowInstance, instance_id)
        assert row is not None
        return row


@pytest.mark.asyncio
async def test_happy_path_create_configure_activate(session, engine_provider) -> None:
    world = await seed_world(session)

    instance = await lifecycle.create(session, tenant_id=world.tenant.id, service_id=world.service.id)
    slots = await workflows_repo.list_slots(session, instance.id)

    assert instance.status == WorkflowStatus.PENDING.value
    assert instance.is_active is False
    assert instance.provisioned_at is not None
    assert instance.external_reference == f"wf-{instance.id}"
    assert instance.custom_config == {"language": "en"}
    assert [slot.name for slot in slots] == ["api_key", "caller_phone", "callback_url"]
    assert {slot.status for slot in slots} == {CredentialStatus.PENDING.value}
    assert lifecycle.next_action(instance, slots) == NextAction.CONFIGURE_CREDENTIALS

    configured = await lifecycle.configure(
        session, tenant_id=world.tenant.id, instance_id=instance.id, values=VALID_VALUES
    )
    assert configured.status == WorkflowStatus.CONFIGURED.value
    assert await lifecycle.describe_next_action(session, tenant_id=world.tenant.id, instance=configured) == (
        NextAction.ACTIVATE
    )

    active = await lifecycle.activate(session, tenant_id=world.tenant.id, instance_id=instance.id)
    assert active.status == WorkflowStatus.ACTIVE.value
    assert active.is_active is True
    assert await lifecycle.describe_next_action(session, tenant_id=world.tenant.id, instance=active) is None
    assert [call["op"] for call in engine_provider.calls] == ["provision", "set_active"]


@pytest.mark.asyncio
async def test_configure_reports_every_invalid_field_and_writes_nothing(session, engine_provider) -> None:
    world = await seed_world(session)
    instance = await lifecycle.create(session, tenant_id=world.tenant.id, service_id=world.service.id)

    with pytest.raises(ValidationError) as excinfo:
        await lifecycle.configure(
            session,
            tenant_id=world.tenant.id,
            instance_id=instance.id,
            values={"api_key": "short", "caller_phone": "5550123", "callback_url": "not a url"},
        )

    assert excinfo.value.field_errors == {
        "api_key": "API key must be at least 10 characters",
        "caller_phone": "Must be in E.164 format (e.g., +911234567890)",
        "callback_url": "Must be a valid URL",
    }
    async with SessionLocal() as db:
        assert (await db.get(WorkflowInstance, instance.id)).status == WorkflowStatus.PENDING.value
        slots = await workflows_repo.list_slots(db, instance.id)
        assert {slot.status for slot in slots} == {CredentialStatus.PENDING.value}
        for slot in slots:
            assert await db.get(CredentialSecret, slot.id) is None


@pytest.mark.asyncio
async def test_configure_requires_all_pending_slots(session, engine_provider) -> None:
    world = await seed_world(session)
    instance = await lifecycle.create(session, tenant_id=world.tenant.id, service_id=world.service.id)

    with pytest.raises(ValidationError) as excinfo:
        await lifecycle.configure(
            session,
            tenant_id=world.tenant.id,
            instance_id=instance.id,
            values={"api_key": VALID_VALUES["api_key"], "caller_phone": "   "},
        )

    assert excinfo.value.field_errors == {
        "caller_phone": "This field is required",
        "callback_url": "This field is required",
    }


@pytest.mark.asyncio
async def test_partial_update_keeps_other_configured_slots(session, engine_provider) -> None:
    world = await seed_world(session)
    instance = await lifecycle.create(session, tenant_id=world.tenant.id, service_id=world.service.id)
    await lifecycle.configure(session, tenant_id=world.tenant.id, instance_id=instance.id, values=VALID_VALUES)
    await lifecycle.activate(session, tenant_id=world.tenant.id, instance_id=instance.id)

    updated = await lifecycle.configure(
        session,
        tenant_id=world.tenant.id,
        instance_id=instance.id,
        values={"api_key": "sk-rotated-9876543210"},
    )

    # Configuring a running instance never knocks it out of ACTIVE.
    assert updated.status == WorkflowStatus.ACTIVE.value
    assert updated.custom_config["caller_phone"] == VALID_VALUES["caller_phone"]
    assert "api_key" not in updated.custom_config


@pytest.mark.asyncio
async def test_activate_with_unconfigured_slots_fails_before_engine_call(session, engine_provider) -> None:
    world = await seed_world(session)
    instance = await lifecycle.create(session, tenant_id=world.tenant.id, service_id=world.service.id)

    with pytest.raises(ValidationError) as excinfo:
        await lifecycle.activate(session, tenant_id=world.tenant.id, instance_id=instance.id)

    assert set(excinfo.value.field_errors) == {"api_key", "caller_phone", "callback_url"}
    assert [call["op"] for call in engine_provider.calls] == ["provision"]


@pytest.mark.asyncio
async def test_activating_twice_is_an_invalid_state(session, engine_provider) -> None:
    world = await seed_world(session)
    instance = await lifecycle.create(session, tenant_id=world.tenant.id, service_id=world.service.id)
    await lifecycle.configure(session, tenant_id=world.tenant.id, instance_id=instance.id, values=VALID_VALUES)
    await lifecycle.activate(session, tenant_id=world.tenant.id, instance_id=instance.id)

    with pytest.raises(InvalidStateError):
        await lifecycle.activate(session, tenant_id=world.tenant.id, instance_id=instance.id)


@pytest.mark.asyncio
async def test_provisioning_failure_persists_error_and_can_be_retried(session, engine_provider) -> None:
    world = await seed_world(session)
    engine_provider.fail_provision = "engine returned 500: template missing"

    with pytest.raises(IntegrationError) as excinfo:
        await lifecycle.create(session, tenant_id=world.tenant.id, service_id=world.service.id)

    instance_id = excinfo.value.details["instance_id"]
    stored = await _fresh_instance(instance_id)
    assert stored.status == WorkflowStatus.ERROR.value
    assert stored.error_message == "engine returned 500: template missing"
    assert stored.provisioned_at is None
    slots = await workflows_repo.list_slots(session, instance_id)
    assert lifecycle.next_action(stored, slots) == NextAction.RETRY_PROVISIONING

    # The failed handshake is never retried on its own.
    assert [call["op"] for call in engine_provider.calls] == ["provision"]

    engine_provider.fail_provision = None
    retried = await lifecycle.retry_provisioning(session, tenant_id=world.tenant.id, instance_id=instance_id)

    assert retried.status == WorkflowStatus.PENDING.value
    assert retried.error_message is None
    assert retried.provisioned_at is not None
    with pytest.raises(InvalidStateError):
        await lifecycle.retry_provisioning(session, tenant_id=world.tenant.id, instance_id=instance_id)


@pytest.mark.asyncio
async def test_engine_timeout_marks_instance_as_error(session, engine_provider, monkeypatch) -> None:
    world = await seed_world(session)
    monkeypatch.setenv("ENGINE_TIMEOUT_MS", "20")
    lifecycle.get_settings.cache_clear()
    engine_provider.delay_s = 0.5

    with pytest.raises(IntegrationError) as excinfo:
        await lifecycle.create(session, tenant_id=world.tenant.id, service_id=world.service.id)

    assert "20 ms" in excinfo.value.message
    stored = await _fresh_instance(excinfo.value.details["instance_id"])
    assert stored.status == WorkflowStatus.ERROR.value


@pytest.mark.asyncio
async def test_activation_failure_then_retry_activation(session, engine_provider) -> None:
    world = await seed_world(session)
    instance = await lifecycle.create(session, tenant_id=world.tenant.id, service_id=world.service.id)
    await lifecycle.configure(session, tenant_id=world.tenant.id, instance_id=instance.id, values=VALID_VALUES)
    engine_provider.fail_activation = "engine unreachable"

    with pytest.raises(IntegrationError):
        await lifecycle.activate(session, tenant_id=world.tenant.id, instance_id=instance.id)

    stored = await _fresh_instance(instance.id)
    assert stored.status == WorkflowStatus.ERROR.value
    assert stored.is_active is False
    assert stored.error_message == "engine unreachable"
    slots = await workflows_repo.list_slots(session, instance.id)
    assert lifecycle.next_action(stored, slots) == NextAction.RETRY_ACTIVATION

    engine_provider.fail_activation = None
    active = await lifecycle.activate(session, tenant_id=world.tenant.id, instance_id=instance.id)
    assert active.status == WorkflowStatus.ACTIVE.value
    assert active.error_message is None


@pytest.mark.asyncio
async def test_deactivate_keeps_credentials_and_config(session, engine_provider) -> None:
    world = await seed_world(session)
    instance = await lifecycle.create(session, tenant_id=world.tenant.id, service_id=world.service.id)
    await lifecycle.configure(session, tenant_id=world.tenant.id, instance_id=instance.id, values=VALID_VALUES)
    await lifecycle.activate(session, tenant_id=world.tenant.id, instance_id=instance.id)

    stopped = await lifecycle.deactivate(session, tenant_id=world.tenant.id, instance_id=instance.id)

    assert stopped.status == WorkflowStatus.CONFIGURED.value
    assert stopped.is_active is False
    slots = await workflows_repo.list_slots(session, instance.id)
    assert {slot.status for slot in slots} == {CredentialStatus.CONFIGURED.value}
    assert lifecycle.next_action(stopped, slots) == NextAction.ACTIVATE
    with pytest.raises(InvalidStateError):
        await lifecycle.deactivate(session, tenant_id=world.tenant.id, instance_id=instance.id)


@pytest.mark.asyncio
async def test_failed_deactivation_leaves_instance_running(session, engine_provider) -> None:
    world = await seed_world(session)
    instance = await lifecycle.create(session, tenant_id=world.tenant.id, service_id=world.service.id)
    await lifecycle.configure(session, tenant_id=world.tenant.id, instance_id=instance.id, values=VALID_VALUES)
    await lifecycle.activate(session, tenant_id=world.tenant.id, instance_id=instance.id)
    engine_provider.fail_activation = "engine busy"

    with pytest.raises(IntegrationError):
        await lifecycle.deactivate(session, tenant_id=world.tenant.id, instance_id=instance.id)

    stored = await _fresh_instance(instance.id)
    assert stored.status == WorkflowStatus.ERROR.value
    assert stored.is_active is True
    slots = await workflows_repo.list_slots(session, instance.id)
    assert lifecycle.next_action(stored, slots) == NextAction.RETRY_DEACTIVATION


@pytest.mark.asyncio
async def test_configure_after_failed_deactivation_keeps_the_instance_running(session, engine_provider) -> None:
    world = await seed_world(session)
    instance = await lifecycle.create(session, tenant_id=world.tenant.id, service_id=world.service.id)
    await lifecycle.configure(session, tenant_id=world.tenant.id, instance_id=instance.id, values=VALID_VALUES)
    await lifecycle.activate(session, tenant_id=world.tenant.id, instance_id=instance.id)
    engine_provider.fail_activation = "engine busy"
    with pytest.raises(IntegrationError):
        await lifecycle.deactivate(session, tenant_id=world.tenant.id, instance_id=instance.id)

    await lifecycle.configure(session, tenant_id=world.tenant.id, instance_id=instance.id, values={})

    stored = await _fresh_instance(instance.id)
    assert stored.status == WorkflowStatus.ERROR.value
    assert stored.is_active is True
    assert stored.error_message == "engine busy"
    slots = await workflows_repo.list_slots(session, instance.id)
    assert lifecycle.next_action(stored, slots) == NextAction.RETRY_DEACTIVATION


@pytest.mark.asyncio
async def test_configure_before_provisioning_keeps_the_failure_reason(session, engine_provider) -> None:
    world = await seed_world(session)
    engine_provider.fail_provision = "engine exploded"
    with pytest.raises(IntegrationError) as excinfo:
        await lifecycle.create(session, tenant_id=world.tenant.id, service_id=world.service.id)
    instance_id = excinfo.value.details["instance_id"]

    await lifecycle.configure(session, tenant_id=world.tenant.id, instance_id=instance_id, values=VALID_VALUES)

    stored = await _fresh_instance(instance_id)
    assert stored.status == WorkflowStatus.ERROR.value
    assert stored.provisioned_at is None
    assert stored.error_message == "engine exploded"
    slots = await workflows_repo.list_slots(session, instance_id)
    assert {slot.status for slot in slots} == {CredentialStatus.CONFIGURED.value}
    assert lifecycle.next_action(stored, slots) == NextAction.RETRY_PROVISIONING

    engine_provider.fail_provision = None
    retried = await lifecycle.retry_provisioning(session, tenant_id=world.tenant.id, instance_id=instance_id)
    assert retried.status == WorkflowStatus.CONFIGURED.value
    assert retried.error_message is None


@pytest.mark.asyncio
async def test_reused_engine_reference_marks_the_instance_failed(session, engine_provider) -> None:
    first = await seed_world(session)
    second = await seed_world(session)
    engine_provider.reference = "wf-shared"
    await lifecycle.create(session, tenant_id=first.tenant.id, service_id=first.service.id)

    with pytest.raises(IntegrationError) as excinfo:
        await lifecycle.create(session, tenant_id=second.tenant.id, service_id=second.service.id)

    stored = await _fresh_instance(excinfo.value.details["instance_id"])
    assert stored.tenant_id == second.tenant.id
    assert stored.status == WorkflowStatus.ERROR.value
    assert stored.provisioned_at is None
    assert stored.external_reference is None
    assert stored.error_message == "Automation engine returned a reference already bound to another instance"
    slots = await workflows_repo.list_slots(session, stored.id)
    assert lifecycle.next_action(stored, slots) == NextAction.RETRY_PROVISIONING


@pytest.mark.asyncio
async def test_revoked_tenant_can_still_be_deactivated(session, engine_provider) -> None:
    world = await seed_world(session)
    instance = await lifecycle.create(session, tenant_id=world.tenant.id, service_id=world.service.id)
    await lifecycle.configure(session, tenant_id=world.tenant.id, instance_id=instance.id, values=VALID_VALUES)
    await lifecycle.activate(session, tenant_id=world.tenant.id, instance_id=instance.id)
    await entitlements.revoke_entitlement(
        session, reseller_id=world.reseller.id, tenant_id=world.tenant.id, service_id=world.service.id
    )

    with pytest.raises(AuthorizationError):
        await lifecycle.configure(session, tenant_id=world.tenant.id, instance_id=instance.id, values={})
    stopped = await lifecycle.deactivate(session, tenant_id=world.tenant.id, instance_id=instance.id)

    assert stopped.is_active is False
    assert await lifecycle.describe_next_action(session, tenant_id=world.tenant.id, instance=stopped) == (
        NextAction.CONTACT_ADMINISTRATOR
    )


@pytest.mark.asyncio
async def test_create_without_entitlement_is_forbidden(session, engine_provider) -> None:
    world = await seed_world(session, entitled=False)

    with pytest.raises(AuthorizationError):
        await lifecycle.create(session, tenant_id=world.tenant.id, service_id=world.service.id)

    assert engine_provider.calls == []


@pytest.mark.asyncio
async def test_concurrent_creates_leave_exactly_one_instance(session, engine_provider) -> None:
    world = await seed_world(session)

    async def _attempt():
        async with SessionLocal() as db:
            return await lifecycle.create(db, tenant_id=world.tenant.id, service_id=world.service.id)

    outcomes = await asyncio.gather(_attempt(), _attempt(), return_exceptions=True)

    created = [item for item in outcomes if isinstance(item, WorkflowInstance)]
    conflicts = [item for item in outcomes if isinstance(item, ConflictError)]
    assert len(created) == 1
    assert len(conflicts) == 1
    assert len(await lifecycle.list_instances(session, tenant_id=world.tenant.id)) == 1


@pytest.mark.asyncio
async def test_instance_without_template_has_no_slots(session, engine_provider) -> None:
    world = await seed_world(session, required_credentials=[])

    instance = await lifecycle.create(session, tenant_id=world.tenant.id, service_id=world.service.id)
    slots = await workflows_repo.list_slots(session, instance.id)

    assert slots == []
    assert lifecycle.next_action(instance, slots) == NextAction.CONFIGURE_CREDENTIALS
    configured = await lifecycle.configure(session, tenant_id=world.tenant.id, instance_id=instance.id, values={})
    assert configured.status == WorkflowStatus.CONFIGURED.value


@pytest.mark.asyncio
async def test_configure_merges_typed_config_fields(session, engine_provider) -> None:
    world = await seed_world(
        session,
        required_credentials=["api_key"],
        config_schema={"max_call_minutes": "integer", "record_calls": "boolean"},
    )
    instance = await lifecycle.create(session, tenant_id=world.tenant.id, service_id=world.service.id)

    with pytest.raises(ValidationError) as excinfo:
        await lifecycle.configure(
            session,
            tenant_id=world.tenant.id,
            instance_id=instance.id,
            values={"api_key": VALID_VALUES["api_key"], "max_call_minutes": "ten", "voice": "alloy"},
        )
    assert excinfo.value.field_errors == {"max_call_minutes": "Must be an integer", "voice": "Unknown field"}

    configured = await lifecycle.configure(
        session,
        tenant_id=world.tenant.id,
        instance_id=instance.id,
        values={"api_key": VALID_VALUES["api_key"], "max_call_minutes": "15", "record_calls": "yes"},
    )
    assert configured.custom_config == {"language": "en", "max_call_minutes": 15, "record_calls": True}


@pytest.mark.asyncio
async def test_create_all_missing_continues_past_failures(session, engine_provider) -> None:
    from opsportal.tests.utils.factories import enable_service, grant, seed_service

    world = await seed_world(session)
    second, _template, _plan = await seed_service(session, name="Zeta Messaging")
    await enable_service(session, world.reseller, second)
    await grant(session, world, service=second)
    existing = await lifecycle.create(session, tenant_id=world.tenant.id, service_id=world.service.id)
    third, _template, _plan = await seed_service(session, name="Alpha Social")
    await enable_service(session, world.reseller, third)
    await grant(session, world, service=third)

    engine_provider.fail_provision = "quota at engine exceeded"
    progress: list[dict[str, int]] = []

    async def _on_progress(update: dict[str, int]) -> None:
        progress.append(update)

    results = await lifecycle.create_all_missing(session, tenant_id=world.tenant.id, on_progress=_on_progress)

    assert [item.service_name for item in results] == ["Alpha Social", "Zeta Messaging"]
    assert all(item.ok is False for item in results)
    assert all(item.instance_id for item in results)
    assert {item.error_code for item in results} == {"INTEGRATION_ERROR"}
    assert progress == [{"current": 1, "total": 2}, {"current": 2, "total": 2}]
    instances = await lifecycle.list_instances(session, tenant_id=world.tenant.id)
    assert existing.id in {row.id for row in instances}
    assert len(instances) == 3


@pytest.mark.asyncio
async def test_record_execution_counts_every_callback(session, engine_provider) -> None:
    world = await seed_world(session)
    instance = await lifecycle.create(session, tenant_id=world.tenant.id, service_id=world.service.id)

    async def _callback() -> int:
        async with SessionLocal() as db:
            return await lifecycle.record_execution(db, tenant_id=world.tenant.id, instance_id=instance.id)

    counts = await asyncio.gather(*[_callback() for _ in range(5)])

    assert sorted(counts) == [1, 2, 3, 4, 5]
    assert (await _fresh_instance(instance.id)).execution_count == 5
