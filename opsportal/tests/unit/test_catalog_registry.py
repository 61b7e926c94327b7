from __future__ import annotations

import pytest

from opsportal.core.errors import ConflictError, NotFoundError, ValidationError
from opsportal.services import catalog
from opsportal.tests.utils.factories import seed_service


@pytest.mark.asyncio
async def test_create_service_derives_slug_and_defaults(session) -> None:
    service = await catalog.create_service(
        session,
        name="  Voice Receptionist  ",
        category="voice",
        pricing_model="per_minute",
        base_price="0.25",
        features=[{"name": "Call routing"}],
    )

    assert service.name == "Voice Receptionist"
    assert service.slug == "voice-receptionist"
    assert str(service.base_price) == "0.25"
    assert service.is_active is True
    assert (await catalog.get_service_by_slug(session, "voice-receptionist")).id == service.id


@pytest.mark.asyncio
async def test_duplicate_slug_is_a_conflict(session) -> None:
    await catalog.create_service(session, name="SMS Blast", category="messaging", pricing_model="per_message")

    with pytest.raises(ConflictError):
        await catalog.create_service(
            session, name="SMS Blast 2", slug="sms-blast", category="messaging", pricing_model="per_message"
        )


@pytest.mark.asyncio
async def test_unknown_enum_values_are_field_errors(session) -> None:
    with pytest.raises(ValidationError) as excinfo:
        await catalog.create_service(session, name="Fax", category="fax", pricing_model="per_call")

    assert "category" in excinfo.value.field_errors


@pytest.mark.asyncio
async def test_update_service_applies_in_place(session) -> None:
    service, _template, _plan = await seed_service(session)

    updated = await catalog.update_service(
        session, service.id, changes={"description": "Answers calls", "is_active": False}
    )

    assert updated.id == service.id
    assert updated.description == "Answers calls"
    assert updated.is_active is False
    assert service.id not in {row.id for row in await catalog.list_services(session)}
    assert service.id in {row.id for row in await catalog.list_services(session, active_only=False)}


@pytest.mark.asyncio
async def test_update_service_rejects_unknown_fields(session) -> None:
    service, _template, _plan = await seed_service(session)

    with pytest.raises(ValidationError) as excinfo:
        await catalog.update_service(session, service.id, changes={"slug": "renamed"})

    assert excinfo.value.field_errors == {"slug": "Unknown field"}


@pytest.mark.asyncio
async def test_missing_service_is_not_found(session) -> None:
    with pytest.raises(NotFoundError):
        await catalog.get_service(session, "does-not-exist")


@pytest.mark.asyncio
async def test_template_shape_is_validated(session) -> None:
    service, _template, _plan = await seed_service(session, with_template=False)

    with pytest.raises(ValidationError) as excinfo:
        await catalog.create_template(
            session,
            service_id=service.id,
            name="Broken",
            required_credentials=["api_key", "api_key"],
            config_schema={"greeting": "markdown"},
        )

    errors = excinfo.value.field_errors
    assert errors["required_credentials"] == "Credential names must be unique"
    assert "greeting" in errors["config_schema"]


@pytest.mark.asyncio
async def test_newest_active_template_is_used_for_provisioning(session) -> None:
    service, first, _plan = await seed_service(session)
    assert first is not None
    second = await catalog.create_template(
        session,
        service_id=service.id,
        name="v2",
        required_credentials=["api_key"],
        version="2.0",
    )

    active = await catalog.get_active_template(session, service.id)

    assert active is not None
    assert active.id == second.id


@pytest.mark.asyncio
async def test_retired_plans_are_hidden_from_default_listing(session) -> None:
    service, _template, plan = await seed_service(session)
    extra = await catalog.create_plan(session, service_id=service.id, name="Premium", tier="premium", usage_limit=500)

    await catalog.set_plan_active(session, plan.id, is_active=False)

    assert [row.id for row in await catalog.list_plans(session, service.id)] == [extra.id]
    assert {row.id for row in await catalog.list_plans(session, service.id, active_only=False)} == {plan.id, extra.id}
