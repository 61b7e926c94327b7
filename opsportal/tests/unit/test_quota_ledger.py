from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from opsportal.core.errors import NotFoundError, QuotaExceededError, ValidationError
from opsportal.domain.models import ClientService
from opsportal.persistence.db import SessionLocal
from opsportal.persistence.repos import entitlements as entitlements_repo
from opsportal.persistence.repos import usage as usage_repo
from opsportal.services import quota
from opsportal.services.quota import QuotaLedger, build_snapshot, crossed_thresholds, period_start
from opsportal.tests.utils.factories import grant, seed_world


def test_snapshot_flags_follow_the_limit() -> None:
    snap = build_snapshot(
        tenant_id="t", service_id="s", consumed=80, limit=100, reset_period="monthly", warning_ratio=0.8
    )
    assert (snap.remaining, snap.percent_used, snap.warning, snap.at_limit, snap.over_limit) == (
        20,
        80.0,
        True,
        False,
        False,
    )

    at_limit = build_snapshot(
        tenant_id="t", service_id="s", consumed=100, limit=100, reset_period="monthly", warning_ratio=0.8
    )
    assert at_limit.at_limit is True
    assert at_limit.over_limit is False

    over = build_snapshot(
        tenant_id="t", service_id="s", consumed=130, limit=100, reset_period="monthly", warning_ratio=0.8
    )
    assert over.over_limit is True
    assert over.remaining == 0


@pytest.mark.parametrize("limit", [None, 0])
def test_missing_or_zero_limit_is_unlimited(limit) -> None:
    snap = build_snapshot(
        tenant_id="t", service_id="s", consumed=10_000, limit=limit, reset_period="none", warning_ratio=0.8
    )
    assert snap.limit is None
    assert snap.remaining is None
    assert snap.percent_used is None
    assert not (snap.warning or snap.at_limit or snap.over_limit)
    assert crossed_thresholds(0, 10_000, limit, 0.8) == ()


def test_threshold_crossings() -> None:
    assert crossed_thresholds(70, 80, 100, 0.8) == ("warning",)
    assert crossed_thresholds(80, 90, 100, 0.8) == ()
    assert crossed_thresholds(90, 100, 100, 0.8) == ("limit",)
    assert crossed_thresholds(100, 110, 100, 0.8) == ()
    # A single jump past both thresholds reports only the hard limit.
    assert crossed_thresholds(10, 120, 100, 0.8) == ("limit",)


def test_period_boundaries_are_utc_calendar_periods() -> None:
    now = datetime(2026, 3, 19, 15, 30, tzinfo=timezone.utc)  # a Thursday
    assert period_start("daily", now) == datetime(2026, 3, 19, tzinfo=timezone.utc)
    assert period_start("weekly", now) == datetime(2026, 3, 16, tzinfo=timezone.utc)
    assert period_start("monthly", now) == datetime(2026, 3, 1, tzinfo=timezone.utc)
    assert period_start("none", now) is None


@pytest.mark.asyncio
async def test_concurrent_recording_loses_no_increment(session) -> None:
    world = await seed_world(session, usage_limit=1000)

    async def _record(quantity: int) -> None:
        async with SessionLocal() as db:
            await quota.record_usage(db, tenant_id=world.tenant.id, service_id=world.service.id, quantity=quantity)

    quantities = [1, 2, 3, 4, 5, 6, 7, 8, 9, 10]
    await asyncio.gather(*[_record(item) for item in quantities])

    snapshot = await quota.current_usage(session, tenant_id=world.tenant.id, service_id=world.service.id)
    assert snapshot.consumed == sum(quantities)
    assert await usage_repo.sum_events(session, tenant_id=world.tenant.id, service_id=world.service.id) == 55
    events = await usage_repo.list_events(session, tenant_id=world.tenant.id, service_id=world.service.id)
    assert len(events) == len(quantities)


@pytest.mark.asyncio
async def test_concurrent_recording_reports_each_crossing_once(session) -> None:
    world = await seed_world(session, usage_limit=50)

    async def _record():
        async with SessionLocal() as db:
            return await quota.record_usage(db, tenant_id=world.tenant.id, service_id=world.service.id, quantity=1)

    results = await asyncio.gather(*[_record() for _ in range(50)])

    crossings = sorted(result.crossed for result in results if result.crossed)
    assert crossings == [("limit",), ("warning",)]
    snapshot = await quota.current_usage(session, tenant_id=world.tenant.id, service_id=world.service.id)
    assert snapshot.consumed == 50
    assert snapshot.at_limit is True
    assert snapshot.over_limit is False

    extra = await quota.record_usage(session, tenant_id=world.tenant.id, service_id=world.service.id, quantity=1)
    assert extra.crossed == ()
    assert extra.snapshot.consumed == 51
    assert extra.snapshot.over_limit is True


@pytest.mark.asyncio
async def test_usage_past_the_limit_is_still_recorded(session) -> None:
    world = await seed_world(session, usage_limit=10)

    first = await quota.record_usage(session, tenant_id=world.tenant.id, service_id=world.service.id, quantity=8)
    second = await quota.record_usage(session, tenant_id=world.tenant.id, service_id=world.service.id, quantity=5)
    third = await quota.record_usage(session, tenant_id=world.tenant.id, service_id=world.service.id, quantity=1)

    assert first.crossed == ("warning",)
    assert second.crossed == ("limit",)
    assert third.crossed == ()
    assert third.snapshot.consumed == 14
    assert third.snapshot.over_limit is True
    with pytest.raises(QuotaExceededError) as excinfo:
        await quota.get_quota_ledger().check_quota(
            session, tenant_id=world.tenant.id, service_id=world.service.id
        )
    assert excinfo.value.details["limit"] == 10


@pytest.mark.asyncio
async def test_invalid_quantities_and_costs_are_rejected(session) -> None:
    world = await seed_world(session)

    for quantity in (0, -3, True, 2.5):
        with pytest.raises(ValidationError):
            await quota.record_usage(
                session, tenant_id=world.tenant.id, service_id=world.service.id, quantity=quantity
            )
    with pytest.raises(ValidationError):
        await quota.record_usage(
            session, tenant_id=world.tenant.id, service_id=world.service.id, quantity=1, unit_cost="free"
        )

    recorded = await quota.record_usage(
        session, tenant_id=world.tenant.id, service_id=world.service.id, quantity=2, unit_cost="0.25"
    )
    assert recorded.snapshot.consumed == 2


@pytest.mark.asyncio
async def test_recording_without_entitlement_is_not_found(session) -> None:
    world = await seed_world(session, entitled=False)

    with pytest.raises(NotFoundError):
        await quota.record_usage(session, tenant_id=world.tenant.id, service_id=world.service.id, quantity=1)
    assert await usage_repo.sum_events(session, tenant_id=world.tenant.id, service_id=world.service.id) == 0


@pytest.mark.asyncio
async def test_unlimited_entitlement_never_flags(session) -> None:
    world = await seed_world(session, entitled=False)
    await grant(session, world, usage_limit=0, reset_period="none")

    result = await quota.record_usage(
        session, tenant_id=world.tenant.id, service_id=world.service.id, quantity=5000
    )

    assert result.crossed == ()
    assert result.snapshot.limit is None
    assert result.snapshot.at_limit is False


@pytest.mark.asyncio
async def test_rollover_resets_counters_but_keeps_history(session) -> None:
    world = await seed_world(session, usage_limit=100)
    await quota.record_usage(session, tenant_id=world.tenant.id, service_id=world.service.id, quantity=40)

    now = datetime.now(timezone.utc)
    same_period = await QuotaLedger(time_provider=lambda: now).reset_due_usage(session)
    assert same_period.reset == 0

    next_month = now + timedelta(days=40)
    summary = await QuotaLedger(time_provider=lambda: next_month).reset_due_usage(session)

    assert summary.checked == 1
    assert summary.reset == 1
    row = await session.get(ClientService, (await entitlements_repo.get_entitlement(
        session, tenant_id=world.tenant.id, service_id=world.service.id
    )).id, populate_existing=True)
    assert row.usage_consumed == 0
    assert await usage_repo.sum_events(session, tenant_id=world.tenant.id, service_id=world.service.id) == 40

    # A second run in the same period is a no-op.
    again = await QuotaLedger(time_provider=lambda: next_month).reset_due_usage(session)
    assert again.reset == 0


@pytest.mark.asyncio
async def test_counters_that_never_reset_are_skipped(session) -> None:
    world = await seed_world(session, entitled=False)
    await grant(session, world, usage_limit=100, reset_period="none")
    await quota.record_usage(session, tenant_id=world.tenant.id, service_id=world.service.id, quantity=7)

    summary = await quota.reset_due_usage(session, now=datetime.now(timezone.utc) + timedelta(days=400))

    assert summary.checked == 0
    snapshot = await quota.current_usage(session, tenant_id=world.tenant.id, service_id=world.service.id)
    assert snapshot.consumed == 7
