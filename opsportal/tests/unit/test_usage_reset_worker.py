from __future__ import annotations

from datetime import datetime, timezone

import pytest
from sqlalchemy import update

from opsportal.domain.models import ClientService
from opsportal.services import quota
from opsportal.tests.utils.factories import seed_world
from opsportal.workers.usage_reset_worker import WorkerSettings, run_usage_rollover


def test_rollover_is_scheduled_daily() -> None:
    assert WorkerSettings.functions == [run_usage_rollover]
    assert len(WorkerSettings.cron_jobs) == 1
    assert WorkerSettings.queue_name == "usage-reset"


@pytest.mark.asyncio
async def test_rollover_job_resets_counters_from_an_earlier_period(session) -> None:
    world = await seed_world(session, usage_limit=50)
    await quota.record_usage(session, tenant_id=world.tenant.id, service_id=world.service.id, quantity=12)
    # Pretend the last reset happened in an old period.
    await session.execute(
        update(ClientService)
        .where(ClientService.tenant_id == world.tenant.id)
        .values(last_reset_at=datetime(2020, 1, 1, tzinfo=timezone.utc))
    )
    await session.commit()

    result = await run_usage_rollover({})

    assert result == {"checked": 1, "reset": 1}
    snapshot = await quota.current_usage(session, tenant_id=world.tenant.id, service_id=world.service.id)
    assert snapshot.consumed == 0
