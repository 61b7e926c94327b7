from __future__ import annotations

import logging

from arq.connections import RedisSettings
from arq.cron import cron

from opsportal.core.config import get_settings
from opsportal.core.logging import configure_logging
from opsportal.persistence.db import SessionLocal
from opsportal.services.quota import reset_due_usage


logger = logging.getLogger(__name__)


async def run_usage_rollover(ctx) -> dict[str, int]:
    # Zero counters whose daily, weekly or monthly period has rolled over.
    async with SessionLocal() as session:
        summary = await reset_due_usage(session)
    return {"checked": summary.checked, "reset": summary.reset}


async def _startup(ctx) -> None:
    configure_logging()
    logger.info("usage_reset_worker_started")


async def _shutdown(ctx) -> None:
    logger.info("usage_reset_worker_stopped")


class WorkerSettings:
    # Keep worker settings as class attributes for ARQ CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.usage_reset_queue_name
    functions = [run_usage_rollover]
    cron_jobs = [
        cron(
            run_usage_rollover,
            hour={settings.usage_reset_hour_utc},
            minute={settings.usage_reset_minute_utc},
            run_at_startup=True,
            unique=True,
        )
    ]
    on_startup = _startup
    on_shutdown = _shutdown
