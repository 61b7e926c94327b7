from __future__ import annotations

import asyncio
from datetime import datetime

from opsportal.core.logging import configure_logging
from opsportal.persistence.db import SessionLocal
from opsportal.services.quota import reset_due_usage


async def reset(now: datetime | None = None) -> None:
    configure_logging()
    async with SessionLocal() as session:
        summary = await reset_due_usage(session, now=now)
        print(f"usage_counters_checked={summary.checked} usage_counters_reset={summary.reset}")


if __name__ == "__main__":
    asyncio.run(reset())
