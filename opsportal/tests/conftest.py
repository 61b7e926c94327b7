from __future__ import annotations

import os
import tempfile

# Settings and the engine are built at import time, so the test environment
# has to be in place before any opsportal module is imported.
os.environ.setdefault(
    "DATABASE_URL",
    f"sqlite+aiosqlite:///{os.path.join(tempfile.gettempdir(), f'opsportal-tests-{os.getpid()}.db')}",
)
os.environ.setdefault("VAULT_MASTER_KEY", "test-vault-master-key")
os.environ.setdefault("ENGINE_PROVIDER", "fake")
os.environ.setdefault("CAPABILITY_PROVIDER", "fake")
os.environ.setdefault("PLATFORM_OWNER_USER_IDS", "owner-user")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest

from opsportal.core.config import get_settings
from opsportal.domain.models import Base
from opsportal.persistence.db import SessionLocal, engine
from opsportal.providers.engine.factory import set_engine_provider
from opsportal.providers.engine.fake_engine import FakeEngineProvider
from opsportal.services.credentials import set_secret_store
from opsportal.services.entitlements import reset_entitlements_cache
from opsportal.services.events import reset_event_bus
from opsportal.services.quota import reset_quota_ledger
from opsportal.services.telemetry import reset_telemetry


def _reset_process_state() -> None:
    get_settings.cache_clear()
    reset_entitlements_cache()
    reset_event_bus()
    reset_quota_ledger()
    reset_telemetry()
    set_engine_provider(None)
    set_secret_store(None)


@pytest.fixture(autouse=True)
async def fresh_schema() -> None:
    # Rebuild the schema per test so rows never leak between tests.
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    _reset_process_state()
    yield
    _reset_process_state()
    # Dispose the async engine to prevent cross-loop connection reuse between tests.
    await engine.dispose()


@pytest.fixture
async def session():
    async with SessionLocal() as db:
        yield db


@pytest.fixture
def engine_provider() -> FakeEngineProvider:
    # Pin one fake engine per test so failures can be scripted and calls inspected.
    provider = FakeEngineProvider()
    set_engine_provider(provider)
    return provider
