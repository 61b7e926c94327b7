from __future__ import annotations

from opsportal.core.config import get_settings
from opsportal.core.errors import ProviderConfigError
from opsportal.providers.engine.base import EngineProvider
from opsportal.providers.engine.fake_engine import FakeEngineProvider
from opsportal.providers.engine.http_engine import HttpEngineProvider


_override: EngineProvider | None = None


def get_engine_provider() -> EngineProvider:
    if _override is not None:
        return _override
    settings = get_settings()
    provider = (settings.engine_provider or "http").lower()

    if provider == "fake":
        return FakeEngineProvider()
    if provider == "http":
        return HttpEngineProvider()

    raise ProviderConfigError(f"Unsupported engine provider: {provider}")


def set_engine_provider(provider: EngineProvider | None) -> None:
    # Pin a provider instance for tests; None restores settings-driven selection.
    global _override
    _override = provider
