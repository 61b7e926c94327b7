from __future__ import annotations

from opsportal.core.config import get_settings
from opsportal.core.errors import ProviderConfigError
from opsportal.providers.capabilities.base import CapabilityProvider
from opsportal.providers.capabilities.fake import FakeCapabilityProvider
from opsportal.providers.capabilities.webhook import WebhookCapabilityProvider


def get_capability_provider() -> CapabilityProvider:
    settings = get_settings()
    provider = (settings.capability_provider or "webhook").lower()

    if provider == "fake":
        return FakeCapabilityProvider()
    if provider == "webhook":
        return WebhookCapabilityProvider()

    raise ProviderConfigError(f"Unsupported capability provider: {provider}")
