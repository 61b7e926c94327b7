from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol


@dataclass(frozen=True)
class CapabilityRequest:
    tenant_id: str
    service_slug: str
    instance_id: str
    webhook_endpoint: str | None
    payload: dict[str, Any] = field(default_factory=dict)
    # Decrypted slot values for the provider call only; never logged or persisted.
    credentials: dict[str, str] = field(default_factory=dict, repr=False)


@dataclass(frozen=True)
class CapabilityResult:
    status: str
    # Units reported back by the provider; recorded against the tenant's quota.
    units: int = 1
    external_id: str | None = None


class CapabilityProvider(Protocol):
    # Uniform call shape for voice, messaging and social providers.
    async def invoke(self, request: CapabilityRequest) -> CapabilityResult:
        ...
