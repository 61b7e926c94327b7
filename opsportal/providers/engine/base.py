from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol


@dataclass(frozen=True)
class ProvisionResult:
    external_reference: str | None
    status: str
    webhook_url: str | None = None


@dataclass(frozen=True)
class ActivationResult:
    status: str


class EngineProvider(Protocol):
    # Handshake with the external automation engine; failures raise IntegrationError.
    async def provision(
        self,
        *,
        tenant_id: str,
        service_id: str,
        template_reference: str | None,
        instance_id: str,
    ) -> ProvisionResult:
        ...

    async def set_active(
        self,
        *,
        instance_id: str,
        external_reference: str | None,
        activate: bool,
    ) -> ActivationResult:
        ...
