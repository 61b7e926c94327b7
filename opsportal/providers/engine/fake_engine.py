from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any

from opsportal.core.errors import IntegrationError
from opsportal.providers.engine.base import ActivationResult, ProvisionResult


@dataclass
class FakeEngineProvider:
    # Deterministic engine for tests and local runs; failures are scripted per call type.
    fail_provision: str | None = None
    fail_activation: str | None = None
    # Pin the reference returned by provision; defaults to one per instance.
    reference: str | None = None
    delay_s: float = 0.0
    calls: list[dict[str, Any]] = field(default_factory=list)

    async def provision(
        self,
        *,
        tenant_id: str,
        service_id: str,
        template_reference: str | None,
        instance_id: str,
    ) -> ProvisionResult:
        self.calls.append(
            {"op": "provision", "tenant_id": tenant_id, "service_id": service_id, "instance_id": instance_id}
        )
        if self.delay_s:
            await asyncio.sleep(self.delay_s)
        if self.fail_provision:
            raise IntegrationError(self.fail_provision)
        return ProvisionResult(
            external_reference=self.reference or f"wf-{instance_id}",
            status="provisioned",
            webhook_url=f"https://engine.invalid/webhook/{instance_id}",
        )

    async def set_active(
        self,
        *,
        instance_id: str,
        external_reference: str | None,
        activate: bool,
    ) -> ActivationResult:
        self.calls.append({"op": "set_active", "instance_id": instance_id, "activate": activate})
        if self.delay_s:
            await asyncio.sleep(self.delay_s)
        if self.fail_activation:
            raise IntegrationError(self.fail_activation)
        return ActivationResult(status="active" if activate else "inactive")
