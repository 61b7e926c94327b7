from __future__ import annotations

import time

import httpx

from opsportal.core.config import get_settings
from opsportal.core.errors import IntegrationError
from opsportal.providers.capabilities.base import CapabilityRequest, CapabilityResult
from opsportal.services.telemetry import record_external_call


class WebhookCapabilityProvider:
    # Dispatches an invocation to the workflow instance's engine webhook.
    def __init__(self, client: httpx.AsyncClient | None = None) -> None:
        self._settings = get_settings()
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        timeout_s = self._settings.capability_timeout_ms / 1000.0
        self._client = httpx.AsyncClient(timeout=timeout_s)
        return self._client

    async def invoke(self, request: CapabilityRequest) -> CapabilityResult:
        if not request.webhook_endpoint:
            raise IntegrationError(
                "Workflow instance has no webhook endpoint",
                details={"instance_id": request.instance_id},
            )
        integration = f"capability.{request.service_slug}"
        body = {
            "tenant_id": request.tenant_id,
            "workflow_instance_id": request.instance_id,
            "credentials": request.credentials,
            **request.payload,
        }
        start = time.monotonic()
        try:
            response = await self._get_client().post(request.webhook_endpoint, json=body)
        except httpx.HTTPError as exc:
            record_external_call(
                integration=integration, latency_ms=(time.monotonic() - start) * 1000.0, success=False
            )
            raise IntegrationError(f"Capability webhook failed: {exc.__class__.__name__}") from exc

        latency_ms = (time.monotonic() - start) * 1000.0
        if response.status_code >= 400:
            record_external_call(integration=integration, latency_ms=latency_ms, success=False)
            raise IntegrationError(
                f"Capability webhook error: {response.status_code}",
                details={"status_code": response.status_code},
            )
        record_external_call(integration=integration, latency_ms=latency_ms, success=True)
        try:
            payload = response.json()
        except ValueError:
            payload = {}
        if not isinstance(payload, dict):
            payload = {}
        return CapabilityResult(
            status=str(payload.get("status") or "accepted"),
            units=max(0, int(payload.get("units") or 1)),
            external_id=payload.get("id"),
        )
