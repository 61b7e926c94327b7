from __future__ import annotations

import logging
import time
from typing import Any

import httpx

from opsportal.core.config import get_settings
from opsportal.core.errors import IntegrationError, ProviderConfigError
from opsportal.providers.engine.base import ActivationResult, ProvisionResult
from opsportal.services.telemetry import record_external_call


logger = logging.getLogger(__name__)


def _error_text(response: httpx.Response) -> str:
    # Prefer the engine's own message so tenants see why provisioning failed.
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        for key in ("message", "error", "detail"):
            value = payload.get(key)
            if isinstance(value, str) and value:
                return value
    text = (response.text or "").strip()
    return text[:500] if text else f"Automation engine returned HTTP {response.status_code}"


class HttpEngineProvider:
    def __init__(self, client: httpx.AsyncClient | None = None) -> None:
        self._settings = get_settings()
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        if not self._settings.engine_base_url:
            raise ProviderConfigError("ENGINE_BASE_URL is required for the http engine provider")
        # Reuse a single client per provider for connection pooling.
        timeout_s = self._settings.engine_timeout_ms / 1000.0
        self._client = httpx.AsyncClient(base_url=self._settings.engine_base_url, timeout=timeout_s)
        return self._client

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._settings.engine_api_key:
            headers["Authorization"] = f"Bearer {self._settings.engine_api_key}"
        return headers

    async def _post(self, integration: str, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        client = self._get_client()
        start = time.monotonic()
        try:
            response = await client.post(path, json=payload, headers=self._headers())
        except httpx.TimeoutException as exc:
            record_external_call(
                integration=integration, latency_ms=(time.monotonic() - start) * 1000.0, success=False
            )
            raise IntegrationError("Automation engine request timed out") from exc
        except httpx.HTTPError as exc:
            record_external_call(
                integration=integration, latency_ms=(time.monotonic() - start) * 1000.0, success=False
            )
            raise IntegrationError(f"Automation engine unreachable: {exc.__class__.__name__}") from exc

        latency_ms = (time.monotonic() - start) * 1000.0
        if response.status_code >= 400:
            record_external_call(integration=integration, latency_ms=latency_ms, success=False)
            message = _error_text(response)
            logger.warning("engine_call_failed integration=%s status=%s", integration, response.status_code)
            raise IntegrationError(message, details={"status_code": response.status_code})

        record_external_call(integration=integration, latency_ms=latency_ms, success=True)
        try:
            body = response.json()
        except ValueError:
            body = {}
        return body if isinstance(body, dict) else {}

    async def provision(
        self,
        *,
        tenant_id: str,
        service_id: str,
        template_reference: str | None,
        instance_id: str,
    ) -> ProvisionResult:
        body = await self._post(
            "engine.provision",
            self._settings.engine_provision_path,
            {
                "tenant_id": tenant_id,
                "service_id": service_id,
                "template_reference": template_reference,
                "instance_id": instance_id,
            },
        )
        if body.get("success") is False:
            raise IntegrationError(str(body.get("error") or "Automation engine rejected provisioning"))
        reference = body.get("external_reference") or body.get("workflow_id")
        return ProvisionResult(
            external_reference=str(reference) if reference else None,
            status=str(body.get("status") or "provisioned"),
            webhook_url=body.get("webhook_url"),
        )

    async def set_active(
        self,
        *,
        instance_id: str,
        external_reference: str | None,
        activate: bool,
    ) -> ActivationResult:
        body = await self._post(
            "engine.activation",
            self._settings.engine_activation_path,
            {
                "workflow_instance_id": instance_id,
                "external_reference": external_reference,
                "activate": activate,
            },
        )
        if body.get("success") is False:
            raise IntegrationError(str(body.get("error") or "Automation engine rejected activation"))
        return ActivationResult(status=str(body.get("status") or ("active" if activate else "inactive")))
