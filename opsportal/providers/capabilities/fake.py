from __future__ import annotations

from opsportal.providers.capabilities.base import CapabilityRequest, CapabilityResult


class FakeCapabilityProvider:
    def __init__(self, *, units: int = 1) -> None:
        # Fixed unit count lets quota tests assert exact consumption.
        self._units = units
        self.requests: list[CapabilityRequest] = []

    async def invoke(self, request: CapabilityRequest) -> CapabilityResult:
        self.requests.append(request)
        return CapabilityResult(
            status="accepted",
            units=self._units,
            external_id=f"fake-{request.instance_id}-{len(self.requests)}",
        )
