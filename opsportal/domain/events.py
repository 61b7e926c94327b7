from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, ClassVar


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, kw_only=True)
class DomainEvent:
    # Every control-plane transition publishes one of these on the event bus.
    event_type: ClassVar[str] = "event"

    tenant_id: str | None
    actor_id: str | None = None
    occurred_at: datetime = field(default_factory=_utc_now)

    def metadata(self) -> dict[str, Any]:
        # Flatten event-specific fields for audit metadata.
        payload: dict[str, Any] = {}
        for name in self.__dataclass_fields__:
            if name in {"tenant_id", "actor_id", "occurred_at"}:
                continue
            payload[name] = getattr(self, name)
        return payload


@dataclass(frozen=True, kw_only=True)
class InstanceCreated(DomainEvent):
    event_type: ClassVar[str] = "workflow.instance.created"

    instance_id: str
    service_id: str
    service_name: str
    slot_count: int


@dataclass(frozen=True, kw_only=True)
class ProvisioningFailed(DomainEvent):
    event_type: ClassVar[str] = "workflow.provisioning.failed"

    instance_id: str
    service_id: str
    service_name: str
    error_message: str


@dataclass(frozen=True, kw_only=True)
class InstanceProvisioned(DomainEvent):
    event_type: ClassVar[str] = "workflow.provisioning.succeeded"

    instance_id: str
    service_id: str
    external_reference: str | None


@dataclass(frozen=True, kw_only=True)
class InstanceConfigured(DomainEvent):
    event_type: ClassVar[str] = "workflow.instance.configured"

    instance_id: str
    service_id: str
    service_name: str
    slot_names: tuple[str, ...]


@dataclass(frozen=True, kw_only=True)
class InstanceActivated(DomainEvent):
    event_type: ClassVar[str] = "workflow.instance.activated"

    instance_id: str
    service_id: str
    service_name: str


@dataclass(frozen=True, kw_only=True)
class ActivationFailed(DomainEvent):
    event_type: ClassVar[str] = "workflow.activation.failed"

    instance_id: str
    service_id: str
    service_name: str
    error_message: str
    activate: bool = True


@dataclass(frozen=True, kw_only=True)
class InstanceDeactivated(DomainEvent):
    event_type: ClassVar[str] = "workflow.instance.deactivated"

    instance_id: str
    service_id: str
    service_name: str


@dataclass(frozen=True, kw_only=True)
class CredentialStatusChanged(DomainEvent):
    event_type: ClassVar[str] = "credential.status.changed"

    instance_id: str
    slot_name: str
    status: str


@dataclass(frozen=True, kw_only=True)
class EntitlementGranted(DomainEvent):
    event_type: ClassVar[str] = "entitlement.granted"

    service_id: str
    service_name: str
    plan_id: str | None
    usage_limit: int | None


@dataclass(frozen=True, kw_only=True)
class EntitlementRevoked(DomainEvent):
    event_type: ClassVar[str] = "entitlement.revoked"

    service_id: str
    service_name: str
    reason: str | None = None


@dataclass(frozen=True, kw_only=True)
class QuotaThresholdCrossed(DomainEvent):
    event_type: ClassVar[str] = "quota.threshold.crossed"

    service_id: str
    service_name: str
    # "warning" at the soft ratio, "limit" at 100%.
    threshold: str
    consumed: int
    limit: int


@dataclass(frozen=True, kw_only=True)
class UsageReset(DomainEvent):
    event_type: ClassVar[str] = "quota.usage.reset"

    service_id: str
    reset_period: str
    previous_consumed: int


@dataclass(frozen=True, kw_only=True)
class PurchaseRequestSubmitted(DomainEvent):
    event_type: ClassVar[str] = "purchase_request.submitted"

    request_id: str
    reseller_id: str
    service_id: str
    service_name: str
    tenant_name: str


@dataclass(frozen=True, kw_only=True)
class PurchaseRequestResolved(DomainEvent):
    event_type: ClassVar[str] = "purchase_request.resolved"

    request_id: str
    service_id: str
    service_name: str
    status: str


@dataclass(frozen=True, kw_only=True)
class CatalogChanged(DomainEvent):
    event_type: ClassVar[str] = "catalog.changed"

    resource_type: str
    resource_id: str
    action: str


@dataclass(frozen=True, kw_only=True)
class EnablementChanged(DomainEvent):
    event_type: ClassVar[str] = "reseller.enablement.changed"

    reseller_id: str
    service_id: str
    enabled: bool
    deactivated_entitlements: int = 0
