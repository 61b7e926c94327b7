from __future__ import annotations

from dataclasses import dataclass

from opsportal.core.config import get_settings


@dataclass(frozen=True)
class TenantPredicateError(RuntimeError):
    # Raised when a tenant-scoped query is built without a resolved tenant.
    message: str


def require_tenant_id(tenant_id: str | None) -> None:
    settings = get_settings()
    if not settings.authz_require_tenant_predicate:
        return
    if not tenant_id:
        raise TenantPredicateError("Tenant predicate required but tenant_id is missing")


def tenant_predicate(model, tenant_id: str) -> object:
    # Every tenant filter goes through here so the repository layer stays the only scoping point.
    require_tenant_id(tenant_id)
    return model.tenant_id == tenant_id
