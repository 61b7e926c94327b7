from __future__ import annotations

from typing import Any


class PortalError(Exception):
    """Base error for the opsportal control plane."""

    code = "PORTAL_ERROR"

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(PortalError):
    """Bad credential format or missing required field; reported per field."""

    code = "VALIDATION_ERROR"

    def __init__(self, message: str, *, field_errors: dict[str, str] | None = None) -> None:
        super().__init__(message, details={"fields": dict(field_errors or {})})
        self.field_errors = dict(field_errors or {})


class ConflictError(PortalError):
    """Duplicate instance, duplicate slug or another uniqueness violation."""

    code = "CONFLICT"


class InvalidStateError(ConflictError):
    """Lifecycle transition not permitted from the current status."""

    code = "INVALID_STATE"


class NotFoundError(PortalError):
    """Unknown tenant, reseller, service, plan or instance."""

    code = "NOT_FOUND"


class AuthorizationError(PortalError):
    """Tenant lacks the entitlement or caller lacks the required role."""

    code = "FORBIDDEN"


class QuotaExceededError(AuthorizationError):
    """New usage blocked because the entitlement is at its limit."""

    code = "QUOTA_EXCEEDED"


class IntegrationError(PortalError):
    """Automation engine or capability provider call failed or timed out."""

    code = "INTEGRATION_ERROR"


class ProviderConfigError(PortalError):
    """Missing or invalid provider configuration."""

    code = "PROVIDER_CONFIG_ERROR"


class VaultConfigurationError(PortalError):
    """Credential vault master key missing while required."""

    code = "VAULT_CONFIG_ERROR"


class DatabaseError(PortalError):
    """Underlying store unavailable; no partial result is returned."""

    code = "DATABASE_ERROR"
