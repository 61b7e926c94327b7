from __future__ import annotations

from enum import StrEnum


class ServiceCategory(StrEnum):
    VOICE = "voice"
    MESSAGING = "messaging"
    SOCIAL_MEDIA = "social_media"


class PricingModel(StrEnum):
    PER_MINUTE = "per_minute"
    PER_CALL = "per_call"
    PER_MESSAGE = "per_message"
    MONTHLY = "monthly"


class PlanTier(StrEnum):
    BASIC = "basic"
    STANDARD = "standard"
    PREMIUM = "premium"
    ENTERPRISE = "enterprise"


class WorkflowStatus(StrEnum):
    # NOT_CREATED is virtual: it is the absence of a row and never persisted.
    NOT_CREATED = "not_created"
    PENDING = "pending"
    CONFIGURED = "configured"
    ACTIVE = "active"
    ERROR = "error"


class CredentialStatus(StrEnum):
    PENDING = "pending"
    CONFIGURED = "configured"
    EXPIRED = "expired"
    INVALID = "invalid"


class ResetPeriod(StrEnum):
    NONE = "none"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class PurchaseRequestStatus(StrEnum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class Severity(StrEnum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


class NextAction(StrEnum):
    # Single actionable next step surfaced for every non-active instance.
    CREATE = "create_instance"
    CONFIGURE_CREDENTIALS = "configure_credentials"
    ACTIVATE = "activate"
    RETRY_PROVISIONING = "retry_provisioning"
    RETRY_ACTIVATION = "retry_activation"
    RETRY_DEACTIVATION = "retry_deactivation"
    CONTACT_ADMINISTRATOR = "contact_administrator"
