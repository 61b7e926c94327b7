from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any
from uuid import uuid4

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# JSONB on Postgres, plain JSON elsewhere so the schema also builds on sqlite test databases.
JsonDocument = JSON().with_variant(JSONB, "postgresql")
# Monotonic ids for append-only tables; sqlite only autoincrements INTEGER primary keys.
MonotonicId = BigInteger().with_variant(Integer, "sqlite")


def _new_id() -> str:
    return uuid4().hex


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class Reseller(Base):
    __tablename__ = "resellers"

    # Resellers ("admins") are onboarded by the platform owner and own a set of tenants.
    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String, unique=True, index=True)
    company_name: Mapped[str] = mapped_column(String)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, server_default=func.now()
    )


class Tenant(Base):
    __tablename__ = "tenants"

    # End customers ("clients"); reseller_id is the only path to their reseller.
    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String, unique=True, index=True)
    reseller_id: Mapped[str] = mapped_column(String, ForeignKey("resellers.id"), index=True)
    company_name: Mapped[str] = mapped_column(String)
    industry: Mapped[str | None] = mapped_column(String, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, server_default=func.now()
    )


class Service(Base):
    __tablename__ = "services"

    # Catalog entry for a capability; edits are in place (no versioning).
    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String, unique=True)
    slug: Mapped[str] = mapped_column(String, unique=True, index=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    category: Mapped[str] = mapped_column(String)
    pricing_model: Mapped[str] = mapped_column(String)
    base_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0"))
    features_json: Mapped[list[dict[str, Any]] | None] = mapped_column(JsonDocument, default=list)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, server_default=func.now(), onupdate=utc_now
    )


class ServicePlan(Base):
    __tablename__ = "service_plans"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    service_id: Mapped[str] = mapped_column(String, ForeignKey("services.id"), index=True)
    name: Mapped[str] = mapped_column(String)
    tier: Mapped[str | None] = mapped_column(String, nullable=True)
    # Null means the plan does not cap usage.
    usage_limit: Mapped[int | None] = mapped_column(Integer, nullable=True)
    price_per_unit: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    monthly_price: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    features_json: Mapped[list[dict[str, Any]] | None] = mapped_column(JsonDocument, default=list)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, server_default=func.now()
    )


class WorkflowTemplate(Base):
    __tablename__ = "workflow_templates"

    # Blueprint the automation engine clones for each tenant instance.
    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    service_id: Mapped[str] = mapped_column(String, ForeignKey("services.id"), index=True)
    name: Mapped[str] = mapped_column(String)
    external_template_id: Mapped[str | None] = mapped_column(String, unique=True, nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Ordered credential names; one slot is materialized per entry.
    required_credentials: Mapped[list[str]] = mapped_column(JsonDocument, default=list)
    # Free-text help per credential name, surfaced verbatim.
    credential_instructions: Mapped[dict[str, str]] = mapped_column(JsonDocument, default=dict)
    default_config: Mapped[dict[str, Any]] = mapped_column(JsonDocument, default=dict)
    # Declared non-secret configuration fields: name -> type.
    config_schema: Mapped[dict[str, str]] = mapped_column(JsonDocument, default=dict)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    version: Mapped[str] = mapped_column(String, default="1.0")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, server_default=func.now()
    )


class ResellerServiceAssignment(Base):
    __tablename__ = "reseller_service_assignments"
    __table_args__ = (
        UniqueConstraint("reseller_id", "service_id", name="uq_reseller_service_assignments_pair"),
    )

    # Reseller-level enablement; a tenant can only be entitled to enabled services.
    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    reseller_id: Mapped[str] = mapped_column(String, ForeignKey("resellers.id"), index=True)
    service_id: Mapped[str] = mapped_column(String, ForeignKey("services.id"), index=True)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    assigned_by: Mapped[str | None] = mapped_column(String, nullable=True)
    assigned_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, server_default=func.now()
    )


class ClientService(Base):
    __tablename__ = "client_services"
    __table_args__ = (
        UniqueConstraint("tenant_id", "service_id", name="uq_client_services_pair"),
        Index("ix_client_services_reset", "reset_period", "last_reset_at"),
    )

    # Authoritative entitlement record: what a tenant may use and how much is left.
    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String, ForeignKey("tenants.id"), index=True)
    service_id: Mapped[str] = mapped_column(String, ForeignKey("services.id"), index=True)
    plan_id: Mapped[str | None] = mapped_column(String, ForeignKey("service_plans.id"), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    # Null or zero limits are treated as unlimited by the ledger.
    usage_limit: Mapped[int | None] = mapped_column(Integer, nullable=True)
    usage_consumed: Mapped[int] = mapped_column(Integer, default=0, nullable=False, server_default=text("0"))
    reset_period: Mapped[str] = mapped_column(String, default="monthly")
    last_reset_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=True
    )
    assigned_by: Mapped[str | None] = mapped_column(String, nullable=True)
    assigned_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, server_default=func.now(), onupdate=utc_now
    )


class WorkflowInstance(Base):
    __tablename__ = "workflow_instances"
    __table_args__ = (
        # Closes the create race at the storage layer: two creates, one row.
        UniqueConstraint("tenant_id", "service_id", name="uq_workflow_instances_pair"),
        Index("ix_workflow_instances_status", "status"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String, ForeignKey("tenants.id"), index=True)
    service_id: Mapped[str] = mapped_column(String, ForeignKey("services.id"), index=True)
    template_id: Mapped[str | None] = mapped_column(
        String, ForeignKey("workflow_templates.id"), nullable=True
    )
    name: Mapped[str] = mapped_column(String)
    status: Mapped[str] = mapped_column(String, default="pending")
    is_active: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    external_reference: Mapped[str | None] = mapped_column(String, unique=True, nullable=True)
    webhook_endpoint: Mapped[str | None] = mapped_column(String, nullable=True)
    custom_config: Mapped[dict[str, Any]] = mapped_column(JsonDocument, default=dict)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Set once the provisioning handshake succeeds; null means the engine has no instance yet.
    provisioned_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_executed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    execution_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False, server_default=text("0"))
    created_by: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, server_default=func.now(), onupdate=utc_now
    )


class WorkflowCredential(Base):
    __tablename__ = "workflow_credentials"
    __table_args__ = (
        UniqueConstraint("workflow_instance_id", "name", name="uq_workflow_credentials_slot"),
    )

    # Credential slot status only; the value lives in credential_secrets.
    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    workflow_instance_id: Mapped[str] = mapped_column(
        String, ForeignKey("workflow_instances.id"), index=True
    )
    name: Mapped[str] = mapped_column(String)
    kind: Mapped[str] = mapped_column(String)
    # Index in the template's required_credentials list.
    position: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    status: Mapped[str] = mapped_column(String, default="pending")
    configured_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_validated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, server_default=func.now(), onupdate=utc_now
    )


class CredentialSecret(Base):
    __tablename__ = "credential_secrets"

    # Encrypted credential values; never returned by any read path.
    credential_id: Mapped[str] = mapped_column(
        String, ForeignKey("workflow_credentials.id"), primary_key=True
    )
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    cipher_text: Mapped[str] = mapped_column(Text)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, server_default=func.now(), onupdate=utc_now
    )


class UsageEvent(Base):
    __tablename__ = "usage_events"
    __table_args__ = (
        Index("ix_usage_events_pair_time", "tenant_id", "service_id", "occurred_at"),
    )

    # Append-only; resets never touch these rows so history stays reportable.
    id: Mapped[int] = mapped_column(MonotonicId, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String)
    service_id: Mapped[str] = mapped_column(String)
    quantity: Mapped[int] = mapped_column(Integer)
    unit_cost: Mapped[Decimal | None] = mapped_column(Numeric(10, 4), nullable=True)
    source: Mapped[str | None] = mapped_column(String, nullable=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)


class PurchaseRequest(Base):
    __tablename__ = "purchase_requests"
    __table_args__ = (
        # Only one open request per tenant/service; resolved rows accumulate freely.
        Index(
            "uq_purchase_requests_pending",
            "tenant_id",
            "service_id",
            unique=True,
            postgresql_where=text("status = 'pending'"),
            sqlite_where=text("status = 'pending'"),
        ),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String, ForeignKey("tenants.id"), index=True)
    reseller_id: Mapped[str] = mapped_column(String, ForeignKey("resellers.id"), index=True)
    service_id: Mapped[str] = mapped_column(String, ForeignKey("services.id"))
    plan_id: Mapped[str | None] = mapped_column(String, ForeignKey("service_plans.id"), nullable=True)
    status: Mapped[str] = mapped_column(String, default="pending")
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    reviewed_by: Mapped[str | None] = mapped_column(String, nullable=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, server_default=func.now(), onupdate=utc_now
    )


class Notification(Base):
    __tablename__ = "notifications"
    __table_args__ = (
        Index("ix_notifications_recipient_unread", "recipient_user_id", "is_read"),
    )

    # UI-facing notification storage written by the notification emitter.
    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    recipient_user_id: Mapped[str] = mapped_column(String)
    tenant_id: Mapped[str | None] = mapped_column(String, nullable=True)
    event_type: Mapped[str] = mapped_column(String)
    title: Mapped[str] = mapped_column(String)
    message: Mapped[str] = mapped_column(Text)
    severity: Mapped[str] = mapped_column(String)
    action_url: Mapped[str | None] = mapped_column(String, nullable=True)
    is_read: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    read_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, server_default=func.now()
    )


class AuditEvent(Base):
    __tablename__ = "audit_events"

    id: Mapped[int] = mapped_column(MonotonicId, primary_key=True, autoincrement=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    # Null tenant_id for platform-level events (catalog edits, reseller onboarding).
    tenant_id: Mapped[str | None] = mapped_column(String, index=True, nullable=True)
    actor_type: Mapped[str] = mapped_column(String)
    actor_id: Mapped[str | None] = mapped_column(String, nullable=True)
    actor_role: Mapped[str | None] = mapped_column(String, nullable=True)
    event_type: Mapped[str] = mapped_column(String, index=True)
    outcome: Mapped[str] = mapped_column(String)
    resource_type: Mapped[str | None] = mapped_column(String, nullable=True)
    resource_id: Mapped[str | None] = mapped_column(String, nullable=True)
    request_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JsonDocument, default=dict)
    error_code: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, server_default=func.now()
    )
