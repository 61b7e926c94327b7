"""init

Revision ID: 0001_init
Revises: 
Create Date: 2026-10-19 09:00:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


def _created_at() -> sa.Column:
    return sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now())


def _updated_at() -> sa.Column:
    return sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now())


def upgrade() -> None:
    op.create_table(
        "resellers",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("company_name", sa.String(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _created_at(),
    )
    op.create_index("ix_resellers_user_id", "resellers", ["user_id"], unique=True)

    op.create_table(
        "tenants",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("reseller_id", sa.String(), sa.ForeignKey("resellers.id"), nullable=False),
        sa.Column("company_name", sa.String(), nullable=False),
        sa.Column("industry", sa.String(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _created_at(),
    )
    op.create_index("ix_tenants_user_id", "tenants", ["user_id"], unique=True)
    op.create_index("ix_tenants_reseller_id", "tenants", ["reseller_id"])

    op.create_table(
        "services",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("name", sa.String(), nullable=False, unique=True),
        sa.Column("slug", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("category", sa.String(), nullable=False),
        sa.Column("pricing_model", sa.String(), nullable=False),
        sa.Column("base_price", sa.Numeric(10, 2), nullable=False, server_default="0"),
        sa.Column("features_json", postgresql.JSONB(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _created_at(),
        _updated_at(),
    )
    op.create_index("ix_services_slug", "services", ["slug"], unique=True)

    op.create_table(
        "service_plans",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("service_id", sa.String(), sa.ForeignKey("services.id"), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("tier", sa.String(), nullable=True),
        sa.Column("usage_limit", sa.Integer(), nullable=True),
        sa.Column("price_per_unit", sa.Numeric(10, 2), nullable=True),
        sa.Column("monthly_price", sa.Numeric(10, 2), nullable=True),
        sa.Column("features_json", postgresql.JSONB(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _created_at(),
    )
    op.create_index("ix_service_plans_service_id", "service_plans", ["service_id"])

    op.create_table(
        "workflow_templates",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("service_id", sa.String(), sa.ForeignKey("services.id"), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("external_template_id", sa.String(), nullable=True, unique=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("required_credentials", postgresql.JSONB(), nullable=False, server_default="[]"),
        sa.Column("credential_instructions", postgresql.JSONB(), nullable=False, server_default="{}"),
        sa.Column("default_config", postgresql.JSONB(), nullable=False, server_default="{}"),
        sa.Column("config_schema", postgresql.JSONB(), nullable=False, server_default="{}"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("version", sa.String(), nullable=False, server_default="1.0"),
        _created_at(),
    )
    op.create_index("ix_workflow_templates_service_id", "workflow_templates", ["service_id"])

    op.create_table(
        "reseller_service_assignments",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("reseller_id", sa.String(), sa.ForeignKey("resellers.id"), nullable=False),
        sa.Column("service_id", sa.String(), sa.ForeignKey("services.id"), nullable=False),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("assigned_by", sa.String(), nullable=True),
        sa.Column("assigned_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("reseller_id", "service_id", name="uq_reseller_service_assignments_pair"),
    )
    op.create_index("ix_reseller_service_assignments_reseller_id", "reseller_service_assignments", ["reseller_id"])
    op.create_index("ix_reseller_service_assignments_service_id", "reseller_service_assignments", ["service_id"])

    op.create_table(
        "client_services",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), sa.ForeignKey("tenants.id"), nullable=False),
        sa.Column("service_id", sa.String(), sa.ForeignKey("services.id"), nullable=False),
        sa.Column("plan_id", sa.String(), sa.ForeignKey("service_plans.id"), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("usage_limit", sa.Integer(), nullable=True),
        sa.Column("usage_consumed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("reset_period", sa.String(), nullable=False, server_default="monthly"),
        sa.Column("last_reset_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("assigned_by", sa.String(), nullable=True),
        sa.Column("assigned_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        _updated_at(),
        sa.UniqueConstraint("tenant_id", "service_id", name="uq_client_services_pair"),
    )
    op.create_index("ix_client_services_tenant_id", "client_services", ["tenant_id"])
    op.create_index("ix_client_services_service_id", "client_services", ["service_id"])
    op.create_index("ix_client_services_reset", "client_services", ["reset_period", "last_reset_at"])

    op.create_table(
        "workflow_instances",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), sa.ForeignKey("tenants.id"), nullable=False),
        sa.Column("service_id", sa.String(), sa.ForeignKey("services.id"), nullable=False),
        sa.Column("template_id", sa.String(), sa.ForeignKey("workflow_templates.id"), nullable=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("external_reference", sa.String(), nullable=True, unique=True),
        sa.Column("webhook_endpoint", sa.String(), nullable=True),
        sa.Column("custom_config", postgresql.JSONB(), nullable=False, server_default="{}"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("provisioned_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_executed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("execution_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_by", sa.String(), nullable=True),
        _created_at(),
        _updated_at(),
        sa.UniqueConstraint("tenant_id", "service_id", name="uq_workflow_instances_pair"),
    )
    op.create_index("ix_workflow_instances_tenant_id", "workflow_instances", ["tenant_id"])
    op.create_index("ix_workflow_instances_service_id", "workflow_instances", ["service_id"])
    op.create_index("ix_workflow_instances_status", "workflow_instances", ["status"])

    op.create_table(
        "workflow_credentials",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("workflow_instance_id", sa.String(), sa.ForeignKey("workflow_instances.id"), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("kind", sa.String(), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("configured_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_validated_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        _updated_at(),
        sa.UniqueConstraint("workflow_instance_id", "name", name="uq_workflow_credentials_slot"),
    )
    op.create_index(
        "ix_workflow_credentials_workflow_instance_id", "workflow_credentials", ["workflow_instance_id"]
    )

    op.create_table(
        "credential_secrets",
        sa.Column(
            "credential_id", sa.String(), sa.ForeignKey("workflow_credentials.id"), primary_key=True
        ),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("cipher_text", sa.Text(), nullable=False),
        _updated_at(),
    )
    op.create_index("ix_credential_secrets_tenant_id", "credential_secrets", ["tenant_id"])

    op.create_table(
        "usage_events",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("service_id", sa.String(), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("unit_cost", sa.Numeric(10, 4), nullable=True),
        sa.Column("source", sa.String(), nullable=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_usage_events_pair_time", "usage_events", ["tenant_id", "service_id", "occurred_at"])

    op.create_table(
        "purchase_requests",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), sa.ForeignKey("tenants.id"), nullable=False),
        sa.Column("reseller_id", sa.String(), sa.ForeignKey("resellers.id"), nullable=False),
        sa.Column("service_id", sa.String(), sa.ForeignKey("services.id"), nullable=False),
        sa.Column("plan_id", sa.String(), sa.ForeignKey("service_plans.id"), nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("reviewed_by", sa.String(), nullable=True),
        sa.Column("reviewed_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        _updated_at(),
    )
    op.create_index("ix_purchase_requests_tenant_id", "purchase_requests", ["tenant_id"])
    op.create_index("ix_purchase_requests_reseller_id", "purchase_requests", ["reseller_id"])
    # One open request per tenant/service.
    op.create_index(
        "uq_purchase_requests_pending",
        "purchase_requests",
        ["tenant_id", "service_id"],
        unique=True,
        postgresql_where=sa.text("status = 'pending'"),
    )

    op.create_table(
        "notifications",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("recipient_user_id", sa.String(), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=True),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("severity", sa.String(), nullable=False),
        sa.Column("action_url", sa.String(), nullable=True),
        sa.Column("is_read", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("read_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
    )
    op.create_index("ix_notifications_recipient_unread", "notifications", ["recipient_user_id", "is_read"])

    op.create_table(
        "audit_events",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=True),
        sa.Column("actor_type", sa.String(), nullable=False),
        sa.Column("actor_id", sa.String(), nullable=True),
        sa.Column("actor_role", sa.String(), nullable=True),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("outcome", sa.String(), nullable=False),
        sa.Column("resource_type", sa.String(), nullable=True),
        sa.Column("resource_id", sa.String(), nullable=True),
        sa.Column("request_id", sa.String(), nullable=True),
        sa.Column("metadata_json", postgresql.JSONB(), nullable=True),
        sa.Column("error_code", sa.String(), nullable=True),
        _created_at(),
    )
    op.create_index("ix_audit_events_occurred_at", "audit_events", ["occurred_at"])
    op.create_index("ix_audit_events_tenant_id", "audit_events", ["tenant_id"])
    op.create_index("ix_audit_events_event_type", "audit_events", ["event_type"])
    op.create_index("ix_audit_events_request_id", "audit_events", ["request_id"])


def downgrade() -> None:
    op.drop_table("audit_events")
    op.drop_table("notifications")
    op.drop_index("uq_purchase_requests_pending", table_name="purchase_requests")
    op.drop_table("purchase_requests")
    op.drop_table("usage_events")
    op.drop_table("credential_secrets")
    op.drop_table("workflow_credentials")
    op.drop_table("workflow_instances")
    op.drop_table("client_services")
    op.drop_table("reseller_service_assignments")
    op.drop_table("workflow_templates")
    op.drop_table("service_plans")
    op.drop_table("services")
    op.drop_table("tenants")
    op.drop_table("resellers")
