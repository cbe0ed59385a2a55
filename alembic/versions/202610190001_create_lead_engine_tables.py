"""create lead engine tables

Revision ID: 202610190001
Revises:
Create Date: 2026-10-19 00:01:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610190001"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "agents",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("company_id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("email", sa.Text(), nullable=True),
        sa.Column("role", sa.String(length=32), nullable=False, server_default="agent"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_agents_company", "agents", ["company_id"], unique=False)

    op.create_table(
        "lead_stages",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("company_id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.String(length=64), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_default", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("company_id", "name", name="uq_lead_stages_company_name"),
    )

    op.create_table(
        "tenant_lead_settings",
        sa.Column("company_id", sa.Uuid(), nullable=False),
        sa.Column("default_assignment_method", sa.String(length=32), nullable=False, server_default="round_robin"),
        sa.Column("timezone", sa.String(length=64), nullable=False, server_default="UTC"),
        sa.Column("working_hours_start", sa.String(length=5), nullable=False, server_default="09:00"),
        sa.Column("working_hours_end", sa.String(length=5), nullable=False, server_default="18:00"),
        sa.Column("working_hours_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("after_hours_action", sa.String(length=32), nullable=False, server_default="assign"),
        sa.Column("max_leads_per_day", sa.Integer(), nullable=False, server_default="50"),
        sa.Column("duplicate_action", sa.String(length=32), nullable=False, server_default="skip"),
        sa.Column("phone_dedup_policy", sa.String(length=16), nullable=False, server_default="strict"),
        sa.Column("phone_dedup_scope", sa.String(length=16), nullable=False, server_default="tenant"),
        sa.Column("duplicate_window_days", sa.Integer(), nullable=False, server_default="30"),
        sa.Column("sla_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("sla_notify_minutes", sa.Integer(), nullable=False, server_default="15"),
        sa.Column("escalation_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("escalation_delay_minutes", sa.Integer(), nullable=False, server_default="30"),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("company_id"),
    )

    op.create_table(
        "leads",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("company_id", sa.Uuid(), nullable=False),
        sa.Column("source", sa.String(length=64), nullable=False),
        sa.Column("external_id", sa.String(length=255), nullable=True),
        sa.Column("normalized_phone", sa.String(length=32), nullable=True),
        sa.Column("name", sa.Text(), nullable=False, server_default=""),
        sa.Column("phone", sa.Text(), nullable=False, server_default=""),
        sa.Column("email", sa.Text(), nullable=False, server_default=""),
        sa.Column("campaign_name", sa.Text(), nullable=True),
        sa.Column("ad_set_name", sa.Text(), nullable=True),
        sa.Column("ad_name", sa.Text(), nullable=True),
        sa.Column("form_id", sa.String(length=255), nullable=True),
        sa.Column("form_name", sa.Text(), nullable=True),
        sa.Column("listing_reference", sa.String(length=255), nullable=True),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("stage", sa.String(length=64), nullable=False, server_default="New"),
        sa.Column("assigned_agent_id", sa.Uuid(), nullable=True),
        sa.Column("assignment_priority", sa.String(length=16), nullable=False, server_default="medium"),
        sa.Column("is_new", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("assigned_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_contacted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_auto_reassigned_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("escalation_level", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("source_metadata", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("row_version", sa.Integer(), nullable=False, server_default="1"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("company_id", "source", "external_id", name="uq_leads_company_source_external_id"),
    )
    op.create_index("ix_leads_company_phone", "leads", ["company_id", "normalized_phone"], unique=False)
    op.create_index("ix_leads_company_stage", "leads", ["company_id", "stage"], unique=False)
    op.create_index("ix_leads_company_agent", "leads", ["company_id", "assigned_agent_id"], unique=False)

    op.create_table(
        "lead_sources",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("company_id", sa.Uuid(), nullable=False),
        sa.Column("source_name", sa.String(length=64), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="connected"),
        sa.Column("verify_token", sa.String(length=255), nullable=True),
        sa.Column("webhook_secret", sa.String(length=255), nullable=True),
        sa.Column("total_leads_fetched", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_received_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("company_id", "source_name", name="uq_lead_sources_company_source"),
    )

    op.create_table(
        "ingestion_logs",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("company_id", sa.Uuid(), nullable=False),
        sa.Column("source", sa.String(length=64), nullable=False),
        sa.Column("action", sa.String(length=32), nullable=False, server_default="webhook"),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("processed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("updated", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("skipped", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("errors", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("duration_ms", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("correlation_id", sa.String(length=128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_ingestion_logs_company_created", "ingestion_logs", ["company_id", "created_at"], unique=False)

    op.create_table(
        "agent_loads",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("company_id", sa.Uuid(), nullable=False),
        sa.Column("agent_id", sa.Uuid(), nullable=False),
        sa.Column("current_leads_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("pending_followups_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("assignments_today", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("assignments_week", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("conversion_rate", sa.Numeric(5, 2), nullable=False, server_default="0"),
        sa.Column("max_leads_capacity", sa.Integer(), nullable=False, server_default="50"),
        sa.Column("is_available", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("last_assignment_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("company_id", "agent_id", name="uq_agent_loads_company_agent"),
    )

    op.create_table(
        "assignment_history",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("company_id", sa.Uuid(), nullable=False),
        sa.Column("lead_id", sa.Uuid(), nullable=False),
        sa.Column("old_agent_id", sa.Uuid(), nullable=True),
        sa.Column("new_agent_id", sa.Uuid(), nullable=True),
        sa.Column("change_reason", sa.String(length=32), nullable=False),
        sa.Column("changed_by", sa.String(length=128), nullable=False),
        sa.Column("changed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("can_undo", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("undone_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("lead_id", "sequence", name="uq_assignment_history_lead_sequence"),
    )
    op.create_index(
        "ix_assignment_history_company_changed",
        "assignment_history",
        ["company_id", "changed_at"],
        unique=False,
    )

    op.create_table(
        "round_robin_cursors",
        sa.Column("company_id", sa.Uuid(), nullable=False),
        sa.Column("last_agent_id", sa.Uuid(), nullable=True),
        sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("company_id"),
    )

    op.create_table(
        "auto_reassignment_rules",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("company_id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.Text(), nullable=False, server_default="New Rule"),
        sa.Column("days_without_contact", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("use_round_robin", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("apply_to_stages", sa.JSON(), nullable=False),
        sa.Column("created_by", sa.String(length=128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_auto_reassignment_rules_company_active",
        "auto_reassignment_rules",
        ["company_id", "is_active"],
        unique=False,
    )

    op.create_table(
        "lead_routing_rules",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("company_id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("conditions", sa.JSON(), nullable=False),
        sa.Column("assign_to_agent_id", sa.Uuid(), nullable=True),
        sa.Column("created_by", sa.String(length=128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_lead_routing_rules_company_priority",
        "lead_routing_rules",
        ["company_id", "enabled", "priority"],
        unique=False,
    )

    op.create_table(
        "portal_agent_mappings",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("company_id", sa.Uuid(), nullable=False),
        sa.Column("portal_name", sa.String(length=64), nullable=False),
        sa.Column("portal_agent_id", sa.String(length=255), nullable=False),
        sa.Column("agent_id", sa.Uuid(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("company_id", "portal_name", "portal_agent_id", name="uq_portal_agent_mappings_portal_agent"),
    )

    op.create_table(
        "assignment_notifications",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("company_id", sa.Uuid(), nullable=False),
        sa.Column("lead_id", sa.Uuid(), nullable=True),
        sa.Column("recipient_agent_id", sa.Uuid(), nullable=True),
        sa.Column("recipient_role", sa.String(length=32), nullable=True),
        sa.Column("notification_type", sa.String(length=64), nullable=False),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("message", sa.Text(), nullable=False, server_default=""),
        sa.Column("is_read", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("read_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_assignment_notifications_company_read",
        "assignment_notifications",
        ["company_id", "is_read"],
        unique=False,
    )
    op.create_index("ix_assignment_notifications_lead", "assignment_notifications", ["lead_id"], unique=False)

    op.create_table(
        "scheduler_leases",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("company_id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.String(length=64), nullable=False),
        sa.Column("holder", sa.String(length=128), nullable=False),
        sa.Column("acquired_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("company_id", "name", name="uq_scheduler_leases_company_name"),
    )

    op.create_table(
        "portal_import_errors",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("company_id", sa.Uuid(), nullable=False),
        sa.Column("portal_name", sa.String(length=64), nullable=False),
        sa.Column("lead_data", sa.JSON(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=False),
        sa.Column("error_type", sa.String(length=32), nullable=False),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("resolved", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolved_by", sa.String(length=128), nullable=True),
        sa.Column("lead_id", sa.Uuid(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_portal_import_errors_company_resolved",
        "portal_import_errors",
        ["company_id", "resolved"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_portal_import_errors_company_resolved", table_name="portal_import_errors")
    op.drop_table("portal_import_errors")
    op.drop_table("scheduler_leases")
    op.drop_index("ix_assignment_notifications_lead", table_name="assignment_notifications")
    op.drop_index("ix_assignment_notifications_company_read", table_name="assignment_notifications")
    op.drop_table("assignment_notifications")
    op.drop_table("portal_agent_mappings")
    op.drop_index("ix_lead_routing_rules_company_priority", table_name="lead_routing_rules")
    op.drop_table("lead_routing_rules")
    op.drop_index("ix_auto_reassignment_rules_company_active", table_name="auto_reassignment_rules")
    op.drop_table("auto_reassignment_rules")
    op.drop_table("round_robin_cursors")
    op.drop_index("ix_assignment_history_company_changed", table_name="assignment_history")
    op.drop_table("assignment_history")
    op.drop_table("agent_loads")
    op.drop_index("ix_ingestion_logs_company_created", table_name="ingestion_logs")
    op.drop_table("ingestion_logs")
    op.drop_table("lead_sources")
    op.drop_index("ix_leads_company_agent", table_name="leads")
    op.drop_index("ix_leads_company_stage", table_name="leads")
    op.drop_index("ix_leads_company_phone", table_name="leads")
    op.drop_table("leads")
    op.drop_table("tenant_lead_settings")
    op.drop_table("lead_stages")
    op.drop_index("ix_agents_company", table_name="agents")
    op.drop_table("agents")
