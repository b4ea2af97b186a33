"""Partner billing schema.

Revision ID: 0001_partner_billing
Revises:
Create Date: 2026-10-18

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0001_partner_billing"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    ]


def upgrade() -> None:
    op.create_table(
        "partners",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("name", sa.String(160), nullable=False),
        sa.Column("email", sa.String(255)),
        sa.Column("document", sa.String(32)),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true")),
        *_timestamps(),
    )
    op.create_table(
        "tenants",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("partner_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("partners.id")),
        sa.Column("name", sa.String(160), nullable=False),
        sa.Column("email", sa.String(255)),
        sa.Column("subscription_status", sa.String(40)),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true")),
        *_timestamps(),
    )
    op.create_table(
        "delinquency_configs",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "partner_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("partners.id"),
            nullable=False,
            unique=True,
        ),
        sa.Column("warning_days", sa.Integer(), server_default="1"),
        sa.Column("partial_block_days", sa.Integer(), server_default="7"),
        sa.Column("full_block_days", sa.Integer(), server_default="15"),
        sa.Column("notes", sa.Text()),
        *_timestamps(),
    )
    op.create_table(
        "plans",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("partner_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("partners.id")),
        sa.Column("name", sa.String(160), nullable=False),
        sa.Column("monthly_price", sa.Numeric(12, 2), server_default="0"),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true")),
        sa.Column("created_at", sa.DateTime(timezone=True)),
    )
    op.create_table(
        "subscriptions",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "tenant_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("tenants.id"),
            nullable=False,
        ),
        sa.Column("plan_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("plans.id")),
        sa.Column(
            "status",
            sa.Enum("trial", "active", "past_due", "canceled", name="subscriptionstatus"),
        ),
        sa.Column(
            "delinquency_stage",
            sa.Enum("none", "warning", "partial", "full", name="delinquencystage"),
        ),
        sa.Column("trial_ends_at", sa.DateTime(timezone=True)),
        sa.Column("current_period_start", sa.DateTime(timezone=True)),
        sa.Column("current_period_end", sa.DateTime(timezone=True)),
        sa.Column("monthly_amount", sa.Numeric(12, 2)),
        sa.Column("canceled_at", sa.DateTime(timezone=True)),
        sa.Column("cancel_reason", sa.String(120)),
        *_timestamps(),
    )
    op.create_index(
        "ix_subscriptions_status_trial_ends_at",
        "subscriptions",
        ["status", "trial_ends_at"],
    )
    op.create_table(
        "billing_entities",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("kind", sa.Enum("partner", "tenant", name="billingentitykind")),
        sa.Column(
            "partner_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("partners.id"),
            unique=True,
        ),
        sa.Column(
            "tenant_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("tenants.id"),
            unique=True,
        ),
        sa.Column(
            "collection_mode",
            sa.Enum("INVOICE", "PIX", "CARD", "BOLETO", name="collectionmode"),
        ),
        sa.Column("credit_limit", sa.Numeric(12, 2), server_default="0"),
        sa.Column("grace_days", sa.Integer(), server_default="5"),
        sa.Column("billing_day", sa.Integer(), server_default="1"),
        sa.Column("dunning_policy", sa.JSON()),
        sa.Column("current_dunning_level", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("dunning_started_at", sa.DateTime(timezone=True)),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true")),
        sa.Column("notes", sa.Text()),
        *_timestamps(),
        sa.CheckConstraint(
            "(partner_id IS NOT NULL) <> (tenant_id IS NOT NULL)",
            name="ck_billing_entities_exactly_one_owner",
        ),
        sa.CheckConstraint(
            "current_dunning_level BETWEEN 0 AND 4",
            name="ck_billing_entities_dunning_level_range",
        ),
        sa.CheckConstraint(
            "billing_day BETWEEN 1 AND 31",
            name="ck_billing_entities_billing_day_range",
        ),
    )
    op.create_table(
        "invoices",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "entity_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("billing_entities.id")
        ),
        sa.Column(
            "subscription_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("subscriptions.id")
        ),
        sa.Column("tenant_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("tenants.id")),
        sa.Column("partner_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("partners.id")),
        sa.Column("plan_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("plans.id")),
        sa.Column("kind", sa.Enum("recurring", "trial_conversion", name="invoicekind")),
        sa.Column("invoice_number", sa.String(80)),
        sa.Column("period", sa.String(7)),
        sa.Column("amount", sa.Numeric(12, 2), server_default="0"),
        sa.Column("currency", sa.String(3), server_default="BRL"),
        sa.Column("description", sa.Text()),
        sa.Column("due_date", sa.Date(), nullable=False),
        sa.Column(
            "status",
            sa.Enum("pending", "overdue", "paid", "canceled", name="invoicestatus"),
        ),
        sa.Column("paid_at", sa.DateTime(timezone=True)),
        sa.Column("canceled_at", sa.DateTime(timezone=True)),
        sa.Column("correlation_id", sa.String(64)),
        *_timestamps(),
    )
    op.create_index(
        "ix_invoices_recurring_entity_period_unique",
        "invoices",
        ["entity_id", "period"],
        unique=True,
        postgresql_where=sa.text("kind = 'recurring' AND status != 'canceled'"),
    )
    op.create_index("ix_invoices_status_due_date", "invoices", ["status", "due_date"])
    op.create_table(
        "dunning_log",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "entity_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("billing_entities.id"),
            nullable=False,
        ),
        sa.Column("invoice_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("invoices.id")),
        sa.Column("from_level", sa.Integer(), nullable=False),
        sa.Column("to_level", sa.Integer(), nullable=False),
        sa.Column(
            "direction",
            sa.Enum("escalation", "reversal", name="dunningdirection"),
            nullable=False,
        ),
        sa.Column("action", sa.String(60), nullable=False),
        sa.Column("reason", sa.Text()),
        sa.Column("computed_facts", sa.JSON()),
        sa.Column("correlation_id", sa.String(64)),
        sa.Column("executed_at", sa.DateTime(timezone=True)),
    )
    op.create_index(
        "ix_dunning_log_entity_executed_at", "dunning_log", ["entity_id", "executed_at"]
    )
    op.create_table(
        "billing_phase_runs",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("job_name", sa.String(80), nullable=False),
        sa.Column("phase", sa.String(40), nullable=False),
        sa.Column("period", sa.String(10), nullable=False),
        sa.Column("correlation_id", sa.String(64), nullable=False),
        sa.Column(
            "status",
            sa.Enum("running", "success", "failed", name="phaserunstatus"),
            nullable=False,
        ),
        sa.Column("started_at", sa.DateTime(timezone=True)),
        sa.Column("finished_at", sa.DateTime(timezone=True)),
        sa.Column("results", sa.JSON()),
        sa.Column("error", sa.Text()),
        sa.Column("created_at", sa.DateTime(timezone=True)),
    )
    op.create_index(
        "ix_billing_phase_runs_live_unique",
        "billing_phase_runs",
        ["job_name", "phase", "period"],
        unique=True,
        postgresql_where=sa.text("status IN ('running', 'success')"),
    )
    op.create_index(
        "ix_billing_phase_runs_correlation_id", "billing_phase_runs", ["correlation_id"]
    )
    op.create_table(
        "billing_job_logs",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("job_name", sa.String(80), nullable=False),
        sa.Column("correlation_id", sa.String(64), nullable=False),
        sa.Column(
            "status",
            sa.Enum("success", "partial", "failed", name="jobrunstatus"),
            nullable=False,
        ),
        sa.Column("results", sa.JSON()),
        sa.Column("error", sa.Text()),
        sa.Column("executed_at", sa.DateTime(timezone=True)),
    )


def downgrade() -> None:
    op.drop_table("billing_job_logs")
    op.drop_index("ix_billing_phase_runs_correlation_id", table_name="billing_phase_runs")
    op.drop_index("ix_billing_phase_runs_live_unique", table_name="billing_phase_runs")
    op.drop_table("billing_phase_runs")
    op.drop_index("ix_dunning_log_entity_executed_at", table_name="dunning_log")
    op.drop_table("dunning_log")
    op.drop_index("ix_invoices_status_due_date", table_name="invoices")
    op.drop_index("ix_invoices_recurring_entity_period_unique", table_name="invoices")
    op.drop_table("invoices")
    op.drop_table("billing_entities")
    op.drop_index("ix_subscriptions_status_trial_ends_at", table_name="subscriptions")
    op.drop_table("subscriptions")
    op.drop_table("plans")
    op.drop_table("delinquency_configs")
    op.drop_table("tenants")
    op.drop_table("partners")
    for name in (
        "jobrunstatus",
        "phaserunstatus",
        "dunningdirection",
        "invoicestatus",
        "invoicekind",
        "collectionmode",
        "billingentitykind",
        "delinquencystage",
        "subscriptionstatus",
    ):
        sa.Enum(name=name).drop(op.get_bind(), checkfirst=True)
