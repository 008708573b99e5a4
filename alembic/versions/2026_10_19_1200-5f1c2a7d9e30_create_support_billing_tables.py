"""create_support_billing_tables

Revision ID: 5f1c2a7d9e30
Revises:
Create Date: 2026-10-19 12:00:00.000000

"""

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision = "5f1c2a7d9e30"
down_revision = None
branch_labels = None
depends_on = None

OPEN_STATUS_PREDICATE = "status IN ('active', 'past_due')"


def upgrade() -> None:
    """Create support plans, subscriptions, payments and the webhook ledger."""

    op.create_table(
        "support_plans",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("community_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("monthly_price_minor", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False, server_default="USD"),
        sa.Column("benefits", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("monthly_price_minor > 0", name="ck_support_plans_price_positive"),
    )
    op.create_index("ix_support_plans_community_id", "support_plans", ["community_id"])
    op.create_index(
        "uq_support_plans_active_community",
        "support_plans",
        ["community_id"],
        unique=True,
        postgresql_where=sa.text("is_active"),
        sqlite_where=sa.text("is_active"),
    )

    op.create_table(
        "support_subscriptions",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("community_id", sa.Integer(), nullable=False),
        sa.Column("plan_id", sa.Integer(), sa.ForeignKey("support_plans.id"), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("current_period_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("provider", sa.String(50), nullable=False),
        sa.Column("provider_subscription_id", sa.String(255), nullable=True),
        sa.Column(
            "cancel_at_period_end", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("canceled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint(
            "provider",
            "provider_subscription_id",
            name="uq_support_subscriptions_provider_ref",
        ),
        sa.CheckConstraint(
            "current_period_end >= current_period_start",
            name="ck_support_subscriptions_period",
        ),
    )
    op.create_index("ix_support_subscriptions_user_id", "support_subscriptions", ["user_id"])
    op.create_index(
        "ix_support_subscriptions_community_id", "support_subscriptions", ["community_id"]
    )
    op.create_index(
        "ix_support_subscriptions_community_status",
        "support_subscriptions",
        ["community_id", "status"],
    )
    op.create_index(
        "uq_support_subscriptions_open_user_community",
        "support_subscriptions",
        ["user_id", "community_id"],
        unique=True,
        postgresql_where=sa.text(OPEN_STATUS_PREDICATE),
        sqlite_where=sa.text(OPEN_STATUS_PREDICATE),
    )

    op.create_table(
        "support_payments",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "subscription_id",
            sa.Integer(),
            sa.ForeignKey("support_subscriptions.id"),
            nullable=False,
        ),
        sa.Column("amount_minor", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("payment_method", sa.String(20), nullable=False, server_default="unknown"),
        sa.Column("provider", sa.String(50), nullable=False),
        sa.Column("provider_transaction_id", sa.String(255), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("billing_period_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("billing_period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint(
            "provider",
            "provider_transaction_id",
            name="uq_support_payments_provider_transaction",
        ),
    )
    op.create_index(
        "ix_support_payments_subscription_id", "support_payments", ["subscription_id"]
    )

    op.create_table(
        "support_webhook_events",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("provider", sa.String(50), nullable=False),
        sa.Column("event_id", sa.String(255), nullable=False),
        sa.Column("event_type", sa.String(100), nullable=False),
        sa.Column("outcome", sa.String(20), nullable=False),
        sa.Column("subscription_id", sa.Integer(), nullable=True),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint(
            "provider", "event_id", name="uq_support_webhook_events_provider_event"
        ),
    )


def downgrade() -> None:
    """Drop support billing tables."""
    op.drop_table("support_webhook_events")
    op.drop_index("ix_support_payments_subscription_id", table_name="support_payments")
    op.drop_table("support_payments")
    op.drop_index(
        "uq_support_subscriptions_open_user_community", table_name="support_subscriptions"
    )
    op.drop_index(
        "ix_support_subscriptions_community_status", table_name="support_subscriptions"
    )
    op.drop_index("ix_support_subscriptions_community_id", table_name="support_subscriptions")
    op.drop_index("ix_support_subscriptions_user_id", table_name="support_subscriptions")
    op.drop_table("support_subscriptions")
    op.drop_index("uq_support_plans_active_community", table_name="support_plans")
    op.drop_index("ix_support_plans_community_id", table_name="support_plans")
    op.drop_table("support_plans")
