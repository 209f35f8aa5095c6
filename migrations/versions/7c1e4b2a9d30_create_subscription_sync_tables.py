"""create subscription sync tables

Revision ID: 7c1e4b2a9d30
Revises:
Create Date: 2025-08-30 09:12:44.118204

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = '7c1e4b2a9d30'
down_revision = None
branch_labels = None
depends_on = None

JSON = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
    ]


def upgrade():
    op.create_table(
        "users",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
    )

    op.create_table(
        "inventory_items",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("is_sold", sa.Boolean(), nullable=True, server_default=sa.text("false")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
    )
    op.create_index("ix_inventory_items_user_id", "inventory_items", ["user_id"])

    op.create_table(
        "user_subscriptions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("stripe_customer_id", sa.String(length=64), nullable=True),
        sa.Column("stripe_subscription_id", sa.String(length=64), nullable=True),
        sa.Column("plan_id", sa.String(length=64), nullable=False, server_default=sa.text("'free_trial'")),
        sa.Column("status", sa.String(length=32), nullable=False, server_default=sa.text("'trialing'")),
        sa.Column("current_period_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("trial_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("trial_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancel_at_period_end", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("canceled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("metadata", JSON, nullable=False, server_default=sa.text("'{}'")),
        *_timestamps(),
        sa.CheckConstraint(
            "status IN ('trialing','active','past_due','canceled','incomplete','incomplete_expired','unpaid')",
            name="ck_user_subscriptions_status_valid",
        ),
    )
    op.create_index("ix_user_subscriptions_user_id", "user_subscriptions", ["user_id"], unique=True)
    op.create_index("ix_user_subscriptions_stripe_customer_id", "user_subscriptions", ["stripe_customer_id"])
    op.create_index("ix_user_subscriptions_stripe_subscription_id", "user_subscriptions", ["stripe_subscription_id"], unique=True)
    op.create_index("ix_user_subscriptions_status", "user_subscriptions", ["status"])
    op.create_index("ix_user_subscriptions_current_period_end", "user_subscriptions", ["current_period_end"])

    op.create_table(
        "subscription_enhanced_status",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("stripe_subscription_id", sa.String(length=64), nullable=True),
        sa.Column("subscription_status", sa.String(length=32), nullable=False, server_default=sa.text("'trialing'")),
        sa.Column("subscription_metadata", JSON, nullable=False, server_default=sa.text("'{}'")),
        sa.Column("last_sync_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("sync_status", sa.String(length=16), nullable=False, server_default=sa.text("'synced'")),
        sa.Column("payment_method_status", sa.String(length=32), nullable=False, server_default=sa.text("'valid'")),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        *_timestamps(),
        sa.CheckConstraint(
            "sync_status IN ('synced','pending','failed','retry_needed')",
            name="ck_subscription_enhanced_status_sync_status_valid",
        ),
        sa.CheckConstraint(
            "payment_method_status IN ('valid','requires_action','declined','unknown')",
            name="ck_subscription_enhanced_status_payment_method_valid",
        ),
    )
    op.create_index("ix_subscription_enhanced_status_user_id", "subscription_enhanced_status", ["user_id"], unique=True)
    op.create_index("ix_subscription_enhanced_status_stripe_subscription_id", "subscription_enhanced_status", ["stripe_subscription_id"])
    op.create_index("ix_subscription_enhanced_status_sync_status", "subscription_enhanced_status", ["sync_status"])

    op.create_table(
        "payment_event_log",
        sa.Column("event_id", sa.String(length=36), primary_key=True),
        sa.Column("stripe_event_id", sa.String(length=255), nullable=False),
        sa.Column("event_type", sa.String(length=80), nullable=False),
        sa.Column("event_data", JSON, nullable=False),
        sa.Column("processing_status", sa.String(length=16), nullable=False, server_default=sa.text("'pending'")),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error_details", JSON, nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("user_id", sa.String(length=64), nullable=True),
        *_timestamps(),
        sa.CheckConstraint(
            "processing_status IN ('pending','processed','failed','skipped')",
            name="ck_payment_event_log_processing_status_valid",
        ),
    )
    op.create_index("ix_payment_event_log_stripe_event_id", "payment_event_log", ["stripe_event_id"], unique=True)
    op.create_index("ix_payment_event_log_event_type", "payment_event_log", ["event_type"])
    op.create_index("ix_payment_event_log_processing_status", "payment_event_log", ["processing_status"])
    op.create_index("ix_payment_event_log_user_id", "payment_event_log", ["user_id"])


def downgrade():
    op.drop_table("payment_event_log")
    op.drop_table("subscription_enhanced_status")
    op.drop_table("user_subscriptions")
    op.drop_index("ix_inventory_items_user_id", table_name="inventory_items")
    op.drop_table("inventory_items")
    op.drop_table("users")
