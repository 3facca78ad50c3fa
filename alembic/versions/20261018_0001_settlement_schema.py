"""Settlement schema: organizations, plans, payments, splits, commissions.

Revision ID: 0001
Revises: 
Create Date: 2026-10-18 09:00:00.000000
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# Revision identifiers
revision: str = "0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSON = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    ]


def upgrade() -> None:
    """Create settlement tables."""

    # Organizations
    op.create_table(
        "organizations",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("type", sa.String(20), nullable=False, server_default="end_customer"),
        sa.Column("parent_organization_id", sa.String(36), sa.ForeignKey("organizations.id"), nullable=True),
        sa.Column("settlement_account_ref", sa.String(255), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_organizations_parent_organization_id", "organizations", ["parent_organization_id"])

    # Billing plans
    op.create_table(
        "billing_plans",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("created_by_organization_id", sa.String(36), sa.ForeignKey("organizations.id"), nullable=False),
        sa.Column("parent_plan_id", sa.String(36), sa.ForeignKey("billing_plans.id"), nullable=True),
        sa.Column("base_price", sa.Numeric(12, 2), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False, server_default="usd"),
        sa.Column("platform_fee_percentage", sa.Numeric(5, 2), nullable=False, server_default="30"),
        sa.Column("agency_margin_percentage", sa.Numeric(5, 2), nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.CheckConstraint(
            "platform_fee_percentage >= 0 AND platform_fee_percentage <= 100",
            name="ck_billing_plans_platform_fee_range",
        ),
        sa.CheckConstraint(
            "agency_margin_percentage >= 0 AND agency_margin_percentage <= 100",
            name="ck_billing_plans_agency_margin_range",
        ),
    )
    op.create_index("ix_billing_plans_created_by_organization_id", "billing_plans", ["created_by_organization_id"])

    # Subscriptions
    op.create_table(
        "subscriptions",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("organization_id", sa.String(36), sa.ForeignKey("organizations.id"), nullable=False),
        sa.Column("plan_id", sa.String(36), sa.ForeignKey("billing_plans.id"), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="incomplete"),
        sa.Column("idempotency_key", sa.String(255), nullable=False, unique=True),
        sa.Column("external_subscription_id", sa.String(255), nullable=True, unique=True),
        sa.Column("current_period_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("canceled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failure_reason", sa.String(500), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_subscriptions_organization_id", "subscriptions", ["organization_id"])
    op.create_index("ix_subscriptions_status", "subscriptions", ["status"])

    # Payments
    op.create_table(
        "payments",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("organization_id", sa.String(36), sa.ForeignKey("organizations.id"), nullable=False),
        sa.Column("plan_id", sa.String(36), sa.ForeignKey("billing_plans.id"), nullable=False),
        sa.Column("subscription_id", sa.String(36), sa.ForeignKey("subscriptions.id"), nullable=True),
        sa.Column("gross_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("platform_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("agency_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False, server_default="usd"),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("idempotency_key", sa.String(255), nullable=False, unique=True),
        sa.Column("external_transaction_id", sa.String(255), nullable=True, unique=True),
        sa.Column("description", sa.String(500), nullable=True),
        sa.Column("failure_reason", sa.String(500), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.CheckConstraint(
            "platform_amount + agency_amount = gross_amount",
            name="ck_payments_split_sum",
        ),
    )
    op.create_index("ix_payments_organization_id", "payments", ["organization_id"])
    op.create_index("ix_payments_status", "payments", ["status"])
    op.create_index("idx_payments_status_created", "payments", ["status", "created_at"])

    # Payment splits
    op.create_table(
        "payment_splits",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("payment_id", sa.String(36), sa.ForeignKey("payments.id"), nullable=False),
        sa.Column("from_organization_id", sa.String(36), nullable=False),
        sa.Column("to_organization_id", sa.String(36), nullable=False),
        sa.Column("split_type", sa.String(30), nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("percentage", sa.Numeric(5, 2), nullable=False),
        sa.Column("transfer_status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("retry_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("failure_reason", sa.String(500), nullable=True),
        sa.Column("gateway_transfer_id", sa.String(255), nullable=True),
        sa.Column("next_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("transferred_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("locked_by", sa.String(64), nullable=True),
        sa.Column("locked_until", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_payment_splits_payment_id", "payment_splits", ["payment_id"])
    op.create_index("ix_payment_splits_from_organization_id", "payment_splits", ["from_organization_id"])
    op.create_index("ix_payment_splits_to_organization_id", "payment_splits", ["to_organization_id"])
    op.create_index("idx_splits_transfer_due", "payment_splits", ["transfer_status", "next_attempt_at"])
    op.create_index(
        "idx_splits_payment_beneficiary",
        "payment_splits",
        ["payment_id", "to_organization_id"],
        unique=True,
    )

    # Processed webhook events
    op.create_table(
        "processed_webhook_events",
        sa.Column("event_id", sa.String(255), primary_key=True),
        sa.Column("event_type", sa.String(100), nullable=False),
        sa.Column("transaction_id", sa.String(255), nullable=True),
        sa.Column("outcome", sa.String(30), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_processed_webhook_events_transaction_id", "processed_webhook_events", ["transaction_id"])

    # Commissions
    op.create_table(
        "commissions",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("agency_organization_id", sa.String(36), sa.ForeignKey("organizations.id"), nullable=False),
        sa.Column("customer_organization_id", sa.String(36), sa.ForeignKey("organizations.id"), nullable=False),
        sa.Column("payment_id", sa.String(36), sa.ForeignKey("payments.id"), nullable=False),
        sa.Column("payment_split_id", sa.String(36), sa.ForeignKey("payment_splits.id"), nullable=False, unique=True),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("rate", sa.Numeric(5, 2), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False, server_default="usd"),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("description", sa.String(500), nullable=True),
        sa.Column("earned_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_commissions_payment_id", "commissions", ["payment_id"])
    op.create_index("idx_commissions_agency_earned", "commissions", ["agency_organization_id", "earned_at"])

    # Operator alerts
    op.create_table(
        "operator_alerts",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("kind", sa.String(40), nullable=False),
        sa.Column("reference_id", sa.String(255), nullable=True),
        sa.Column("event_id", sa.String(255), nullable=True, unique=True),
        sa.Column("message", sa.Text, nullable=False),
        sa.Column("payload", JSON, nullable=False),
        sa.Column("resolved", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("idx_alerts_open", "operator_alerts", ["resolved", "created_at"])


def downgrade() -> None:
    """Drop settlement tables."""
    op.drop_table("operator_alerts")
    op.drop_table("commissions")
    op.drop_table("processed_webhook_events")
    op.drop_table("payment_splits")
    op.drop_table("payments")
    op.drop_table("subscriptions")
    op.drop_table("billing_plans")
    op.drop_table("organizations")
