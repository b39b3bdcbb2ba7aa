"""coach_billing_schema

Revision ID: 001_coach_billing
Revises:
Create Date: 2026-10-19

Catalog, subscriptions, discount ledger, payment verification log, payment
ledger, coach capacity and monthly coach payments.
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB, UUID

# revision identifiers, used by Alembic.
revision = "001_coach_billing"
down_revision = None
branch_labels = None
depends_on = None

MONEY = sa.Numeric(12, 3)


def _id():
    return sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()"))


def _created_at():
    return sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()"))


def upgrade() -> None:
    op.execute("CREATE EXTENSION IF NOT EXISTS pgcrypto;")

    op.create_table(
        "users",
        _id(),
        _created_at(),
        sa.Column("email", sa.Text(), nullable=True, unique=True),
        sa.Column("password_hash", sa.Text(), nullable=True),
        sa.Column("role", sa.Text(), nullable=False, server_default="client"),
        sa.Column("full_name", sa.Text(), nullable=True),
        sa.Column("status", sa.Text(), nullable=False, server_default="pending"),
        sa.Column("payment_exempt", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("payment_deadline", sa.DateTime(timezone=True), nullable=True),
        sa.Column("activation_completed_at", sa.DateTime(timezone=True), nullable=True),
    )

    op.create_table(
        "coaches",
        _id(),
        sa.Column("user_id", UUID(as_uuid=True), sa.ForeignKey("users.id"), nullable=False, unique=True),
        sa.Column("first_name", sa.Text(), nullable=True),
        sa.Column("last_name", sa.Text(), nullable=True),
        sa.Column("status", sa.Text(), nullable=False, server_default="pending"),
        sa.Column("specializations", JSONB(), nullable=True),
        sa.Column("last_assigned_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
    )
    op.create_index("ix_coaches_user_id", "coaches", ["user_id"])

    op.create_table(
        "services",
        _id(),
        sa.Column("name", sa.Text(), nullable=False, unique=True),
        sa.Column("service_type", sa.Text(), nullable=False),
        sa.Column("delivery_mode", sa.Text(), nullable=False, server_default="online"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        _created_at(),
        sa.CheckConstraint("service_type IN ('team', 'one_to_one')", name="ck_services_service_type"),
        sa.CheckConstraint("delivery_mode IN ('in_person', 'hybrid', 'online')", name="ck_services_delivery_mode"),
    )

    op.create_table(
        "service_pricing",
        _id(),
        sa.Column("service_id", UUID(as_uuid=True), sa.ForeignKey("services.id"), nullable=False),
        sa.Column("price_kwd", MONEY, nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        _created_at(),
    )
    op.create_index("ix_service_pricing_service_id", "service_pricing", ["service_id"])
    # At most one active price per service
    op.create_index(
        "uq_service_pricing_active",
        "service_pricing",
        ["service_id"],
        unique=True,
        postgresql_where=sa.text("is_active"),
    )

    op.create_table(
        "payout_rules",
        _id(),
        sa.Column("service_id", UUID(as_uuid=True), sa.ForeignKey("services.id"), nullable=False, unique=True),
        sa.Column("primary_payout_type", sa.Text(), nullable=False),
        sa.Column("primary_payout_value", MONEY, nullable=False),
        sa.Column("platform_fee_type", sa.Text(), nullable=False, server_default="none"),
        sa.Column("platform_fee_value", MONEY, nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.CheckConstraint("primary_payout_type IN ('percent', 'fixed')", name="ck_payout_rules_type"),
    )

    op.create_table(
        "addon_services",
        _id(),
        sa.Column("code", sa.Text(), nullable=False, unique=True),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("price_kwd", MONEY, nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        _created_at(),
    )

    op.create_table(
        "addon_payout_rules",
        _id(),
        sa.Column("addon_id", UUID(as_uuid=True), sa.ForeignKey("addon_services.id"), nullable=False, unique=True),
        sa.Column("payout_type", sa.Text(), nullable=False),
        sa.Column("payout_value", MONEY, nullable=False),
        sa.Column("payout_recipient_role", sa.Text(), nullable=False, server_default="addon_staff"),
    )

    op.create_table(
        "coach_service_limits",
        _id(),
        sa.Column("coach_id", UUID(as_uuid=True), sa.ForeignKey("coaches.id"), nullable=False),
        sa.Column("service_id", UUID(as_uuid=True), sa.ForeignKey("services.id"), nullable=False),
        sa.Column("max_clients", sa.Integer(), nullable=False),
        sa.UniqueConstraint("coach_id", "service_id", name="uq_coach_service_limits_coach_service"),
    )
    op.create_index("ix_coach_service_limits_coach_id", "coach_service_limits", ["coach_id"])
    op.create_index("ix_coach_service_limits_service_id", "coach_service_limits", ["service_id"])

    op.create_table(
        "discount_codes",
        _id(),
        sa.Column("code", sa.Text(), nullable=False, unique=True),
        sa.Column("discount_type", sa.Text(), nullable=False),
        sa.Column("discount_value", MONEY, nullable=False),
        sa.Column("max_redemptions", sa.Integer(), nullable=True),
        sa.Column("usage_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
    )

    op.create_table(
        "subscriptions",
        _id(),
        sa.Column("user_id", UUID(as_uuid=True), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("coach_id", UUID(as_uuid=True), sa.ForeignKey("users.id"), nullable=True),
        sa.Column("service_id", UUID(as_uuid=True), sa.ForeignKey("services.id"), nullable=False),
        sa.Column("status", sa.Text(), nullable=False, server_default="pending"),
        sa.Column("coach_assignment_method", sa.Text(), nullable=True),
        sa.Column("needs_coach_assignment", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("discount_code_id", UUID(as_uuid=True), sa.ForeignKey("discount_codes.id"), nullable=True),
        sa.Column("discount_cycles_used", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("base_price_kwd", MONEY, nullable=True),
        sa.Column("billing_amount_kwd", MONEY, nullable=True),
        sa.Column("start_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("next_billing_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("grace_period_days", sa.Integer(), nullable=True),
        sa.Column("last_verified_charge_id", sa.Text(), nullable=True),
        sa.Column("last_payment_verified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_payment_status", sa.Text(), nullable=True),
        sa.Column("tap_charge_id", sa.Text(), nullable=True),
        sa.Column("tap_subscription_id", sa.Text(), nullable=True),
        sa.Column("tap_subscription_status", sa.Text(), nullable=True),
        sa.Column("tap_card_id", sa.Text(), nullable=True),
        sa.Column("tap_payment_agreement_id", sa.Text(), nullable=True),
        sa.Column("past_due_since", sa.DateTime(timezone=True), nullable=True),
        sa.Column("payment_failed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("payment_failure_reason", sa.Text(), nullable=True),
        sa.Column("cancel_at_period_end", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancellation_reason", sa.Text(), nullable=True),
        sa.Column("end_date", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        # Activation requires a verified capture
        sa.CheckConstraint(
            "status <> 'active' OR (last_verified_charge_id IS NOT NULL "
            "AND last_payment_verified_at IS NOT NULL AND last_payment_status = 'CAPTURED')",
            name="ck_subscriptions_active_requires_verification",
        ),
    )
    op.create_index("ix_subscriptions_user_id", "subscriptions", ["user_id"])
    op.create_index("ix_subscriptions_coach_id", "subscriptions", ["coach_id"])
    op.create_index("ix_subscriptions_service_id", "subscriptions", ["service_id"])
    op.create_index("ix_subscriptions_status", "subscriptions", ["status"])
    op.create_index("ix_subscriptions_tap_charge_id", "subscriptions", ["tap_charge_id"])

    op.create_table(
        "subscription_addons",
        _id(),
        sa.Column("subscription_id", UUID(as_uuid=True), sa.ForeignKey("subscriptions.id"), nullable=False),
        sa.Column("addon_id", UUID(as_uuid=True), sa.ForeignKey("addon_services.id"), nullable=True),
        sa.Column("specialty", sa.Text(), nullable=True),
        sa.Column("staff_user_id", UUID(as_uuid=True), sa.ForeignKey("users.id"), nullable=True),
        sa.Column("price_kwd", MONEY, nullable=True),
        sa.Column("payout_kwd", MONEY, nullable=True),
        sa.Column("status", sa.Text(), nullable=False, server_default="active"),
        sa.Column("billing_type", sa.Text(), nullable=False, server_default="recurring"),
        _created_at(),
    )
    op.create_index("ix_subscription_addons_subscription_id", "subscription_addons", ["subscription_id"])

    op.create_table(
        "discount_redemptions",
        _id(),
        sa.Column("discount_code_id", UUID(as_uuid=True), sa.ForeignKey("discount_codes.id"), nullable=False),
        sa.Column("subscription_id", UUID(as_uuid=True), nullable=True),
        sa.Column("user_id", UUID(as_uuid=True), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("amount_before_kwd", MONEY, nullable=False),
        sa.Column("amount_after_kwd", MONEY, nullable=False),
        sa.Column("total_saved_kwd", MONEY, nullable=False),
        sa.Column("cycles_applied", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("last_applied_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("status", sa.Text(), nullable=False, server_default="active"),
        sa.UniqueConstraint(
            "discount_code_id", "user_id", "subscription_id", name="uq_discount_redemptions_code_user_sub"
        ),
    )
    op.create_index("ix_discount_redemptions_subscription_id", "discount_redemptions", ["subscription_id"])

    op.create_table(
        "monthly_coach_payments",
        _id(),
        sa.Column("payment_month", sa.Date(), nullable=False),
        sa.Column("coach_id", UUID(as_uuid=True), sa.ForeignKey("coaches.id"), nullable=False),
        sa.Column("client_breakdown", JSONB(), nullable=False),
        sa.Column("total_clients", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("base_payout_kwd", MONEY, nullable=False, server_default="0"),
        sa.Column("addon_payout_kwd", MONEY, nullable=False, server_default="0"),
        sa.Column("total_payment", MONEY, nullable=False, server_default="0"),
        sa.Column("gross_revenue_kwd", MONEY, nullable=False, server_default="0"),
        sa.Column("discounts_applied_kwd", MONEY, nullable=False, server_default="0"),
        sa.Column("net_collected_kwd", MONEY, nullable=False, server_default="0"),
        sa.Column("calculated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.UniqueConstraint("payment_month", "coach_id", name="uq_monthly_coach_payments_month_coach"),
    )
    op.create_index("ix_monthly_coach_payments_coach_id", "monthly_coach_payments", ["coach_id"])

    op.create_table(
        "payment_events",
        _id(),
        sa.Column("provider", sa.Text(), nullable=False, server_default="tap"),
        sa.Column("charge_id", sa.Text(), nullable=False),
        sa.Column("status", sa.Text(), nullable=False),
        sa.Column("source", sa.Text(), nullable=True),
        sa.Column("payload_json", JSONB(), nullable=True),
        sa.Column("verified_json", JSONB(), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("processing_result", sa.Text(), nullable=True),
        sa.Column("user_id", UUID(as_uuid=True), nullable=True),
        sa.Column("subscription_id", UUID(as_uuid=True), nullable=True),
        sa.Column("amount", MONEY, nullable=True),
        sa.Column("currency", sa.Text(), nullable=True),
        sa.Column("error_details", sa.Text(), nullable=True),
        _created_at(),
        sa.UniqueConstraint("provider", "charge_id", "status", name="uq_payment_events_provider_charge_status"),
    )
    op.create_index("ix_payment_events_charge_id", "payment_events", ["charge_id"])

    op.create_table(
        "subscription_payments",
        _id(),
        sa.Column("subscription_id", UUID(as_uuid=True), nullable=True),
        sa.Column("user_id", UUID(as_uuid=True), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("tap_charge_id", sa.Text(), nullable=False, unique=True),
        sa.Column("amount_kwd", MONEY, nullable=True),
        sa.Column("status", sa.Text(), nullable=False, server_default="initiated"),
        sa.Column("is_renewal", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("billing_period_start", sa.Date(), nullable=True),
        sa.Column("billing_period_end", sa.Date(), nullable=True),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("metadata", JSONB(), nullable=True),
        _created_at(),
    )
    op.create_index("ix_subscription_payments_subscription_id", "subscription_payments", ["subscription_id"])
    op.create_index("ix_subscription_payments_user_id", "subscription_payments", ["user_id"])

    op.create_table(
        "email_notifications",
        _id(),
        sa.Column("user_id", UUID(as_uuid=True), nullable=False),
        sa.Column("notification_type", sa.Text(), nullable=False),
        sa.Column("status", sa.Text(), nullable=False),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    )
    op.create_index("ix_email_notifications_user_id", "email_notifications", ["user_id"])


def downgrade() -> None:
    for table in (
        "email_notifications",
        "subscription_payments",
        "payment_events",
        "monthly_coach_payments",
        "discount_redemptions",
        "subscription_addons",
        "subscriptions",
        "discount_codes",
        "coach_service_limits",
        "addon_payout_rules",
        "addon_services",
        "payout_rules",
        "service_pricing",
        "services",
        "coaches",
        "users",
    ):
        op.drop_table(table)
