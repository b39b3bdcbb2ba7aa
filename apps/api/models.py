from sqlalchemy import Column, Integer, Boolean, Date, DateTime, ForeignKey, Numeric, Text, Index, UniqueConstraint, JSON, Uuid
from sqlalchemy.orm import relationship
from sqlalchemy.dialects.postgresql import JSONB
from core.database import Base
import uuid
from datetime import datetime, timezone


# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")

# Money columns: KWD has three minor-unit digits
Money = Numeric(12, 3)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class User(Base):
    __tablename__ = "users"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    email = Column(Text, unique=True, nullable=True)
    password_hash = Column(Text, nullable=True)
    role = Column(Text, default="client", nullable=False)  # 'client', 'coach', 'admin'
    full_name = Column(Text, nullable=True)

    # Account lifecycle: pending -> active (first verified payment) -> inactive
    status = Column(Text, default="pending", nullable=False)
    # Comped accounts: never billed and never counted toward coach payouts
    payment_exempt = Column(Boolean, default=False, nullable=False)
    payment_deadline = Column(DateTime(timezone=True), nullable=True)
    activation_completed_at = Column(DateTime(timezone=True), nullable=True)


class Coach(Base):
    """Coach profile. Subscriptions reference the coach's *user* id."""

    __tablename__ = "coaches"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=False, unique=True, index=True)
    first_name = Column(Text, nullable=True)
    last_name = Column(Text, nullable=True)
    status = Column(Text, default="pending", nullable=False)  # pending|approved|active|inactive
    specializations = Column(JSONType, nullable=True)  # list of tag strings
    # Round-robin fairness: null means never assigned
    last_assigned_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    user = relationship("User", lazy="joined")

    @property
    def display_name(self) -> str:
        return f"{self.first_name or ''} {self.last_name or ''}".strip()


class Service(Base):
    __tablename__ = "services"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(Text, nullable=False, unique=True)
    service_type = Column(Text, nullable=False)  # team|one_to_one
    # Resolved when the service is written; drives payout reporting buckets
    delivery_mode = Column(Text, nullable=False, default="online")  # in_person|hybrid|online
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)


class ServicePricing(Base):
    """Gross (list) price per service. One active row per service."""

    __tablename__ = "service_pricing"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    service_id = Column(Uuid(as_uuid=True), ForeignKey("services.id"), nullable=False, index=True)
    price_kwd = Column(Money, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)


class PayoutRule(Base):
    __tablename__ = "payout_rules"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    service_id = Column(Uuid(as_uuid=True), ForeignKey("services.id"), nullable=False, unique=True)
    primary_payout_type = Column(Text, nullable=False)  # percent|fixed
    primary_payout_value = Column(Money, nullable=False)
    platform_fee_type = Column(Text, nullable=False, default="none")  # percent|fixed|none
    platform_fee_value = Column(Money, nullable=False, default=0)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)


class AddonService(Base):
    """Add-on catalog entry (nutrition, physio, ...) with its gross price."""

    __tablename__ = "addon_services"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    code = Column(Text, nullable=False, unique=True)
    name = Column(Text, nullable=False)
    price_kwd = Column(Money, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)


class AddonPayoutRule(Base):
    __tablename__ = "addon_payout_rules"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    addon_id = Column(Uuid(as_uuid=True), ForeignKey("addon_services.id"), nullable=False, unique=True)
    payout_type = Column(Text, nullable=False)  # percent|fixed
    payout_value = Column(Money, nullable=False)
    payout_recipient_role = Column(Text, nullable=False, default="addon_staff")  # primary_coach|addon_staff


class CoachServiceLimit(Base):
    """Per-service capacity ceiling. No row means the coach takes no clients for that service."""

    __tablename__ = "coach_service_limits"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    coach_id = Column(Uuid(as_uuid=True), ForeignKey("coaches.id"), nullable=False, index=True)
    service_id = Column(Uuid(as_uuid=True), ForeignKey("services.id"), nullable=False, index=True)
    max_clients = Column(Integer, nullable=False)

    coach = relationship("Coach", lazy="joined")

    __table_args__ = (
        UniqueConstraint("coach_id", "service_id", name="uq_coach_service_limits_coach_service"),
    )


class DiscountCode(Base):
    __tablename__ = "discount_codes"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    code = Column(Text, nullable=False, unique=True)
    discount_type = Column(Text, nullable=False)  # percent|fixed
    discount_value = Column(Money, nullable=False)
    max_redemptions = Column(Integer, nullable=True)
    usage_count = Column(Integer, default=0, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)


class Subscription(Base):
    """
    Client subscription to a service.

    Lifecycle: pending (onboarding) -> active (verified captured payment)
    -> past_due / failed -> cancelled (soft, until end_date) -> hard-deleted.
    """

    __tablename__ = "subscriptions"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=False, index=True)
    # Coach *user* id; null while the subscription waits for manual assignment
    coach_id = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=True, index=True)
    service_id = Column(Uuid(as_uuid=True), ForeignKey("services.id"), nullable=False, index=True)
    status = Column(Text, nullable=False, default="pending", index=True)  # pending|active|past_due|failed|cancelled

    coach_assignment_method = Column(Text, nullable=True)  # auto|preference|team|manual
    needs_coach_assignment = Column(Boolean, default=False, nullable=False)

    discount_code_id = Column(Uuid(as_uuid=True), ForeignKey("discount_codes.id"), nullable=True)
    discount_cycles_used = Column(Integer, default=0, nullable=False)
    base_price_kwd = Column(Money, nullable=True)
    billing_amount_kwd = Column(Money, nullable=True)

    start_date = Column(DateTime(timezone=True), nullable=True)
    next_billing_date = Column(DateTime(timezone=True), nullable=True)
    grace_period_days = Column(Integer, nullable=True)

    # Payment verification (set together, only by the verification pipeline)
    last_verified_charge_id = Column(Text, nullable=True)
    last_payment_verified_at = Column(DateTime(timezone=True), nullable=True)
    last_payment_status = Column(Text, nullable=True)

    tap_charge_id = Column(Text, nullable=True, index=True)
    tap_subscription_id = Column(Text, nullable=True)
    tap_subscription_status = Column(Text, nullable=True)
    # Never populated after activation: no card storage
    tap_card_id = Column(Text, nullable=True)
    tap_payment_agreement_id = Column(Text, nullable=True)

    past_due_since = Column(DateTime(timezone=True), nullable=True)
    payment_failed_at = Column(DateTime(timezone=True), nullable=True)
    payment_failure_reason = Column(Text, nullable=True)

    cancel_at_period_end = Column(Boolean, default=False, nullable=False)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    cancellation_reason = Column(Text, nullable=True)
    end_date = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)

    user = relationship("User", foreign_keys=[user_id], lazy="joined")
    service = relationship("Service", lazy="joined")


class SubscriptionAddon(Base):
    __tablename__ = "subscription_addons"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    subscription_id = Column(Uuid(as_uuid=True), ForeignKey("subscriptions.id"), nullable=False, index=True)
    addon_id = Column(Uuid(as_uuid=True), ForeignKey("addon_services.id"), nullable=True)
    # Legacy rows carry a free-text specialty code instead of addon_id
    specialty = Column(Text, nullable=True)
    staff_user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=True)
    price_kwd = Column(Money, nullable=True)
    payout_kwd = Column(Money, nullable=True)  # legacy fixed payout
    status = Column(Text, nullable=False, default="active")
    billing_type = Column(Text, nullable=False, default="recurring")  # recurring|one_time
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)


class DiscountRedemption(Base):
    """Per-subscription discount ledger. Reporting only: never reduces coach payout."""

    __tablename__ = "discount_redemptions"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    discount_code_id = Column(Uuid(as_uuid=True), ForeignKey("discount_codes.id"), nullable=False)
    subscription_id = Column(Uuid(as_uuid=True), nullable=True, index=True)
    user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=False)
    amount_before_kwd = Column(Money, nullable=False)
    amount_after_kwd = Column(Money, nullable=False)
    total_saved_kwd = Column(Money, nullable=False)
    cycles_applied = Column(Integer, default=1, nullable=False)
    last_applied_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    status = Column(Text, nullable=False, default="active")

    __table_args__ = (
        UniqueConstraint("discount_code_id", "user_id", "subscription_id", name="uq_discount_redemptions_code_user_sub"),
    )


class MonthlyCoachPayment(Base):
    """One row per (coach, month); recomputation overwrites."""

    __tablename__ = "monthly_coach_payments"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    payment_month = Column(Date, nullable=False)
    coach_id = Column(Uuid(as_uuid=True), ForeignKey("coaches.id"), nullable=False, index=True)
    client_breakdown = Column(JSONType, nullable=False)
    total_clients = Column(Integer, nullable=False, default=0)
    base_payout_kwd = Column(Money, nullable=False, default=0)
    addon_payout_kwd = Column(Money, nullable=False, default=0)
    total_payment = Column(Money, nullable=False, default=0)
    gross_revenue_kwd = Column(Money, nullable=False, default=0)
    discounts_applied_kwd = Column(Money, nullable=False, default=0)
    net_collected_kwd = Column(Money, nullable=False, default=0)
    calculated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("payment_month", "coach_id", name="uq_monthly_coach_payments_month_coach"),
    )


class PaymentEvent(Base):
    """
    Gateway charge observations (audit + idempotency guard).

    (provider, charge_id, status) is unique: the same charge status is processed once.
    """

    __tablename__ = "payment_events"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    provider = Column(Text, nullable=False, default="tap")
    charge_id = Column(Text, nullable=False)
    status = Column(Text, nullable=False)
    source = Column(Text, nullable=True)  # client|webhook
    payload_json = Column(JSONType, nullable=True)
    verified_json = Column(JSONType, nullable=True)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    processing_result = Column(Text, nullable=True)
    user_id = Column(Uuid(as_uuid=True), nullable=True)
    subscription_id = Column(Uuid(as_uuid=True), nullable=True)
    amount = Column(Money, nullable=True)
    currency = Column(Text, nullable=True)
    error_details = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("provider", "charge_id", "status", name="uq_payment_events_provider_charge_status"),
        Index("ix_payment_events_charge_id", "charge_id"),
    )


class SubscriptionPayment(Base):
    """Payments ledger, one row per gateway charge."""

    __tablename__ = "subscription_payments"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    subscription_id = Column(Uuid(as_uuid=True), nullable=True, index=True)
    user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=False, index=True)
    tap_charge_id = Column(Text, nullable=False, unique=True)
    amount_kwd = Column(Money, nullable=True)
    status = Column(Text, nullable=False, default="initiated")  # initiated|paid|failed|cancelled
    is_renewal = Column(Boolean, default=False, nullable=False)
    billing_period_start = Column(Date, nullable=True)
    billing_period_end = Column(Date, nullable=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    failed_at = Column(DateTime(timezone=True), nullable=True)
    failure_reason = Column(Text, nullable=True)
    payment_metadata = Column("metadata", JSONType, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)


class EmailNotification(Base):
    """Sent-notification log; used to suppress repeats inside a cooldown."""

    __tablename__ = "email_notifications"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid(as_uuid=True), nullable=False, index=True)
    notification_type = Column(Text, nullable=False)
    status = Column(Text, nullable=False)  # sent|failed|skipped
    sent_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
