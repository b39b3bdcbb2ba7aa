"""
Tests for the payment verification and activation pipeline.
"""
from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError

from core.rate_limit import ChargeRateLimiter
from models import DiscountCode, DiscountRedemption, PaymentEvent, Subscription, SubscriptionPayment, User
from services.payment_verification import (
    ACTIVATED,
    ACTIVATION_FAILED,
    AMOUNT_MISMATCH,
    CHARGE_OWNER_MISMATCH,
    CURRENCY_MISMATCH,
    PaymentVerifier,
    find_user_for_charge,
)
from services.subscription_lifecycle import add_months
from services.tap_gateway import TapCharge, TapGatewayError

NOW = datetime(2026, 3, 15, 10, 0, tzinfo=timezone.utc)


def _aware(value):
    return value if value is None or value.tzinfo else value.replace(tzinfo=timezone.utc)


@pytest.fixture
def open_limiter():
    return ChargeRateLimiter(max_per_window=100, window_s=60, min_spacing_s=0, backend="memory")


@pytest.fixture
def pending_subscription(db_session, make_service, make_coach, client_user):
    service = make_service(price_kwd="100")
    coach = make_coach(service)
    sub = Subscription(
        user_id=client_user.id,
        coach_id=coach.user_id,
        service_id=service.id,
        status="pending",
        base_price_kwd=Decimal("100"),
        billing_amount_kwd=Decimal("100"),
    )
    db_session.add(sub)
    db_session.commit()
    return sub


@pytest.fixture
def callbacks():
    return {"activated": [], "failed": []}


@pytest.fixture
def verifier(db_session, fake_tap, open_limiter, callbacks):
    return PaymentVerifier(
        db_session,
        gateway=fake_tap,
        rate_limiter=open_limiter,
        on_activated=lambda sub_id, next_billing: callbacks["activated"].append((sub_id, next_billing)),
        on_failed=lambda sub_id, reason: callbacks["failed"].append((sub_id, reason)),
    )


def _initiated(db_session, sub, charge_id, amount="100"):
    db_session.add(
        SubscriptionPayment(
            subscription_id=sub.id, user_id=sub.user_id, tap_charge_id=charge_id,
            amount_kwd=Decimal(amount), status="initiated",
        )
    )
    db_session.commit()


class TestCapturedCharge:
    def test_activation(self, db_session, fake_tap, verifier, callbacks, pending_subscription, client_user):
        fake_tap.add_charge("ch_123", status="CAPTURED", amount=100, currency="KWD")
        _initiated(db_session, pending_subscription, "ch_123")

        outcome = verifier.verify(client_user.id, "ch_123", now=NOW)

        assert outcome.success is True
        assert outcome.status == "active"
        assert outcome.result == ACTIVATED
        assert outcome.http_status == 200

        sub = db_session.get(Subscription, pending_subscription.id)
        assert sub.status == "active"
        assert sub.last_verified_charge_id == "ch_123"
        assert sub.last_payment_status == "CAPTURED"
        assert _aware(sub.last_payment_verified_at) == NOW
        assert _aware(sub.next_billing_date) == add_months(NOW, 1)
        assert sub.tap_card_id is None

        user = db_session.get(User, client_user.id)
        assert user.status == "active"
        assert user.payment_deadline is None

        payments = db_session.query(SubscriptionPayment).all()
        assert len(payments) == 1
        assert payments[0].status == "paid"
        assert payments[0].is_renewal is False

        event = db_session.query(PaymentEvent).one()
        assert event.status == "CAPTURED"
        assert event.processing_result == ACTIVATED
        assert event.processed_at is not None
        assert callbacks["activated"] == [(sub.id, add_months(NOW, 1))]

    def test_second_verification_is_idempotent(
        self, db_session, fake_tap, verifier, callbacks, pending_subscription, client_user
    ):
        fake_tap.add_charge("ch_123", amount=100)

        first = verifier.verify(client_user.id, "ch_123", now=NOW)
        second = verifier.verify(client_user.id, "ch_123", now=NOW)

        assert first.result == ACTIVATED
        assert second.success is True
        assert second.status == "active"
        assert second.idempotent is True
        assert fake_tap.get_calls == ["ch_123"]
        assert db_session.query(SubscriptionPayment).count() == 1
        assert db_session.query(PaymentEvent).count() == 1
        assert len(callbacks["activated"]) == 1

    def test_old_charge_does_not_reactivate_past_due_subscription(
        self, db_session, fake_tap, verifier, pending_subscription, client_user
    ):
        fake_tap.add_charge("ch_123", amount=100)
        verifier.verify(client_user.id, "ch_123", now=NOW)
        sub = db_session.get(Subscription, pending_subscription.id)
        sub.status = "past_due"
        sub.past_due_since = NOW
        db_session.commit()

        outcome = verifier.verify(client_user.id, "ch_123", now=NOW)

        assert outcome.idempotent is True
        assert db_session.get(Subscription, sub.id).status == "past_due"
        assert db_session.query(SubscriptionPayment).count() == 1

    def test_amount_mismatch_is_rejected(self, db_session, fake_tap, verifier, callbacks, pending_subscription,
                                         client_user):
        fake_tap.add_charge("ch_456", amount=95, currency="KWD")

        outcome = verifier.verify(client_user.id, "ch_456", now=NOW)

        assert outcome.success is False
        assert outcome.result == AMOUNT_MISMATCH
        assert outcome.http_status == 400
        assert db_session.get(Subscription, pending_subscription.id).status == "pending"
        assert db_session.query(SubscriptionPayment).count() == 0
        event = db_session.query(PaymentEvent).one()
        assert event.processing_result == AMOUNT_MISMATCH
        assert callbacks["activated"] == []

    def test_rejected_charge_stays_rejected_on_retry(self, db_session, fake_tap, verifier, pending_subscription,
                                                     client_user):
        fake_tap.add_charge("ch_456", amount=95)

        verifier.verify(client_user.id, "ch_456", now=NOW)
        retry = verifier.verify(client_user.id, "ch_456", now=NOW)

        assert retry.success is False
        assert retry.result == AMOUNT_MISMATCH
        assert db_session.get(Subscription, pending_subscription.id).status == "pending"

    def test_amount_within_tolerance_activates(self, fake_tap, verifier, pending_subscription, client_user):
        fake_tap.add_charge("ch_789", amount=100.005)

        assert verifier.verify(client_user.id, "ch_789", now=NOW).result == ACTIVATED

    def test_amount_just_past_tolerance_is_rejected(self, db_session, fake_tap, verifier, pending_subscription,
                                                    client_user):
        fake_tap.add_charge("ch_over", amount=100.02)

        outcome = verifier.verify(client_user.id, "ch_over", now=NOW)

        assert outcome.result == AMOUNT_MISMATCH
        assert db_session.get(Subscription, pending_subscription.id).status == "pending"

    def test_zero_billing_amount_is_expected_not_missing(
        self, db_session, fake_tap, verifier, pending_subscription, client_user
    ):
        code = DiscountCode(code="FULLCOMP", discount_type="percent", discount_value=Decimal("100"))
        db_session.add(code)
        db_session.flush()
        sub = db_session.get(Subscription, pending_subscription.id)
        sub.discount_code_id = code.id
        sub.billing_amount_kwd = Decimal("0")
        db_session.commit()
        fake_tap.add_charge("ch_full_price", amount=100)
        fake_tap.add_charge("ch_zero", amount=0)

        full_price = verifier.verify(client_user.id, "ch_full_price", now=NOW)
        zero = verifier.verify(client_user.id, "ch_zero", now=NOW)

        assert full_price.result == AMOUNT_MISMATCH
        assert zero.result == ACTIVATED
        payment = db_session.query(SubscriptionPayment).filter_by(tap_charge_id="ch_zero").one()
        assert Decimal(payment.amount_kwd) == Decimal("0")
        redemption = db_session.query(DiscountRedemption).one()
        assert Decimal(redemption.total_saved_kwd) == Decimal("100")
        assert Decimal(redemption.amount_after_kwd) == Decimal("0")

    @pytest.mark.parametrize("currency", ["USD", None])
    def test_currency_mismatch(self, db_session, fake_tap, verifier, pending_subscription, client_user, currency):
        fake_tap.add_charge("ch_usd", amount=100, currency=currency)

        outcome = verifier.verify(client_user.id, "ch_usd", now=NOW)

        assert outcome.success is False
        assert outcome.result == CURRENCY_MISMATCH
        assert db_session.get(Subscription, pending_subscription.id).status == "pending"

    def test_discounted_activation_records_redemption(
        self, db_session, fake_tap, verifier, pending_subscription, client_user
    ):
        code = DiscountCode(code="WELCOME20", discount_type="percent", discount_value=Decimal("20"))
        db_session.add(code)
        db_session.flush()
        sub = db_session.get(Subscription, pending_subscription.id)
        sub.discount_code_id = code.id
        sub.billing_amount_kwd = Decimal("80")
        db_session.commit()
        fake_tap.add_charge("ch_disc", amount=80)

        outcome = verifier.verify(client_user.id, "ch_disc", now=NOW)

        assert outcome.result == ACTIVATED
        redemption = db_session.query(DiscountRedemption).one()
        assert Decimal(redemption.total_saved_kwd) == Decimal("20")
        assert redemption.subscription_id == sub.id
        assert db_session.get(DiscountCode, code.id).usage_count == 1
        assert db_session.get(Subscription, sub.id).discount_cycles_used == 1

    def test_past_due_renewal_clears_delinquency(self, db_session, fake_tap, verifier, pending_subscription,
                                                 client_user):
        sub = db_session.get(Subscription, pending_subscription.id)
        sub.status = "past_due"
        sub.past_due_since = NOW
        sub.last_verified_charge_id = "ch_old"
        db_session.commit()
        fake_tap.add_charge("ch_renew", amount=100)

        outcome = verifier.verify(client_user.id, "ch_renew", now=NOW)

        assert outcome.result == ACTIVATED
        sub = db_session.get(Subscription, sub.id)
        assert sub.status == "active"
        assert sub.past_due_since is None
        assert db_session.query(SubscriptionPayment).one().is_renewal is True

    def test_database_failure_reports_activation_failed(
        self, db_session, fake_tap, verifier, pending_subscription, client_user
    ):
        fake_tap.add_charge("ch_123", amount=100)

        with patch.object(
            PaymentVerifier,
            "_upsert_paid_payment",
            side_effect=OperationalError("INSERT", {}, Exception("disk full")),
        ):
            outcome = verifier.verify(client_user.id, "ch_123", now=NOW)

        assert outcome.success is False
        assert outcome.result == ACTIVATION_FAILED
        assert outcome.http_status == 500
        db_session.expire_all()
        assert db_session.get(Subscription, pending_subscription.id).status == "pending"
        assert db_session.query(PaymentEvent).one().processing_result == ACTIVATION_FAILED


class TestOtherStatuses:
    def test_initiated_charge_is_pending(self, db_session, fake_tap, verifier, pending_subscription, client_user):
        fake_tap.add_charge("ch_wait", status="INITIATED", amount=100)

        outcome = verifier.verify(client_user.id, "ch_wait", now=NOW)

        assert outcome.status == "pending"
        assert outcome.tap_status == "INITIATED"
        assert db_session.get(Subscription, pending_subscription.id).status == "pending"
        assert db_session.query(PaymentEvent).one().processed_at is None

    def test_failed_renewal_keeps_subscription_active(
        self, db_session, fake_tap, verifier, callbacks, pending_subscription, client_user
    ):
        fake_tap.add_charge("ch_123", amount=100)
        verifier.verify(client_user.id, "ch_123", now=NOW)
        fake_tap.add_charge("ch_bad", status="DECLINED", amount=100, response={"message": "Insufficient funds"})
        _initiated(db_session, pending_subscription, "ch_bad")

        outcome = verifier.verify(client_user.id, "ch_bad", now=NOW)

        assert outcome.status == "failed"
        sub = db_session.get(Subscription, pending_subscription.id)
        assert sub.status == "active"
        assert sub.payment_failure_reason == "Insufficient funds"
        payment = db_session.query(SubscriptionPayment).filter(SubscriptionPayment.tap_charge_id == "ch_bad").one()
        assert payment.status == "failed"
        assert callbacks["failed"] == [(sub.id, "Insufficient funds")]

    def test_cancelled_charge_marks_payment_cancelled(self, db_session, fake_tap, verifier, pending_subscription,
                                                      client_user):
        fake_tap.add_charge("ch_cxl", status="CANCELLED", amount=100)
        _initiated(db_session, pending_subscription, "ch_cxl")

        verifier.verify(client_user.id, "ch_cxl", now=NOW)

        payment = db_session.query(SubscriptionPayment).one()
        assert payment.status == "cancelled"
        assert payment.failure_reason == "CANCELLED"

    def test_failure_never_downgrades_paid_payment(self, db_session, fake_tap, verifier, pending_subscription,
                                                   client_user):
        fake_tap.add_charge("ch_123", amount=100)
        verifier.verify(client_user.id, "ch_123", now=NOW)
        fake_tap.add_charge("ch_123", status="FAILED", amount=100)
        sub = db_session.get(Subscription, pending_subscription.id)
        sub.last_verified_charge_id = None
        db_session.commit()

        verifier.verify(client_user.id, "ch_123", now=NOW)

        assert db_session.query(SubscriptionPayment).one().status == "paid"


class TestChargeResolution:
    def test_no_charge_means_no_payment(self, verifier, pending_subscription, client_user, fake_tap):
        outcome = verifier.verify(client_user.id, now=NOW)

        assert outcome.status == "no_payment"
        assert fake_tap.get_calls == []

    def test_latest_initiated_payment_is_used(self, db_session, fake_tap, verifier, pending_subscription,
                                              client_user):
        fake_tap.add_charge("ch_latest", amount=100)
        _initiated(db_session, pending_subscription, "ch_latest")

        outcome = verifier.verify(client_user.id, now=NOW)

        assert outcome.charge_id == "ch_latest"
        assert outcome.result == ACTIVATED

    def test_gateway_error_propagates_without_writes(self, db_session, fake_tap, verifier, pending_subscription,
                                                     client_user):
        fake_tap.fail_with = TapGatewayError("Tap API returned 503", status_code=503)

        with pytest.raises(TapGatewayError):
            verifier.verify(client_user.id, "ch_123", now=NOW)

        assert db_session.query(PaymentEvent).count() == 0
        assert db_session.get(Subscription, pending_subscription.id).status == "pending"


@pytest.fixture
def other_user(make_user):
    return make_user(full_name="Bob Client")


@pytest.fixture
def other_subscription(db_session, pending_subscription, other_user):
    sub = Subscription(
        user_id=other_user.id,
        coach_id=pending_subscription.coach_id,
        service_id=pending_subscription.service_id,
        status="pending",
        base_price_kwd=Decimal("100"),
        billing_amount_kwd=Decimal("100"),
    )
    db_session.add(sub)
    db_session.commit()
    return sub


class TestChargeOwnership:
    def test_charge_created_for_another_user_is_rejected(
        self, db_session, fake_tap, verifier, callbacks, pending_subscription, other_subscription,
        client_user, other_user,
    ):
        fake_tap.add_charge("ch_bob", amount=100, metadata={"user_id": str(other_user.id)})

        outcome = verifier.verify(client_user.id, "ch_bob", now=NOW)

        assert outcome.success is False
        assert outcome.result == CHARGE_OWNER_MISMATCH
        assert outcome.http_status == 403
        assert db_session.query(PaymentEvent).count() == 0
        assert db_session.query(SubscriptionPayment).count() == 0
        assert db_session.get(Subscription, pending_subscription.id).status == "pending"
        assert db_session.get(Subscription, other_subscription.id).status == "pending"
        assert db_session.get(User, client_user.id).status == "pending"
        assert callbacks["activated"] == []

    def test_ledger_row_of_another_user_is_not_moved(
        self, db_session, fake_tap, verifier, pending_subscription, other_subscription, client_user, other_user
    ):
        # No metadata on the charge; only the ledger knows the owner
        _initiated(db_session, other_subscription, "ch_bob")
        fake_tap.add_charge("ch_bob", amount=100)

        outcome = verifier.verify(client_user.id, "ch_bob", now=NOW)

        assert outcome.result == CHARGE_OWNER_MISMATCH
        payment = db_session.query(SubscriptionPayment).one()
        assert payment.user_id == other_user.id
        assert payment.subscription_id == other_subscription.id
        assert payment.status == "initiated"
        assert db_session.get(Subscription, pending_subscription.id).status == "pending"
        assert db_session.query(PaymentEvent).count() == 0

    def test_activated_charge_does_not_report_active_to_another_user(
        self, db_session, fake_tap, verifier, pending_subscription, other_subscription, client_user, other_user
    ):
        _initiated(db_session, other_subscription, "ch_bob")
        fake_tap.add_charge("ch_bob", amount=100, metadata={"user_id": str(other_user.id)})
        assert verifier.verify(other_user.id, "ch_bob", now=NOW).result == ACTIVATED

        outcome = verifier.verify(client_user.id, "ch_bob", now=NOW)

        assert outcome.success is False
        assert outcome.status != "active"
        assert outcome.result == CHARGE_OWNER_MISMATCH
        assert db_session.get(Subscription, pending_subscription.id).status == "pending"
        assert db_session.get(Subscription, other_subscription.id).status == "active"
        assert db_session.query(PaymentEvent).count() == 1

    def test_throttled_attempt_does_not_report_another_users_activation(
        self, db_session, fake_tap, pending_subscription, other_subscription, client_user, other_user
    ):
        strict = ChargeRateLimiter(max_per_window=5, window_s=60, min_spacing_s=5, backend="memory")
        verifier = PaymentVerifier(db_session, gateway=fake_tap, rate_limiter=strict)
        fake_tap.add_charge("ch_bob", amount=100, metadata={"user_id": str(other_user.id)})

        verifier.verify(other_user.id, "ch_bob", now=NOW)
        again = verifier.verify(client_user.id, "ch_bob", now=NOW)

        assert again.status == "throttled"
        assert again.cached is False

    def test_paid_row_detached_from_old_subscription_cannot_activate_new_one(
        self, db_session, fake_tap, verifier, pending_subscription, client_user
    ):
        fake_tap.add_charge("ch_old", amount=100)
        db_session.add(
            SubscriptionPayment(
                subscription_id=None, user_id=client_user.id, tap_charge_id="ch_old",
                amount_kwd=Decimal("100"), status="paid",
            )
        )
        db_session.commit()

        outcome = verifier.verify(client_user.id, "ch_old", now=NOW)

        assert outcome.result == CHARGE_OWNER_MISMATCH
        assert db_session.get(Subscription, pending_subscription.id).status == "pending"

    def test_own_metadata_is_accepted(self, fake_tap, verifier, pending_subscription, client_user):
        fake_tap.add_charge("ch_mine", amount=100, metadata={"user_id": str(client_user.id)})

        assert verifier.verify(client_user.id, "ch_mine", now=NOW).result == ACTIVATED


class TestRateLimiting:
    def test_throttled_attempt_reports_cached_activation(
        self, db_session, fake_tap, pending_subscription, client_user
    ):
        strict = ChargeRateLimiter(max_per_window=5, window_s=60, min_spacing_s=5, backend="memory")
        verifier = PaymentVerifier(db_session, gateway=fake_tap, rate_limiter=strict)
        fake_tap.add_charge("ch_123", amount=100)

        verifier.verify(client_user.id, "ch_123", now=NOW)
        again = verifier.verify(client_user.id, "ch_123", now=NOW)

        assert again.status == "active"
        assert again.cached is True
        assert fake_tap.get_calls == ["ch_123"]

    def test_throttled_attempt_without_activation(self, db_session, fake_tap, pending_subscription, client_user):
        strict = ChargeRateLimiter(max_per_window=5, window_s=60, min_spacing_s=5, backend="memory")
        verifier = PaymentVerifier(db_session, gateway=fake_tap, rate_limiter=strict)
        fake_tap.add_charge("ch_wait", status="INITIATED", amount=100)

        verifier.verify(client_user.id, "ch_wait", now=NOW)
        again = verifier.verify(client_user.id, "ch_wait", now=NOW)

        assert again.status == "throttled"
        assert again.to_dict()["reason"] == "charge_throttled"


def test_find_user_for_charge(db_session, pending_subscription, client_user):
    from_metadata = TapCharge.from_payload({"id": "ch_x", "status": "CAPTURED", "metadata": {"user_id": str(client_user.id)}})
    assert find_user_for_charge(db_session, from_metadata) == client_user.id

    _initiated(db_session, pending_subscription, "ch_ledger")
    from_ledger = TapCharge.from_payload({"id": "ch_ledger", "status": "CAPTURED"})
    assert find_user_for_charge(db_session, from_ledger) == client_user.id

    unknown = TapCharge.from_payload({"id": "ch_nobody", "status": "CAPTURED", "metadata": {"user_id": "not-a-uuid"}})
    assert find_user_for_charge(db_session, unknown) is None


def test_find_user_for_charge_prefers_ledger_over_body(db_session, pending_subscription, client_user, other_user):
    _initiated(db_session, pending_subscription, "ch_ledger")
    forged = TapCharge.from_payload(
        {"id": "ch_ledger", "status": "CAPTURED", "metadata": {"user_id": str(other_user.id)}}
    )

    assert find_user_for_charge(db_session, forged) == client_user.id
