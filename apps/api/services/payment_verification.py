"""
Payment verification and subscription activation.

This is the only code path that activates a subscription. Client returns
from checkout and Tap webhooks both end up in PaymentVerifier.verify():

1. Resolve the charge (explicit, latest initiated payment, subscription's charge)
2. Per-charge rate limit
3. Load the user's latest subscription
4. Fast path when already active for this charge
5. Fetch the charge from Tap (the gateway is the source of truth) and reject it
   when it belongs to another user or subscription
6. Event-log idempotency per (provider, charge, status)
7. Record the payment event
8. CAPTURED -> validate status/amount/currency, then activate in one commit
9. INITIATED / IN_PROGRESS -> pending
10. FAILED / DECLINED / CANCELLED -> record failure, never roll back an active subscription
11. Stamp the event with processed_at and processing_result

Emails are dispatched after the commit through callbacks; their failure never
affects the activation.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, Optional
from uuid import UUID

from sqlalchemy import and_, or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from core.config import settings
from core.logging import step_fields
from core.rate_limit import ChargeRateLimiter, charge_rate_limiter
from models import PaymentEvent, Subscription, SubscriptionPayment, User
from services.discounts import record_redemption
from services.subscription_lifecycle import add_months
from services.tap_gateway import CAPTURED, FAILED_STATUSES, PENDING_STATUSES, TapCharge, TapClient

logger = logging.getLogger(__name__)

FN = "verify-payment"
PROVIDER = "tap"

# Processing results
ACTIVATED = "activated"
ALREADY_ACTIVE = "already_active"
INVALID_STATUS = "invalid_status"
AMOUNT_MISMATCH = "amount_mismatch"
CURRENCY_MISMATCH = "currency_mismatch"
ACTIVATION_FAILED = "activation_failed"
CHARGE_OWNER_MISMATCH = "charge_owner_mismatch"
FAILED = "failed"

OnActivated = Callable[[UUID, datetime], None]
OnFailed = Callable[[UUID, Optional[str]], None]


@dataclass
class VerificationOutcome:
    """What the verify endpoint reports back to the caller."""

    success: bool
    status: str
    subscription_id: Optional[UUID] = None
    charge_id: Optional[str] = None
    result: Optional[str] = None
    idempotent: bool = False
    cached: bool = False
    tap_status: Optional[str] = None
    next_billing_date: Optional[datetime] = None
    message: Optional[str] = None
    error: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def http_status(self) -> int:
        if self.success:
            return 200
        if self.result == ACTIVATION_FAILED:
            return 500
        if self.result == CHARGE_OWNER_MISMATCH:
            return 403
        return 400

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"success": self.success, "status": self.status}
        if self.subscription_id is not None:
            out["subscription_id"] = str(self.subscription_id)
        if self.charge_id:
            out["charge_id"] = self.charge_id
        if self.idempotent:
            out["idempotent"] = True
        if self.cached:
            out["cached"] = True
        if self.tap_status:
            out["tap_status"] = self.tap_status
        if self.next_billing_date:
            out["next_billing_date"] = self.next_billing_date.isoformat()
        if self.message:
            out["message"] = self.message
        if self.error:
            out["error"] = self.error
        out.update(self.extra)
        return out


def _to_decimal(value) -> Optional[Decimal]:
    if value is None:
        return None
    return value if isinstance(value, Decimal) else Decimal(str(value))


def _first_amount(*values) -> Optional[Decimal]:
    """First value that is set; zero counts as set."""
    for value in values:
        if value is not None and value != "":
            return _to_decimal(value)
    return None


def _parse_uuid(value) -> Optional[UUID]:
    if not value:
        return None
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except ValueError:
        return None


def _activated(event: Optional[PaymentEvent]) -> bool:
    return (
        event is not None
        and event.processed_at is not None
        and event.processing_result in (ACTIVATED, ALREADY_ACTIVE)
    )


class PaymentVerifier:
    def __init__(
        self,
        db: Session,
        gateway: Optional[TapClient] = None,
        rate_limiter: Optional[ChargeRateLimiter] = None,
        on_activated: Optional[OnActivated] = None,
        on_failed: Optional[OnFailed] = None,
    ):
        self.db = db
        self.gateway = gateway or TapClient()
        self.rate_limiter = rate_limiter or charge_rate_limiter
        self.on_activated = on_activated
        self.on_failed = on_failed
        self.tolerance = Decimal(str(settings.PAYMENT_AMOUNT_TOLERANCE))
        self.currency = settings.PLATFORM_CURRENCY.upper()

    def verify(
        self,
        user_id: UUID,
        charge_id: Optional[str] = None,
        source: str = "client",
        now: Optional[datetime] = None,
    ) -> VerificationOutcome:
        """
        Verify a charge with the gateway and apply it to the user's subscription.

        Raises TapGatewayError when the gateway cannot be queried; nothing is
        written in that case.
        """
        request_id = str(uuid.uuid4())
        log = _StepLogger(request_id)
        now = now or datetime.now(timezone.utc)

        target = charge_id or self._resolve_charge_id(user_id)
        if not target:
            log.info("no_payment", user_id=str(user_id))
            return VerificationOutcome(success=True, status="no_payment", message="No pending payment")

        decision = self.rate_limiter.check(target)
        if not decision.allowed:
            log.info("rate_limited", ok=False, charge_id=target, reason=decision.reason)
            event = self._find_event(target, CAPTURED)
            if _activated(event) and event.user_id == user_id:
                return VerificationOutcome(
                    success=True, status="active", subscription_id=event.subscription_id,
                    charge_id=target, cached=True,
                )
            return VerificationOutcome(
                success=True, status="throttled", charge_id=target,
                message="Please wait", extra={"reason": decision.reason},
            )

        subscription = self._latest_subscription(user_id)
        if subscription is None:
            return VerificationOutcome(success=True, status="no_subscription", charge_id=target)

        if (
            subscription.status == "active"
            and subscription.last_verified_charge_id == target
            and subscription.past_due_since is None
        ):
            log.info("already_active_fast_path", charge_id=target)
            return VerificationOutcome(
                success=True, status="active", subscription_id=subscription.id,
                charge_id=target, idempotent=True,
            )

        log.info("verifying_charge", charge_id=target)
        charge = self.gateway.get_charge(target)
        log.info("tap_status", charge_id=target, status=charge.status)

        conflict = self._ownership_conflict(target, charge, user_id, subscription)
        if conflict is not None:
            log.warning(CHARGE_OWNER_MISMATCH, charge_id=target, user_id=str(user_id), detail=conflict)
            return VerificationOutcome(
                success=False, status="error", subscription_id=subscription.id, charge_id=target,
                result=CHARGE_OWNER_MISMATCH, error="Charge does not belong to this subscription",
            )

        existing = self._find_event(target, charge.status)
        if charge.status == CAPTURED and _activated(existing) and existing.subscription_id == subscription.id:
            log.info("already_processed", charge_id=target)
            return VerificationOutcome(
                success=True, status="active", subscription_id=subscription.id,
                charge_id=target, idempotent=True,
            )

        event = self._record_event(target, charge, user_id, subscription.id, source)

        if charge.status == CAPTURED:
            outcome = self._apply_captured(log, target, charge, subscription, now)
            self._finish_event(event, outcome.result, outcome.error)
            if outcome.success and self.on_activated is not None:
                self._dispatch(log, "confirmation_email", self.on_activated, subscription.id, outcome.next_billing_date)
            return outcome

        if charge.status in PENDING_STATUSES:
            return VerificationOutcome(
                success=True, status="pending", subscription_id=subscription.id,
                charge_id=target, tap_status=charge.status, message="Payment is being processed",
            )

        if charge.status in FAILED_STATUSES:
            reason = self._apply_failed(log, target, charge, subscription, now)
            self._finish_event(event, FAILED, None)
            if self.on_failed is not None:
                self._dispatch(log, "failed_email", self.on_failed, subscription.id, reason)
            return VerificationOutcome(
                success=True, status="failed", subscription_id=subscription.id, charge_id=target,
                result=FAILED, tap_status=charge.status,
                message=f"Payment {charge.status.lower()}. Please try again.",
            )

        return VerificationOutcome(
            success=True, status=subscription.status, subscription_id=subscription.id,
            charge_id=target, tap_status=charge.status,
        )

    # ------------------------------------------------------------------ lookups

    def _resolve_charge_id(self, user_id: UUID) -> Optional[str]:
        payment = (
            self.db.query(SubscriptionPayment)
            .filter(SubscriptionPayment.user_id == user_id, SubscriptionPayment.status == "initiated")
            .order_by(SubscriptionPayment.created_at.desc())
            .first()
        )
        if payment is not None:
            return payment.tap_charge_id

        subscription = (
            self.db.query(Subscription)
            .filter(Subscription.user_id == user_id, Subscription.tap_charge_id.isnot(None))
            .order_by(Subscription.created_at.desc())
            .first()
        )
        return subscription.tap_charge_id if subscription is not None else None

    def _latest_subscription(self, user_id: UUID) -> Optional[Subscription]:
        return (
            self.db.query(Subscription)
            .filter(Subscription.user_id == user_id)
            .order_by(Subscription.created_at.desc())
            .first()
        )

    def _find_event(self, charge_id: str, status: str) -> Optional[PaymentEvent]:
        return (
            self.db.query(PaymentEvent)
            .filter(
                PaymentEvent.provider == PROVIDER,
                PaymentEvent.charge_id == charge_id,
                PaymentEvent.status == status,
            )
            .first()
        )

    def _ownership_conflict(
        self,
        charge_id: str,
        charge: TapCharge,
        user_id: UUID,
        subscription: Subscription,
    ) -> Optional[str]:
        """
        A charge belongs to one user and one subscription. Returns what
        contradicts that for this caller, or None.
        """
        raw_owner = charge.metadata.get("user_id")
        if raw_owner and _parse_uuid(raw_owner) != user_id:
            return "charge metadata names another user"

        payment = self.db.query(SubscriptionPayment).filter(SubscriptionPayment.tap_charge_id == charge_id).first()
        if payment is not None and (payment.user_id != user_id or payment.subscription_id != subscription.id):
            return "payment ledger row belongs to another subscription"

        other_event = (
            self.db.query(PaymentEvent.id)
            .filter(
                PaymentEvent.provider == PROVIDER,
                PaymentEvent.charge_id == charge_id,
                or_(
                    and_(PaymentEvent.user_id.isnot(None), PaymentEvent.user_id != user_id),
                    and_(PaymentEvent.subscription_id.isnot(None), PaymentEvent.subscription_id != subscription.id),
                ),
            )
            .first()
        )
        if other_event is not None:
            return "charge was already applied to another subscription"
        return None

    # --------------------------------------------------------------- event log

    def _record_event(
        self,
        charge_id: str,
        charge: TapCharge,
        user_id: UUID,
        subscription_id: UUID,
        source: str,
    ) -> PaymentEvent:
        event = self._find_event(charge_id, charge.status)
        if event is None:
            event = PaymentEvent(provider=PROVIDER, charge_id=charge_id, status=charge.status, payload_json={})
            self.db.add(event)
        event.verified_json = charge.raw
        event.user_id = user_id
        event.subscription_id = subscription_id
        event.amount = charge.amount
        event.currency = charge.currency
        event.source = source
        try:
            self.db.commit()
        except IntegrityError:
            # Concurrent verification inserted the same (provider, charge, status)
            self.db.rollback()
            event = self._find_event(charge_id, charge.status)
        return event

    def _finish_event(self, event: Optional[PaymentEvent], result: Optional[str], error: Optional[str]) -> None:
        if event is None:
            return
        event.processed_at = datetime.now(timezone.utc)
        event.processing_result = result
        event.error_details = error
        self.db.commit()

    # -------------------------------------------------------------- activation

    def _expected_amount(self, subscription: Subscription) -> Optional[Decimal]:
        return _first_amount(subscription.billing_amount_kwd, subscription.base_price_kwd)

    def _validate_capture(self, charge: TapCharge, subscription: Subscription) -> Optional[VerificationOutcome]:
        if charge.status != CAPTURED:
            return VerificationOutcome(
                success=False, status="error", result=INVALID_STATUS,
                error=f"Expected CAPTURED, got {charge.status}",
            )

        expected = self._expected_amount(subscription)
        if expected is not None:
            if charge.amount is None or abs(charge.amount - expected) > self.tolerance:
                return VerificationOutcome(
                    success=False, status="error", result=AMOUNT_MISMATCH,
                    error=f"Expected {expected} {self.currency}, got {charge.amount}",
                )

        if not charge.currency or charge.currency.upper() != self.currency:
            return VerificationOutcome(
                success=False, status="error", result=CURRENCY_MISMATCH,
                error=f"Expected {self.currency}, got {charge.currency}",
            )
        return None

    def _apply_captured(
        self,
        log: "_StepLogger",
        charge_id: str,
        charge: TapCharge,
        subscription: Subscription,
        now: datetime,
    ) -> VerificationOutcome:
        log.info("apply_captured", charge_id=charge_id)

        rejection = self._validate_capture(charge, subscription)
        if rejection is not None:
            log.info(rejection.result, ok=False, charge_id=charge_id)
            rejection.charge_id = charge_id
            rejection.subscription_id = subscription.id
            return rejection

        paid = (
            self.db.query(SubscriptionPayment.id)
            .filter(
                SubscriptionPayment.tap_charge_id == charge_id,
                SubscriptionPayment.subscription_id == subscription.id,
                SubscriptionPayment.status == "paid",
            )
            .first()
        )
        if paid is not None:
            log.info("already_paid", charge_id=charge_id)
            return VerificationOutcome(
                success=True, status="active", subscription_id=subscription.id,
                charge_id=charge_id, result=ALREADY_ACTIVE,
                next_billing_date=subscription.next_billing_date,
                message="Payment verified and subscription activated!",
            )

        next_billing = add_months(now, settings.BILLING_CYCLE_MONTHS)
        was_past_due = subscription.status == "past_due" or subscription.past_due_since is not None

        try:
            subscription.status = "active"
            subscription.start_date = now
            subscription.next_billing_date = next_billing
            subscription.last_verified_charge_id = charge_id
            subscription.last_payment_verified_at = now
            subscription.last_payment_status = CAPTURED
            subscription.tap_charge_id = charge_id
            subscription.tap_subscription_status = CAPTURED
            subscription.past_due_since = None
            subscription.payment_failed_at = None
            subscription.payment_failure_reason = None
            subscription.tap_card_id = None
            subscription.tap_payment_agreement_id = None

            self._upsert_paid_payment(charge_id, charge, subscription, now, next_billing, was_past_due)
            self._apply_discount(log, charge_id, charge, subscription, now)

            user = self.db.query(User).filter(User.id == subscription.user_id).first()
            if user is not None:
                user.status = "active"
                user.payment_deadline = None
                user.activation_completed_at = now

            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            log.error("activation_failed", charge_id=charge_id, error=str(e))
            return VerificationOutcome(
                success=False, status="error", subscription_id=subscription.id,
                charge_id=charge_id, result=ACTIVATION_FAILED, error="Failed to activate subscription",
            )

        log.info("subscription_activated", charge_id=charge_id, subscription_id=str(subscription.id))
        return VerificationOutcome(
            success=True, status="active", subscription_id=subscription.id, charge_id=charge_id,
            result=ACTIVATED, next_billing_date=next_billing,
            message="Payment verified and subscription activated!",
        )

    def _upsert_paid_payment(
        self,
        charge_id: str,
        charge: TapCharge,
        subscription: Subscription,
        now: datetime,
        next_billing: datetime,
        is_renewal: bool,
    ) -> SubscriptionPayment:
        payment = self.db.query(SubscriptionPayment).filter(SubscriptionPayment.tap_charge_id == charge_id).first()
        if payment is None:
            payment = SubscriptionPayment(tap_charge_id=charge_id, user_id=subscription.user_id)
            self.db.add(payment)
        payment.subscription_id = subscription.id
        payment.user_id = subscription.user_id
        payment.amount_kwd = charge.amount if charge.amount is not None else self._expected_amount(subscription)
        payment.status = "paid"
        payment.is_renewal = is_renewal
        payment.billing_period_start = now.date()
        payment.billing_period_end = next_billing.date()
        payment.paid_at = now
        payment.failed_at = None
        payment.failure_reason = None
        payment.payment_metadata = {
            "tap_status": charge.status,
            "verified_at": now.isoformat(),
            "activation_source": FN,
        }
        return payment

    def _apply_discount(
        self,
        log: "_StepLogger",
        charge_id: str,
        charge: TapCharge,
        subscription: Subscription,
        now: datetime,
    ) -> None:
        code_id = subscription.discount_code_id or _parse_uuid(charge.metadata.get("discount_code_id"))
        base = _first_amount(subscription.base_price_kwd, charge.metadata.get("base_price_kwd"))
        billed = _first_amount(subscription.billing_amount_kwd, charge.amount)
        if not code_id or base is None or billed is None or base <= billed:
            return

        record_redemption(
            self.db,
            discount_code_id=code_id,
            subscription_id=subscription.id,
            user_id=subscription.user_id,
            amount_before=base,
            amount_after=billed,
            now=now,
        )
        subscription.discount_code_id = code_id
        subscription.discount_cycles_used = 1
        log.info("discount_redeemed", charge_id=charge_id)

    # ----------------------------------------------------------------- failure

    def _apply_failed(
        self,
        log: "_StepLogger",
        charge_id: str,
        charge: TapCharge,
        subscription: Subscription,
        now: datetime,
    ) -> str:
        log.info("apply_failed", charge_id=charge_id, status=charge.status)
        reason = (charge.raw.get("response") or {}).get("message") or charge.status

        subscription.tap_subscription_status = charge.status
        subscription.last_payment_status = charge.status
        subscription.payment_failed_at = now
        subscription.payment_failure_reason = reason

        payment = self.db.query(SubscriptionPayment).filter(SubscriptionPayment.tap_charge_id == charge_id).first()
        if payment is not None and payment.status != "paid":
            payment.status = "cancelled" if charge.status == "CANCELLED" else "failed"
            payment.failed_at = now
            payment.failure_reason = reason
        self.db.commit()
        return reason

    def _dispatch(self, log: "_StepLogger", step: str, callback: Callable, *args) -> None:
        try:
            callback(*args)
        except Exception as e:
            log.error(f"{step}_error", error=str(e))


class _StepLogger:
    """Structured step logging tied to one verification request."""

    def __init__(self, request_id: str):
        self.request_id = request_id

    def info(self, step: str, ok: bool = True, **fields) -> None:
        logger.info(f"{FN}: {step}", extra=step_fields(FN, step, ok=ok, request_id=self.request_id, **fields))

    def warning(self, step: str, **fields) -> None:
        logger.warning(f"{FN}: {step}", extra=step_fields(FN, step, ok=False, request_id=self.request_id, **fields))

    def error(self, step: str, **fields) -> None:
        logger.error(f"{FN}: {step}", extra=step_fields(FN, step, ok=False, request_id=self.request_id, **fields))


def find_user_for_charge(db: Session, charge: TapCharge) -> Optional[UUID]:
    """
    Webhook helper: the payment ledger first, then the charge metadata.

    The webhook body is unverified at this point; verify() re-checks ownership
    against the charge fetched from Tap.
    """
    payment = db.query(SubscriptionPayment).filter(SubscriptionPayment.tap_charge_id == charge.id).first()
    if payment is not None:
        return payment.user_id
    return _parse_uuid(charge.metadata.get("user_id"))
