"""
Subscription lifecycle: cancellation and the daily billing sweeps.

Billing is manual (no stored cards): the client pays each cycle through a new
charge. The sweeps move subscriptions that were not renewed through
past_due -> cancelled and hard-delete cancelled subscriptions once their
end_date has passed.
"""

from __future__ import annotations

import calendar
import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from core.config import settings
from core.logging import step_fields
from models import PaymentEvent, Subscription, SubscriptionAddon, SubscriptionPayment, User
from services.email_service import EmailService, email_service, log_notification, recently_notified
from services.tap_gateway import TapClient, TapGatewayError

logger = logging.getLogger(__name__)

REMINDER_DAYS = (7, 3, 1)
REMINDER_COOLDOWN = timedelta(hours=20)


class NoActiveSubscription(Exception):
    pass


def add_months(value: datetime, months: int) -> datetime:
    """Same day-of-month `months` later, clamped to the month's last day."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def cancel_subscription(
    db: Session,
    user_id: UUID,
    reason: Optional[str] = None,
    cancelled_by: str = "user",
    gateway: Optional[TapClient] = None,
    now: Optional[datetime] = None,
) -> Subscription:
    """
    Cancel the user's active subscription at the end of the paid period.

    The gateway-side recurring subscription (if any) is deleted first on a
    best-effort basis; a gateway failure is logged and cancellation proceeds.
    """
    now = now or datetime.now(timezone.utc)
    subscription = (
        db.query(Subscription)
        .filter(Subscription.user_id == user_id, Subscription.status == "active")
        .order_by(Subscription.created_at.desc())
        .first()
    )
    if subscription is None:
        raise NoActiveSubscription(str(user_id))

    if subscription.tap_subscription_id:
        try:
            (gateway or TapClient()).delete_subscription(subscription.tap_subscription_id)
            logger.info(f"Tap subscription cancelled: {subscription.tap_subscription_id}")
        except TapGatewayError as e:
            logger.error(
                f"Tap subscription deletion failed, cancelling locally: {e}",
                extra=step_fields("cancel-subscription", "tap_delete", ok=False, subscription_id=str(subscription.id)),
            )

    subscription.status = "cancelled"
    subscription.cancel_at_period_end = True
    subscription.cancelled_at = now
    subscription.cancellation_reason = reason or (
        "Admin cancelled subscription" if cancelled_by == "admin" else "User requested cancellation"
    )
    subscription.end_date = _as_utc(subscription.next_billing_date) or now + timedelta(
        days=settings.CANCELLATION_FALLBACK_DAYS
    )
    db.commit()

    logger.info(
        "Subscription cancelled",
        extra=step_fields(
            "cancel-subscription", "cancelled", ok=True,
            subscription_id=str(subscription.id), cancelled_by=cancelled_by,
            end_date=subscription.end_date.isoformat(),
        ),
    )
    return subscription


def process_billing_reminders(
    db: Session,
    now: Optional[datetime] = None,
    mailer: Optional[EmailService] = None,
) -> Dict[str, int]:
    """Daily sweep over active and past-due subscriptions."""
    now = now or datetime.now(timezone.utc)
    mailer = mailer or email_service
    results = {
        "processed": 0,
        "marked_past_due": 0,
        "cancelled_after_grace": 0,
        "reminders_sent": 0,
        "errors": 0,
    }

    subscriptions = (
        db.query(Subscription)
        .filter(Subscription.status.in_(("active", "past_due")), Subscription.next_billing_date.isnot(None))
        .all()
    )

    for sub in subscriptions:
        results["processed"] += 1
        user = db.query(User).filter(User.id == sub.user_id).first()
        if user is None or user.payment_exempt:
            continue

        service_name = sub.service.name if sub.service else "your plan"
        due = _as_utc(sub.next_billing_date)
        grace_days = sub.grace_period_days or settings.GRACE_PERIOD_DAYS

        if sub.status == "active" and due < now:
            sub.status = "past_due"
            sub.past_due_since = now
            db.commit()
            results["marked_past_due"] += 1
            logger.info(f"Subscription {sub.id} marked past_due")
            if user.email:
                result = mailer.send_past_due_notice(user.email, user.full_name, service_name, grace_days)
                log_notification(db, user.id, "billing_past_due", result, now)
                db.commit()
            continue

        if sub.status == "past_due":
            since = _as_utc(sub.past_due_since) or due
            if now - since >= timedelta(days=grace_days):
                sub.status = "cancelled"
                sub.cancelled_at = now
                sub.cancellation_reason = "Payment not received within grace period"
                sub.end_date = now
                user.status = "inactive"
                db.commit()
                results["cancelled_after_grace"] += 1
                logger.info(f"Grace period expired for subscription {sub.id}, cancelled")
            continue

        days_until_due = (due - now).days
        if days_until_due not in REMINDER_DAYS or not user.email:
            continue
        reminder_type = f"billing_reminder_{days_until_due}"
        if recently_notified(db, user.id, reminder_type, REMINDER_COOLDOWN, now):
            continue

        amount = sub.billing_amount_kwd if sub.billing_amount_kwd is not None else sub.base_price_kwd
        result = mailer.send_renewal_reminder(user.email, user.full_name, service_name, amount, due, days_until_due)
        log_notification(db, user.id, reminder_type, result, now)
        db.commit()
        if result.success:
            results["reminders_sent"] += 1
        else:
            results["errors"] += 1

    logger.info("Billing reminders processed", extra=step_fields("billing-reminders", "summary", ok=True, **results))
    return results


def cleanup_cancelled_subscriptions(db: Session, now: Optional[datetime] = None) -> int:
    """
    Hard-delete cancelled subscriptions whose end_date has passed.

    Payment ledger rows and payment events are kept for history with their
    subscription reference cleared.
    """
    now = now or datetime.now(timezone.utc)
    expired = (
        db.query(Subscription)
        .filter(
            Subscription.status == "cancelled",
            Subscription.end_date.isnot(None),
            Subscription.end_date <= now,
        )
        .all()
    )
    if not expired:
        return 0

    ids = [s.id for s in expired]
    db.query(SubscriptionAddon).filter(SubscriptionAddon.subscription_id.in_(ids)).delete(synchronize_session=False)
    db.query(SubscriptionPayment).filter(SubscriptionPayment.subscription_id.in_(ids)).update(
        {SubscriptionPayment.subscription_id: None}, synchronize_session=False
    )
    db.query(PaymentEvent).filter(PaymentEvent.subscription_id.in_(ids)).update(
        {PaymentEvent.subscription_id: None}, synchronize_session=False
    )
    for sub in expired:
        db.delete(sub)
    db.commit()

    logger.info(f"Deleted {len(ids)} cancelled subscriptions past their end date")
    return len(ids)
