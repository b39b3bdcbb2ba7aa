"""
Billing emails sent after the fact.

Each function opens its own session so it can run after the request's
transaction has committed (FastAPI background task or Celery task).
Delivery failures are logged and recorded in email_notifications; they never
propagate back to the billing operation that triggered them.
"""

import logging
from datetime import date, datetime
from typing import Optional
from uuid import UUID

from core.database import get_db_sync
from models import Coach, MonthlyCoachPayment, Subscription, User
from services.email_service import EmailService, email_service, log_notification

logger = logging.getLogger(__name__)


def notify_payment_confirmed(
    subscription_id: UUID,
    next_billing_date: Optional[datetime],
    mailer: Optional[EmailService] = None,
) -> bool:
    mailer = mailer or email_service
    db = get_db_sync()
    try:
        sub = db.query(Subscription).filter(Subscription.id == subscription_id).first()
        user = db.query(User).filter(User.id == sub.user_id).first() if sub else None
        if sub is None or user is None or not user.email or sub.service is None:
            logger.info(f"Skipping confirmation email for subscription {subscription_id}: missing recipient data")
            return False

        result = mailer.send_payment_confirmation(
            user.email,
            user.full_name,
            sub.service.name,
            next_billing_date,
            is_team_plan=sub.service.service_type == "team",
        )
        log_notification(db, user.id, "payment_confirmation", result)
        db.commit()
        if not result.success:
            logger.warning(f"Confirmation email not sent for subscription {subscription_id}: {result.error}")
        return result.success
    finally:
        db.close()


def notify_payment_failed(
    subscription_id: UUID,
    reason: Optional[str],
    mailer: Optional[EmailService] = None,
) -> bool:
    mailer = mailer or email_service
    db = get_db_sync()
    try:
        sub = db.query(Subscription).filter(Subscription.id == subscription_id).first()
        user = db.query(User).filter(User.id == sub.user_id).first() if sub else None
        if sub is None or user is None or not user.email:
            return False

        service_name = sub.service.name if sub.service else "your plan"
        result = mailer.send_payment_failed(user.email, user.full_name, service_name, reason)
        log_notification(db, user.id, "payment_failed", result)
        db.commit()
        return result.success
    finally:
        db.close()


def notify_coach_payouts(payment_month: date, mailer: Optional[EmailService] = None) -> int:
    """Send each coach their payout statement for the month. Returns emails sent."""
    mailer = mailer or email_service
    db = get_db_sync()
    sent = 0
    try:
        rows = (
            db.query(MonthlyCoachPayment, Coach)
            .join(Coach, Coach.id == MonthlyCoachPayment.coach_id)
            .filter(MonthlyCoachPayment.payment_month == payment_month)
            .all()
        )
        month_label = payment_month.strftime("%B %Y")
        for payment, coach in rows:
            user = coach.user
            if user is None or not user.email:
                continue
            result = mailer.send_coach_payout_summary(
                user.email,
                coach.display_name or user.full_name,
                month_label,
                payment.total_clients,
                payment.base_payout_kwd,
                payment.addon_payout_kwd,
                payment.total_payment,
            )
            log_notification(db, user.id, "coach_payout_summary", result)
            if result.success:
                sent += 1
        db.commit()
        logger.info(f"Coach payout notifications for {month_label}: {sent}/{len(rows)} sent")
        return sent
    finally:
        db.close()
