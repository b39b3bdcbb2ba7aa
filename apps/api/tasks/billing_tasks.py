"""
Billing Tasks

Scheduled sweeps and payout runs. Runs via Celery Beat scheduler.
"""

from datetime import date, datetime, timedelta, timezone
from typing import Dict, Optional
from uuid import UUID

from celery import Task
from sqlalchemy.orm import Session

from core.database import get_db_sync
from services.billing_notifications import notify_coach_payouts, notify_payment_confirmed, notify_payment_failed
from services.coach_payments import calculate_monthly_coach_payments, first_of_month
from services.subscription_lifecycle import cleanup_cancelled_subscriptions, process_billing_reminders
from tasks import celery_app
import logging

logger = logging.getLogger(__name__)


def _target_month(month: Optional[str], previous_month: bool) -> date:
    if month:
        return first_of_month(date.fromisoformat(month))
    current = first_of_month(datetime.now(timezone.utc).date())
    if previous_month:
        return first_of_month(current - timedelta(days=1))
    return current


@celery_app.task(name="tasks.calculate_monthly_coach_payments", bind=True)
def calculate_monthly_coach_payments_task(
    self: Task,
    month: Optional[str] = None,
    previous_month: bool = False,
    notify: bool = False,
) -> Dict:
    """
    Calculate and persist coach payouts for a month, then optionally queue
    the coach statements.
    """
    payment_month = _target_month(month, previous_month)
    db: Session = get_db_sync()
    try:
        summary = calculate_monthly_coach_payments(db, payment_month)
    finally:
        db.close()

    if notify:
        send_coach_payment_notifications_task.delay(payment_month.isoformat())
    return summary


@celery_app.task(name="tasks.send_coach_payment_notifications", bind=True)
def send_coach_payment_notifications_task(self: Task, month: str) -> Dict:
    sent = notify_coach_payouts(date.fromisoformat(month))
    return {"status": "success", "month": month, "sent": sent}


@celery_app.task(name="tasks.process_billing_reminders", bind=True)
def process_billing_reminders_task(self: Task) -> Dict:
    db: Session = get_db_sync()
    try:
        return process_billing_reminders(db)
    finally:
        db.close()


@celery_app.task(name="tasks.cleanup_cancelled_subscriptions", bind=True)
def cleanup_cancelled_subscriptions_task(self: Task) -> Dict:
    db: Session = get_db_sync()
    try:
        deleted = cleanup_cancelled_subscriptions(db)
    finally:
        db.close()
    return {"status": "success", "deleted": deleted}


@celery_app.task(name="tasks.send_payment_confirmation", bind=True, max_retries=3)
def send_payment_confirmation_task(self: Task, subscription_id: str, next_billing_date: Optional[str] = None) -> Dict:
    """Resend a confirmation email (e.g. from an admin action)."""
    next_billing = datetime.fromisoformat(next_billing_date) if next_billing_date else None
    sent = notify_payment_confirmed(UUID(subscription_id), next_billing)
    return {"status": "sent" if sent else "skipped", "subscription_id": subscription_id}


@celery_app.task(name="tasks.send_payment_failed", bind=True, max_retries=3)
def send_payment_failed_task(self: Task, subscription_id: str, reason: Optional[str] = None) -> Dict:
    sent = notify_payment_failed(UUID(subscription_id), reason)
    return {"status": "sent" if sent else "skipped", "subscription_id": subscription_id}
