"""
Email Service

Sends transactional billing emails through the Resend HTTP API.
Callers treat delivery as fire-and-forget: a failed send is logged and
reported in the returned EmailResult, never raised into a transaction.
"""

import html
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import List, Optional
from uuid import UUID

import requests
from sqlalchemy.orm import Session

from core.config import settings
from models import EmailNotification

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EmailResult:
    success: bool
    id: Optional[str] = None
    error: Optional[str] = None


class EmailService:
    """Service for sending emails"""

    def __init__(self):
        self.api_key = settings.RESEND_API_KEY
        self.api_url = settings.RESEND_API_URL
        self.from_email = settings.EMAIL_FROM
        self.from_billing = settings.EMAIL_FROM_BILLING
        self.reply_to = settings.SUPPORT_EMAIL
        self.enabled = settings.EMAIL_ENABLED
        self.timeout = settings.EXTERNAL_API_TIMEOUT

    def send_email(
        self,
        to_email: str,
        subject: str,
        html_content: str,
        from_email: Optional[str] = None,
        reply_to: Optional[str] = None,
    ) -> EmailResult:
        """
        Send an email.

        Returns an EmailResult; never raises.
        """
        if not self.enabled:
            logger.info(f"Email disabled, would send to {to_email}: {subject}")
            return EmailResult(success=False, error="email_disabled")

        if not self.api_key:
            logger.warning(f"RESEND_API_KEY not configured, cannot send to {to_email}: {subject}")
            return EmailResult(success=False, error="email_not_configured")

        body = {
            "from": from_email or self.from_email,
            "to": [to_email],
            "subject": subject,
            "html": html_content,
        }
        if reply_to or self.reply_to:
            body["reply_to"] = reply_to or self.reply_to

        try:
            r = requests.post(
                self.api_url,
                json=body,
                headers={"Authorization": f"Bearer {self.api_key}"},
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as e:
            logger.error(f"Error sending email to {to_email}: {str(e)}")
            return EmailResult(success=False, error=str(e))

        if r.status_code >= 300:
            logger.error(f"Email API returned {r.status_code} for {to_email}: {r.text[:300]}")
            return EmailResult(success=False, error=f"http_{r.status_code}")

        try:
            message_id = (r.json() or {}).get("id")
        except ValueError:
            message_id = None
        return EmailResult(success=True, id=message_id)

    def send_payment_confirmation(
        self,
        to_email: str,
        full_name: Optional[str],
        service_name: str,
        next_billing_date: Optional[datetime],
        is_team_plan: bool = False,
    ) -> EmailResult:
        renewal = next_billing_date.strftime("%B %d, %Y") if next_billing_date else "-"
        if is_team_plan:
            next_steps = "Access your team training plan in your dashboard."
        else:
            next_steps = "Your coach will reach out with instructions within 24-48 hours."

        html_parts = [
            _greeting(full_name),
            f"<p><strong>Payment confirmed.</strong> Your <strong>{_e(service_name)}</strong> subscription is now active.</p>",
            _details([("Plan", service_name), ("Renewal date", renewal)]),
            f"<p>{next_steps}</p>",
            _button("Go to Dashboard", f"{settings.APP_BASE_URL}/dashboard"),
        ]
        return self.send_email(
            to_email,
            f"Welcome to {service_name} - Payment Confirmed",
            "".join(html_parts),
            from_email=self.from_billing,
        )

    def send_payment_failed(
        self,
        to_email: str,
        full_name: Optional[str],
        service_name: str,
        reason: Optional[str] = None,
    ) -> EmailResult:
        html_parts = [
            _greeting(full_name),
            f"<p>We could not process your payment for <strong>{_e(service_name)}</strong>.</p>",
        ]
        if reason:
            html_parts.append(f"<p>Reason: {_e(reason)}</p>")
        html_parts.append("<p>No changes were made to your account. You can retry from your dashboard.</p>")
        html_parts.append(_button("Retry Payment", f"{settings.APP_BASE_URL}/dashboard"))
        return self.send_email(
            to_email,
            "Payment unsuccessful - action needed",
            "".join(html_parts),
            from_email=self.from_billing,
        )

    def send_renewal_reminder(
        self,
        to_email: str,
        full_name: Optional[str],
        service_name: str,
        amount_kwd,
        due_date: datetime,
        days_until_due: int,
    ) -> EmailResult:
        day_word = "day" if days_until_due == 1 else "days"
        html_parts = [
            _greeting(full_name),
            f"<p>Your <strong>{_e(service_name)}</strong> subscription renews in {days_until_due} {day_word}.</p>",
            _details([
                ("Amount", f"{amount_kwd} KWD"),
                ("Due date", due_date.strftime("%B %d, %Y")),
            ]),
            _button("Pay Now", f"{settings.APP_BASE_URL}/dashboard"),
        ]
        return self.send_email(
            to_email,
            f"Your subscription renews in {days_until_due} {day_word}",
            "".join(html_parts),
            from_email=self.from_billing,
        )

    def send_past_due_notice(
        self,
        to_email: str,
        full_name: Optional[str],
        service_name: str,
        grace_period_days: int,
    ) -> EmailResult:
        html_parts = [
            _greeting(full_name),
            f"<p>Your <strong>{_e(service_name)}</strong> payment is overdue.</p>",
            f"<p>Your access stays open for {grace_period_days} more days. After that the subscription is cancelled.</p>",
            _button("Pay Now", f"{settings.APP_BASE_URL}/dashboard"),
        ]
        return self.send_email(
            to_email,
            "Payment overdue - your subscription is at risk",
            "".join(html_parts),
            from_email=self.from_billing,
        )

    def send_coach_payout_summary(
        self,
        to_email: str,
        coach_name: Optional[str],
        month_label: str,
        total_clients: int,
        base_payout_kwd,
        addon_payout_kwd,
        total_payment_kwd,
    ) -> EmailResult:
        """Monthly payout statement for a coach."""
        html_parts = [
            _greeting(coach_name),
            f"<p>Your payout for <strong>{_e(month_label)}</strong> has been calculated.</p>",
            _details([
                ("Active clients", str(total_clients)),
                ("Base payout", f"{base_payout_kwd} KWD"),
                ("Add-on payout", f"{addon_payout_kwd} KWD"),
                ("Total", f"{total_payment_kwd} KWD"),
            ]),
        ]
        return self.send_email(
            to_email,
            f"Your {month_label} payout summary",
            "".join(html_parts),
        )


def _e(value) -> str:
    return html.escape(str(value or ""))


def _greeting(name: Optional[str]) -> str:
    return f"<h2>Hi {_e((name or '').strip() or 'there')},</h2>"


def _details(rows: List[tuple]) -> str:
    cells = "".join(f"<tr><td>{_e(label)}</td><td><strong>{_e(value)}</strong></td></tr>" for label, value in rows)
    return f"<table>{cells}</table>"


def _button(text: str, href: str) -> str:
    return f'<p><a href="{_e(href)}">{_e(text)}</a></p>'


def recently_notified(
    db: Session,
    user_id: UUID,
    notification_type: str,
    within: timedelta,
    now: Optional[datetime] = None,
) -> bool:
    now = now or datetime.now(timezone.utc)
    return (
        db.query(EmailNotification.id)
        .filter(
            EmailNotification.user_id == user_id,
            EmailNotification.notification_type == notification_type,
            EmailNotification.status == "sent",
            EmailNotification.sent_at >= now - within,
        )
        .first()
        is not None
    )


def log_notification(
    db: Session,
    user_id: UUID,
    notification_type: str,
    result: EmailResult,
    now: Optional[datetime] = None,
) -> EmailNotification:
    """Record a send attempt. Does not commit."""
    row = EmailNotification(
        user_id=user_id,
        notification_type=notification_type,
        status="sent" if result.success else "failed",
        sent_at=now or datetime.now(timezone.utc),
    )
    db.add(row)
    return row


# Module-level instance used by routers and tasks
email_service = EmailService()
