"""
Payments router: charge creation, verification and the Tap webhook.

Every activation goes through PaymentVerifier; the webhook is only a trigger
and is never trusted on its own.
"""

from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime, timezone

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from sqlalchemy.orm import Session

from core.auth import get_current_user
from core.config import settings
from core.database import get_db
from core.exceptions import (
    APIException,
    BadGatewayError,
    ForbiddenError,
    NotFoundError,
    ServiceUnavailableError,
    ValidationError,
)
from models import Subscription, SubscriptionPayment, User
from schemas import CreateChargeResponse, VerifyPaymentRequest
from services.billing_notifications import notify_payment_confirmed, notify_payment_failed
from services.payment_verification import PaymentVerifier, VerificationOutcome, find_user_for_charge
from services.tap_gateway import TapCharge, TapClient, TapGatewayError, get_tap_client, verify_webhook_signature

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/payments", tags=["payments"])


def _verifier(db: Session, gateway: TapClient, background_tasks: BackgroundTasks) -> PaymentVerifier:
    return PaymentVerifier(
        db,
        gateway=gateway,
        on_activated=lambda sub_id, next_billing: background_tasks.add_task(
            notify_payment_confirmed, sub_id, next_billing
        ),
        on_failed=lambda sub_id, reason: background_tasks.add_task(notify_payment_failed, sub_id, reason),
    )


def _render(outcome: VerificationOutcome) -> dict:
    if not outcome.success:
        raise APIException(
            status_code=outcome.http_status,
            detail=outcome.error or "Payment verification failed",
            error_code=(outcome.result or "verification_failed").upper(),
        )
    return outcome.to_dict()


@router.post("/verify")
def verify_payment(
    request: VerifyPaymentRequest,
    background_tasks: BackgroundTasks,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    gateway: TapClient = Depends(get_tap_client),
):
    """
    Verify a charge with Tap and activate the caller's subscription.

    Safe to call repeatedly: repeated calls for an activated charge return
    the same result without touching the subscription again.
    """
    if request.user_id != current_user.id:
        raise ForbiddenError("User mismatch")

    try:
        outcome = _verifier(db, gateway, background_tasks).verify(
            current_user.id, charge_id=request.charge_id, source=request.source
        )
    except TapGatewayError:
        raise BadGatewayError()
    return _render(outcome)


@router.post("/charge", response_model=CreateChargeResponse)
def create_charge(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    gateway: TapClient = Depends(get_tap_client),
):
    """Create a Tap charge for the caller's pending or past-due subscription."""
    subscription = (
        db.query(Subscription)
        .filter(Subscription.user_id == current_user.id, Subscription.status.in_(("pending", "past_due")))
        .order_by(Subscription.created_at.desc())
        .first()
    )
    if subscription is None:
        raise NotFoundError("Subscription awaiting payment", str(current_user.id))
    if not gateway.secret_key:
        raise ServiceUnavailableError("Payment provider not configured")

    amount = subscription.billing_amount_kwd
    if amount is None:
        amount = subscription.base_price_kwd
    if amount is None or amount <= 0:
        raise ValidationError("Subscription has no billable amount", field="amount")

    is_renewal = subscription.status == "past_due"
    order_ref = f"ord_{subscription.id.hex[:12]}_{uuid.uuid4().hex[:8]}"
    full_name = (current_user.full_name or "").strip() or (current_user.email or "Client")
    first, _, last = full_name.partition(" ")

    try:
        charge = gateway.create_charge(
            amount=amount,
            currency=settings.PLATFORM_CURRENCY,
            customer={"first_name": first, "last_name": last, "email": current_user.email or ""},
            description=subscription.service.name if subscription.service else "Coaching subscription",
            order_ref=order_ref,
            metadata={
                "user_id": str(current_user.id),
                "service_id": str(subscription.service_id),
                "is_renewal": "true" if is_renewal else "false",
                "discount_code_id": str(subscription.discount_code_id or ""),
                "base_price_kwd": str(subscription.base_price_kwd if subscription.base_price_kwd is not None else amount),
                "billing_amount_kwd": str(amount),
            },
            redirect_url=f"{settings.APP_BASE_URL}/payment-return",
        )
    except TapGatewayError:
        raise BadGatewayError("Failed to create payment. Please try again or contact support.")

    if not charge.id:
        raise BadGatewayError("Payment provider returned no charge id")

    subscription.tap_charge_id = charge.id
    db.add(
        SubscriptionPayment(
            subscription_id=subscription.id,
            user_id=current_user.id,
            tap_charge_id=charge.id,
            amount_kwd=amount,
            status="initiated",
            is_renewal=is_renewal,
            payment_metadata={"order_ref": order_ref, "created_at": datetime.now(timezone.utc).isoformat()},
        )
    )
    db.commit()

    logger.info(f"Tap charge created: user={current_user.id} charge={charge.id} amount={amount}")
    return CreateChargeResponse(
        charge_id=charge.id,
        payment_url=charge.transaction_url,
        amount_kwd=amount,
        status=charge.status,
    )


@router.post("/webhooks/tap")
async def tap_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    gateway: TapClient = Depends(get_tap_client),
):
    """
    Tap webhook endpoint.

    Checks the hashstring signature, then re-verifies the charge through the
    same pipeline the client uses.
    """
    payload = await request.body()
    try:
        body = json.loads(payload or b"{}")
    except ValueError:
        raise ValidationError("Invalid webhook payload", field="body")
    if not isinstance(body, dict) or not body.get("id"):
        raise ValidationError("Webhook payload has no charge id", field="id")

    if not verify_webhook_signature(body, request.headers.get("hashstring"), settings.TAP_WEBHOOK_SECRET):
        logger.warning(f"Rejected Tap webhook with invalid signature for charge {body.get('id')}")
        raise APIException(status_code=400, detail="Invalid webhook signature", error_code="INVALID_SIGNATURE")

    charge = TapCharge.from_payload(body)
    user_id = find_user_for_charge(db, charge)
    if user_id is None:
        logger.warning(f"Tap webhook for unknown charge {charge.id}")
        return {"ok": True, "matched_user": False}

    try:
        outcome = _verifier(db, gateway, background_tasks).verify(user_id, charge_id=charge.id, source="webhook")
    except TapGatewayError:
        raise BadGatewayError()
    return {"ok": True, "result": outcome.to_dict()}
