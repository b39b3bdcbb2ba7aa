"""
Onboarding router.

Client submits the plan they want; we price it, apply an optional discount
code, pick a coach and create the pending subscription that the first
payment will activate.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from core.auth import get_current_user
from core.config import settings
from core.database import get_db
from core.exceptions import ConflictError, NotFoundError, ValidationError
from models import Service, Subscription, User
from schemas import (
    DiscountValidateRequest,
    DiscountValidateResponse,
    OnboardingSubmit,
    SubscriptionResponse,
)
from services.catalog import active_price
from services.coach_assignment import assign_coach
from services.discounts import DiscountCodeError, validate_discount_code

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/onboarding", tags=["onboarding"])

PAYMENT_DEADLINE_DAYS = 7


def _load_priced_service(db: Session, service_id):
    service = db.query(Service).filter(Service.id == service_id, Service.is_active.is_(True)).first()
    if service is None:
        raise NotFoundError("Service", str(service_id))
    price = active_price(db, service.id)
    if price is None:
        raise ValidationError("Service has no active price", field="service_id")
    return service, price


@router.post("/submit", response_model=SubscriptionResponse, status_code=201)
def submit_onboarding(
    request: OnboardingSubmit,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Create the pending subscription for the caller."""
    existing = (
        db.query(Subscription)
        .filter(Subscription.user_id == current_user.id, Subscription.status.in_(("pending", "active", "past_due")))
        .first()
    )
    if existing is not None:
        raise ConflictError("User already has an open subscription")

    service, price = _load_priced_service(db, request.service_id)
    base_price = price.price_kwd
    billing_amount = base_price
    discount_code_id = None

    if request.discount_code:
        try:
            quote = validate_discount_code(db, request.discount_code, base_price)
        except DiscountCodeError as e:
            raise ValidationError(
                f"Invalid discount code: {e.reason}",
                error_code=f"DISCOUNT_{e.reason.upper()}",
            )
        billing_amount = quote.billing_amount
        discount_code_id = quote.discount_code.id

    now = datetime.now(timezone.utc)
    assignment = assign_coach(
        db,
        service,
        focus_areas=request.focus_areas,
        requested_coach_id=request.requested_coach_id if request.coach_preference_type == "specific" else None,
        preference_type=request.coach_preference_type,
        now=now,
    )

    subscription = Subscription(
        user_id=current_user.id,
        service_id=service.id,
        coach_id=assignment.coach_user_id,
        coach_assignment_method=assignment.method,
        needs_coach_assignment=assignment.needs_manual_assignment,
        status="pending",
        base_price_kwd=base_price,
        billing_amount_kwd=billing_amount,
        discount_code_id=discount_code_id,
        grace_period_days=settings.GRACE_PERIOD_DAYS,
    )
    db.add(subscription)
    current_user.status = "pending"
    current_user.payment_deadline = now + timedelta(days=PAYMENT_DEADLINE_DAYS)
    db.commit()
    db.refresh(subscription)

    logger.info(
        f"Onboarding submitted: user={current_user.id} service={service.id} "
        f"coach={assignment.coach_user_id} method={assignment.method}"
    )
    return subscription


@router.post("/discount/validate", response_model=DiscountValidateResponse)
def validate_discount(
    request: DiscountValidateRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    _, price = _load_priced_service(db, request.service_id)
    try:
        quote = validate_discount_code(db, request.code, price.price_kwd)
    except DiscountCodeError as e:
        logger.info(f"Invalid discount code attempt by user {current_user.id}: {e.reason}")
        return DiscountValidateResponse(valid=False, reason=e.reason)
    return DiscountValidateResponse(
        valid=True,
        code_id=quote.discount_code.id,
        base_price_kwd=quote.base_price,
        billing_amount_kwd=quote.billing_amount,
    )
