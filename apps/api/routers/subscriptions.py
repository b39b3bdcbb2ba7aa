"""
Subscription self-service: view and cancel.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from core.auth import get_current_user
from core.database import get_db
from core.exceptions import ForbiddenError, NotFoundError
from models import Subscription, User
from schemas import CancelSubscriptionRequest, SubscriptionResponse
from services.subscription_lifecycle import NoActiveSubscription, cancel_subscription
from services.tap_gateway import TapClient, get_tap_client

router = APIRouter(prefix="/v1/subscriptions", tags=["subscriptions"])


@router.get("/me", response_model=Optional[SubscriptionResponse])
def get_my_subscription(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return (
        db.query(Subscription)
        .filter(Subscription.user_id == current_user.id)
        .order_by(Subscription.created_at.desc())
        .first()
    )


@router.post("/cancel", response_model=SubscriptionResponse)
def cancel(
    request: CancelSubscriptionRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    gateway: TapClient = Depends(get_tap_client),
):
    """
    Cancel at period end. Users cancel their own subscription; admins may
    cancel anyone's by passing user_id.
    """
    target_user_id = request.user_id or current_user.id
    if target_user_id != current_user.id and current_user.role != "admin":
        raise ForbiddenError("You can only cancel your own subscription")

    try:
        return cancel_subscription(
            db,
            target_user_id,
            reason=request.reason,
            cancelled_by="admin" if target_user_id != current_user.id else "user",
            gateway=gateway,
        )
    except NoActiveSubscription:
        raise NotFoundError("Active subscription", str(target_user_id))
