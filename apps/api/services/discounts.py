"""
Discount codes and the redemption ledger.

Discounts reduce what the client is billed. They never reduce coach payout:
redemptions are summed per month for reporting only.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional
from uuid import UUID

from sqlalchemy import func
from sqlalchemy.orm import Session

from models import DiscountCode, DiscountRedemption

logger = logging.getLogger(__name__)

_MILLS = Decimal("0.001")

NOT_FOUND = "not_found"
INACTIVE = "inactive"
EXPIRED = "expired"
EXHAUSTED = "exhausted"
# Tap cannot capture a zero-amount charge
ZERO_AMOUNT = "zero_amount"


class DiscountCodeError(Exception):
    def __init__(self, reason: str):
        super().__init__(f"Discount code rejected: {reason}")
        self.reason = reason


@dataclass(frozen=True)
class DiscountQuote:
    discount_code: DiscountCode
    base_price: Decimal
    billing_amount: Decimal

    @property
    def saved(self) -> Decimal:
        return self.base_price - self.billing_amount


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def apply_discount(base_price: Decimal, discount_type: str, discount_value) -> Decimal:
    """Discounted price, floored at zero and rounded to fils."""
    value = Decimal(str(discount_value))
    if discount_type == "percent":
        amount = base_price - base_price * value / Decimal("100")
    elif discount_type == "fixed":
        amount = base_price - value
    else:
        raise ValueError(f"Unknown discount type: {discount_type!r}")
    return max(amount, Decimal("0")).quantize(_MILLS, rounding=ROUND_HALF_UP)


def validate_discount_code(
    db: Session,
    code: str,
    base_price: Decimal,
    now: Optional[datetime] = None,
) -> DiscountQuote:
    """
    Look up a code (case-insensitive) and price it against base_price.

    Raises DiscountCodeError with one of: not_found, inactive, expired, exhausted,
    zero_amount (the code would bring the bill to nothing).
    """
    now = now or datetime.now(timezone.utc)
    normalized = (code or "").strip().upper()
    discount = None
    if normalized:
        discount = db.query(DiscountCode).filter(func.upper(DiscountCode.code) == normalized).first()

    if discount is None:
        raise DiscountCodeError(NOT_FOUND)
    if not discount.is_active:
        raise DiscountCodeError(INACTIVE)
    expires_at = _as_utc(discount.expires_at)
    if expires_at is not None and expires_at <= now:
        raise DiscountCodeError(EXPIRED)
    if discount.max_redemptions is not None and (discount.usage_count or 0) >= discount.max_redemptions:
        raise DiscountCodeError(EXHAUSTED)

    base_price = Decimal(str(base_price))
    billing_amount = apply_discount(base_price, discount.discount_type, discount.discount_value)
    if billing_amount <= 0:
        raise DiscountCodeError(ZERO_AMOUNT)
    return DiscountQuote(discount_code=discount, base_price=base_price, billing_amount=billing_amount)


def record_redemption(
    db: Session,
    *,
    discount_code_id: UUID,
    subscription_id: UUID,
    user_id: UUID,
    amount_before: Decimal,
    amount_after: Decimal,
    now: Optional[datetime] = None,
) -> DiscountRedemption:
    """
    Upsert the redemption for (code, user, subscription) and bump the code's usage
    count the first time. Does not commit.
    """
    now = now or datetime.now(timezone.utc)
    amount_before = Decimal(str(amount_before)).quantize(_MILLS)
    amount_after = Decimal(str(amount_after)).quantize(_MILLS)

    redemption = (
        db.query(DiscountRedemption)
        .filter(
            DiscountRedemption.discount_code_id == discount_code_id,
            DiscountRedemption.user_id == user_id,
            DiscountRedemption.subscription_id == subscription_id,
        )
        .first()
    )
    if redemption is None:
        redemption = DiscountRedemption(
            discount_code_id=discount_code_id,
            subscription_id=subscription_id,
            user_id=user_id,
        )
        db.add(redemption)
        discount = db.query(DiscountCode).filter(DiscountCode.id == discount_code_id).first()
        if discount is not None:
            discount.usage_count = (discount.usage_count or 0) + 1

    redemption.amount_before_kwd = amount_before
    redemption.amount_after_kwd = amount_after
    redemption.total_saved_kwd = amount_before - amount_after
    redemption.cycles_applied = 1
    redemption.last_applied_at = now
    redemption.status = "active"

    logger.info(
        f"Discount redeemed: code={discount_code_id} subscription={subscription_id} "
        f"saved={redemption.total_saved_kwd}"
    )
    return redemption
