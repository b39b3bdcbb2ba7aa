"""
Monthly coach payment run.

Loads the payout snapshot for a month, runs the calculator and upserts one
monthly_coach_payments row per (payment_month, coach). Re-running the same
month overwrites the previous rows, so a failed run is simply re-run.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from core.logging import step_fields
from models import (
    AddonPayoutRule,
    AddonService,
    Coach,
    DiscountRedemption,
    MonthlyCoachPayment,
    PayoutRule,
    Service,
    ServicePricing,
    Subscription,
    SubscriptionAddon,
    User,
)
from services.payout_calculator import (
    FN,
    AddonPricingRef,
    AddonRow,
    CoachRef,
    PayoutPolicy,
    PayoutResult,
    PayoutRuleView,
    PayoutSnapshot,
    ServiceRef,
    SubscriptionRow,
    calculate_payouts,
    to_decimal,
)

logger = logging.getLogger(__name__)

_MILLS = Decimal("0.001")


class PayoutCalculationError(Exception):
    """The run could not read or write its tables; nothing was committed."""


def first_of_month(value: Optional[date] = None) -> date:
    value = value or datetime.now(timezone.utc).date()
    return value.replace(day=1)


def month_bounds(payment_month: date) -> Tuple[datetime, datetime]:
    """[start, end) of the month in UTC."""
    start = datetime.combine(first_of_month(payment_month), time.min, tzinfo=timezone.utc)
    next_month = (start.replace(day=28) + timedelta(days=4)).replace(day=1)
    return start, next_month


def _money(value: Decimal) -> Decimal:
    return to_decimal(value).quantize(_MILLS)


def load_payout_snapshot(db: Session, payment_month: date) -> PayoutSnapshot:
    start, end = month_bounds(payment_month)

    service_prices = {
        p.service_id: to_decimal(p.price_kwd)
        for p in db.query(ServicePricing).filter(ServicePricing.is_active.is_(True)).all()
    }
    payout_rules = {
        r.service_id: PayoutRuleView(payout_type=r.primary_payout_type, payout_value=to_decimal(r.primary_payout_value))
        for r in db.query(PayoutRule).all()
    }
    addon_pricing = {
        a.id: AddonPricingRef(addon_id=a.id, code=a.code, price_kwd=to_decimal(a.price_kwd))
        for a in db.query(AddonService).filter(AddonService.is_active.is_(True)).all()
    }
    addon_rules = {
        r.addon_id: PayoutRuleView(
            payout_type=r.payout_type,
            payout_value=to_decimal(r.payout_value),
            recipient_role=r.payout_recipient_role,
        )
        for r in db.query(AddonPayoutRule).all()
    }

    logger.info(
        "Pricing data loaded",
        extra=step_fields(
            FN, "data_loaded", ok=True,
            service_pricing=len(service_prices), payout_rules=len(payout_rules),
            addon_pricing=len(addon_pricing), addon_payout_rules=len(addon_rules),
        ),
    )

    coach_rows = (
        db.query(Coach)
        .join(User, User.id == Coach.user_id)
        .filter(User.role == "coach")
        .order_by(Coach.created_at, Coach.id)
        .all()
    )
    coaches = [CoachRef(coach_id=c.id, user_id=c.user_id, name=c.display_name) for c in coach_rows]

    services = {
        s.id: ServiceRef(service_id=s.id, service_type=s.service_type, delivery_mode=s.delivery_mode)
        for s in db.query(Service).all()
    }

    sub_rows = (
        db.query(Subscription.id, Subscription.coach_id, Subscription.service_id, User.payment_exempt)
        .join(User, User.id == Subscription.user_id)
        .filter(Subscription.status == "active")
        .all()
    )
    subscriptions = [
        SubscriptionRow(subscription_id=sid, coach_user_id=coach_id, service_id=service_id, payment_exempt=bool(exempt))
        for sid, coach_id, service_id, exempt in sub_rows
    ]

    discounts: Dict[Any, Decimal] = {}
    redemptions = (
        db.query(DiscountRedemption)
        .filter(DiscountRedemption.last_applied_at >= start, DiscountRedemption.last_applied_at < end)
        .all()
    )
    for dr in redemptions:
        if dr.subscription_id is None:
            continue
        discounts[dr.subscription_id] = discounts.get(dr.subscription_id, Decimal("0")) + to_decimal(dr.total_saved_kwd)

    addons = [
        AddonRow(
            addon_row_id=a.id,
            subscription_id=a.subscription_id,
            addon_id=a.addon_id,
            specialty=a.specialty,
            staff_user_id=a.staff_user_id,
            price_kwd=to_decimal(a.price_kwd) if a.price_kwd is not None else None,
            payout_kwd=to_decimal(a.payout_kwd) if a.payout_kwd is not None else None,
        )
        for a in db.query(SubscriptionAddon)
        .filter(SubscriptionAddon.status == "active", SubscriptionAddon.billing_type == "recurring")
        .all()
    ]

    return PayoutSnapshot(
        coaches=coaches,
        services=services,
        service_prices=service_prices,
        payout_rules=payout_rules,
        addon_pricing=addon_pricing,
        addon_rules=addon_rules,
        subscriptions=subscriptions,
        addons=addons,
        discounts_by_subscription=discounts,
    )


def upsert_monthly_payments(db: Session, payment_month: date, result: PayoutResult) -> List[MonthlyCoachPayment]:
    rows: List[MonthlyCoachPayment] = []
    for payout in result.payouts:
        m = payout.metrics
        breakdown = dict(m.client_breakdown)
        breakdown["addon_payout"] = float(_money(m.addon_payout))

        row = (
            db.query(MonthlyCoachPayment)
            .filter(
                MonthlyCoachPayment.payment_month == payment_month,
                MonthlyCoachPayment.coach_id == payout.coach.coach_id,
            )
            .first()
        )
        if row is None:
            row = MonthlyCoachPayment(payment_month=payment_month, coach_id=payout.coach.coach_id)
            db.add(row)

        row.client_breakdown = breakdown
        row.total_clients = m.total_clients
        row.base_payout_kwd = _money(m.base_payout)
        row.addon_payout_kwd = _money(m.addon_payout)
        row.total_payment = _money(m.total_payment)
        row.gross_revenue_kwd = _money(m.gross_revenue)
        row.discounts_applied_kwd = _money(m.discounts_applied)
        row.net_collected_kwd = _money(m.net_collected)
        row.calculated_at = datetime.now(timezone.utc)
        rows.append(row)

        logger.info(
            "Coach payout computed",
            extra=step_fields(
                FN, "coach_payout", ok=True,
                coach_id=str(payout.coach.coach_id), clients=m.total_clients,
                gross_kwd=str(m.gross_revenue), discounts_kwd=str(m.discounts_applied),
                net_kwd=str(m.net_collected), base_payout_kwd=str(m.base_payout),
                addon_payout_kwd=str(m.addon_payout), total_payout_kwd=str(m.total_payment),
            ),
        )
    return rows


def calculate_monthly_coach_payments(
    db: Session,
    payment_month: Optional[date] = None,
    policy: Optional[PayoutPolicy] = None,
) -> Dict[str, Any]:
    """
    Run the payout calculation for a month and persist it.

    Raises PayoutCalculationError on any database failure; the session is
    rolled back so no partial rows are committed.
    """
    payment_month = first_of_month(payment_month)
    logger.info("Starting coach payment run", extra=step_fields(FN, "start", ok=True, month=payment_month.isoformat()))

    try:
        snapshot = load_payout_snapshot(db, payment_month)
        result = calculate_payouts(snapshot, policy)
        upsert_monthly_payments(db, payment_month, result)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(
            "Coach payment run failed",
            extra=step_fields(FN, "fatal", ok=False, error="calculation_failed", month=payment_month.isoformat()),
        )
        raise PayoutCalculationError(str(e)) from e

    totals = result.totals
    summary = {
        "success": True,
        "month": payment_month.isoformat(),
        "coaches_processed": totals.coaches_processed,
        "total_clients": totals.total_clients,
        "gross_revenue_kwd": float(_money(totals.gross_revenue)),
        "discounts_applied_kwd": float(_money(totals.discounts_applied)),
        "net_collected_kwd": float(_money(totals.net_collected)),
        "total_coach_payout": float(_money(totals.total_coach_payout)),
        "platform_retained_kwd": float(_money(totals.platform_retained)),
        "warnings": result.warnings,
    }
    logger.info(
        "Coach payment run complete",
        extra=step_fields(
            FN, "summary", ok=True,
            **{k: v for k, v in summary.items() if k not in ("success", "warnings")},
        ),
    )
    return summary


def list_monthly_payments(db: Session, payment_month: date) -> List[MonthlyCoachPayment]:
    return (
        db.query(MonthlyCoachPayment)
        .filter(MonthlyCoachPayment.payment_month == first_of_month(payment_month))
        .order_by(MonthlyCoachPayment.total_payment.desc())
        .all()
    )
