"""
Monthly coach payout calculation.

Pure computation over a snapshot of pricing, payout rules, active
subscriptions, add-ons and the month's discount redemptions. Loading the
snapshot and persisting results lives in services.coach_payments.

Formula, per primary coach assignment:
    gross = service_pricing.price_kwd
    percent rule -> payout = gross * value / 100
    fixed rule   -> payout = value
    no rule      -> payout = gross * DEFAULT_PAYOUT_PERCENT / 100 (warning)

Discounts do NOT reduce coach payout. The coach is paid from the gross
(list) price; redemptions are accumulated for reporting only:
    net_collected = gross_revenue - discounts_applied
    total_payment = base_payout + addon_payout
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, List, Optional
from uuid import UUID

from core.config import settings
from core.logging import step_fields

logger = logging.getLogger(__name__)

FN = "calc-coach-payments"

PAYOUT_PERCENT = "percent"
PAYOUT_FIXED = "fixed"

RECIPIENT_PRIMARY_COACH = "primary_coach"
RECIPIENT_ADDON_STAFF = "addon_staff"

BUCKET_TEAM = "team"
BUCKET_INPERSON = "onetoone_inperson"
BUCKET_HYBRID = "onetoone_hybrid"
BUCKET_ONLINE = "onetoone_online"
BUCKETS = (BUCKET_TEAM, BUCKET_INPERSON, BUCKET_HYBRID, BUCKET_ONLINE)

_ZERO = Decimal("0")
_HUNDRED = Decimal("100")


def to_decimal(value) -> Decimal:
    if value is None:
        return _ZERO
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


@dataclass(frozen=True)
class PayoutPolicy:
    """Named defaults applied when pricing data has no payout rule."""

    default_payout_percent: Decimal = Decimal("70")
    default_addon_payout_percent: Decimal = Decimal("100")

    @classmethod
    def from_settings(cls) -> "PayoutPolicy":
        return cls(
            default_payout_percent=to_decimal(settings.DEFAULT_PAYOUT_PERCENT),
            default_addon_payout_percent=to_decimal(settings.DEFAULT_ADDON_PAYOUT_PERCENT),
        )


@dataclass(frozen=True)
class PayoutRuleView:
    payout_type: str
    payout_value: Decimal
    recipient_role: str = RECIPIENT_PRIMARY_COACH


@dataclass(frozen=True)
class CoachRef:
    coach_id: UUID
    user_id: UUID
    name: str = ""


@dataclass(frozen=True)
class ServiceRef:
    service_id: UUID
    service_type: str
    delivery_mode: str


@dataclass(frozen=True)
class AddonPricingRef:
    addon_id: UUID
    code: str
    price_kwd: Decimal


@dataclass(frozen=True)
class SubscriptionRow:
    subscription_id: UUID
    coach_user_id: Optional[UUID]
    service_id: UUID
    payment_exempt: bool = False


@dataclass(frozen=True)
class AddonRow:
    addon_row_id: UUID
    subscription_id: UUID
    addon_id: Optional[UUID] = None
    specialty: Optional[str] = None
    staff_user_id: Optional[UUID] = None
    price_kwd: Optional[Decimal] = None
    payout_kwd: Optional[Decimal] = None


@dataclass
class PayoutSnapshot:
    coaches: List[CoachRef]
    services: Dict[UUID, ServiceRef]
    service_prices: Dict[UUID, Decimal]
    payout_rules: Dict[UUID, PayoutRuleView]
    addon_pricing: Dict[UUID, AddonPricingRef]
    addon_rules: Dict[UUID, PayoutRuleView]
    subscriptions: List[SubscriptionRow]
    addons: List[AddonRow] = field(default_factory=list)
    discounts_by_subscription: Dict[UUID, Decimal] = field(default_factory=dict)

    @property
    def addon_pricing_by_code(self) -> Dict[str, AddonPricingRef]:
        return {a.code.lower(): a for a in self.addon_pricing.values() if a.code}


@dataclass
class CoachMetrics:
    client_breakdown: Dict[str, int] = field(default_factory=lambda: {b: 0 for b in BUCKETS})
    gross_revenue: Decimal = _ZERO
    discounts_applied: Decimal = _ZERO
    base_payout: Decimal = _ZERO
    addon_payout: Decimal = _ZERO

    @property
    def total_payment(self) -> Decimal:
        return self.base_payout + self.addon_payout

    @property
    def net_collected(self) -> Decimal:
        return self.gross_revenue - self.discounts_applied

    @property
    def total_clients(self) -> int:
        return sum(self.client_breakdown.values())


@dataclass
class CoachPayout:
    coach: CoachRef
    metrics: CoachMetrics


@dataclass
class PayoutTotals:
    coaches_processed: int = 0
    total_clients: int = 0
    gross_revenue: Decimal = _ZERO
    discounts_applied: Decimal = _ZERO
    total_coach_payout: Decimal = _ZERO

    @property
    def net_collected(self) -> Decimal:
        return self.gross_revenue - self.discounts_applied

    @property
    def platform_retained(self) -> Decimal:
        return self.net_collected - self.total_coach_payout


@dataclass
class PayoutResult:
    payouts: List[CoachPayout]
    totals: PayoutTotals
    warnings: List[dict] = field(default_factory=list)

    def for_coach(self, coach_id: UUID) -> Optional[CoachPayout]:
        for p in self.payouts:
            if p.coach.coach_id == coach_id:
                return p
        return None


def apply_payout_rule(gross: Decimal, payout_type: str, payout_value) -> Decimal:
    """Percent rules scale the gross price; fixed rules ignore it."""
    value = to_decimal(payout_value)
    if payout_type == PAYOUT_PERCENT:
        return gross * value / _HUNDRED
    if payout_type == PAYOUT_FIXED:
        return value
    raise ValueError(f"Unknown payout type: {payout_type!r}")


def classify_service(service: ServiceRef) -> Optional[str]:
    if service.service_type == "team":
        return BUCKET_TEAM
    if service.service_type == "one_to_one":
        if service.delivery_mode == "in_person":
            return BUCKET_INPERSON
        if service.delivery_mode == "hybrid":
            return BUCKET_HYBRID
        return BUCKET_ONLINE
    return None


def _resolve_addon(snapshot: PayoutSnapshot, by_code: Dict[str, AddonPricingRef], addon: AddonRow):
    pricing: Optional[AddonPricingRef] = None
    rule: Optional[PayoutRuleView] = None
    if addon.addon_id:
        pricing = snapshot.addon_pricing.get(addon.addon_id)
        rule = snapshot.addon_rules.get(addon.addon_id)
    elif addon.specialty:
        pricing = by_code.get(addon.specialty.strip().lower())
        if pricing:
            rule = snapshot.addon_rules.get(pricing.addon_id)
    return pricing, rule


def calculate_payouts(snapshot: PayoutSnapshot, policy: Optional[PayoutPolicy] = None) -> PayoutResult:
    """Compute one payout record per coach from the snapshot."""
    policy = policy or PayoutPolicy.from_settings()
    warnings: List[dict] = []

    metrics_by_user: Dict[UUID, CoachMetrics] = {c.user_id: CoachMetrics() for c in snapshot.coaches}

    subscriptions_by_id: Dict[UUID, SubscriptionRow] = {}
    for sub in snapshot.subscriptions:
        subscriptions_by_id[sub.subscription_id] = sub
        if not sub.coach_user_id or sub.payment_exempt:
            continue

        metrics = metrics_by_user.get(sub.coach_user_id)
        if metrics is None:
            continue

        service = snapshot.services.get(sub.service_id)
        if service is None:
            continue

        gross = to_decimal(snapshot.service_prices.get(sub.service_id))
        rule = snapshot.payout_rules.get(sub.service_id)
        if rule is not None:
            try:
                coach_payout = apply_payout_rule(gross, rule.payout_type, rule.payout_value)
            except ValueError:
                coach_payout = _ZERO
                warnings.append({"step": "payout_rule_invalid", "service_id": str(sub.service_id)})
                logger.warning(
                    "Unknown payout type, paying nothing",
                    extra=step_fields(FN, "payout_rule_invalid", ok=False, service_id=str(sub.service_id)),
                )
        else:
            coach_payout = gross * policy.default_payout_percent / _HUNDRED
            warnings.append({"step": "payout_rule_fallback", "service_id": str(sub.service_id)})
            logger.warning(
                "No payout rule configured, using default percent",
                extra=step_fields(
                    FN, "payout_rule_fallback", ok=False,
                    service_id=str(sub.service_id),
                    default_percent=str(policy.default_payout_percent),
                ),
            )

        metrics.gross_revenue += gross
        # Reporting only: the coach is still paid from gross
        metrics.discounts_applied += to_decimal(snapshot.discounts_by_subscription.get(sub.subscription_id))
        metrics.base_payout += coach_payout

        bucket = classify_service(service)
        if bucket:
            metrics.client_breakdown[bucket] += 1

    by_code = snapshot.addon_pricing_by_code
    for addon in snapshot.addons:
        sub = subscriptions_by_id.get(addon.subscription_id)
        if sub is None:
            continue

        pricing, rule = _resolve_addon(snapshot, by_code, addon)
        addon_gross = pricing.price_kwd if pricing else to_decimal(addon.price_kwd)

        if rule is not None:
            payout_type = rule.payout_type if rule.payout_type == PAYOUT_PERCENT else PAYOUT_FIXED
            addon_payout = apply_payout_rule(addon_gross, payout_type, rule.payout_value)
        elif addon.payout_kwd:
            addon_payout = to_decimal(addon.payout_kwd)
        else:
            addon_payout = addon_gross * policy.default_addon_payout_percent / _HUNDRED

        recipient_role = rule.recipient_role if rule else RECIPIENT_ADDON_STAFF
        if recipient_role == RECIPIENT_PRIMARY_COACH:
            recipient = sub.coach_user_id
        else:
            recipient = addon.staff_user_id

        metrics = metrics_by_user.get(recipient) if recipient else None
        if metrics is None:
            continue
        metrics.addon_payout += addon_payout
        metrics.gross_revenue += addon_gross

    payouts: List[CoachPayout] = []
    totals = PayoutTotals()
    for coach in snapshot.coaches:
        metrics = metrics_by_user[coach.user_id]
        payouts.append(CoachPayout(coach=coach, metrics=metrics))
        totals.coaches_processed += 1
        totals.total_clients += metrics.total_clients
        totals.gross_revenue += metrics.gross_revenue
        totals.discounts_applied += metrics.discounts_applied
        totals.total_coach_payout += metrics.total_payment

    return PayoutResult(payouts=payouts, totals=totals, warnings=warnings)
