"""
Tests for the monthly payout formula.

Pure snapshot tests: no database.
"""
from decimal import Decimal
from uuid import uuid4

import pytest

from services.payout_calculator import (
    BUCKET_HYBRID,
    BUCKET_INPERSON,
    BUCKET_ONLINE,
    BUCKET_TEAM,
    AddonPricingRef,
    AddonRow,
    CoachRef,
    PayoutPolicy,
    PayoutRuleView,
    PayoutSnapshot,
    ServiceRef,
    SubscriptionRow,
    apply_payout_rule,
    calculate_payouts,
    classify_service,
)

POLICY = PayoutPolicy(default_payout_percent=Decimal("70"), default_addon_payout_percent=Decimal("100"))


def _coach():
    return CoachRef(coach_id=uuid4(), user_id=uuid4(), name="Coach")


def _service(service_type="one_to_one", delivery_mode="online"):
    return ServiceRef(service_id=uuid4(), service_type=service_type, delivery_mode=delivery_mode)


def _snapshot(coaches, services, prices, rules=None, subscriptions=None, **kwargs):
    return PayoutSnapshot(
        coaches=coaches,
        services={s.service_id: s for s in services},
        service_prices=prices,
        payout_rules=rules or {},
        addon_pricing=kwargs.pop("addon_pricing", {}),
        addon_rules=kwargs.pop("addon_rules", {}),
        subscriptions=subscriptions or [],
        **kwargs,
    )


class TestApplyPayoutRule:
    def test_percent_scales_gross(self):
        assert apply_payout_rule(Decimal("100"), "percent", Decimal("70")) == Decimal("70")

    def test_fixed_ignores_gross(self):
        assert apply_payout_rule(Decimal("250"), "fixed", "45") == Decimal("45")

    def test_unknown_type_raises(self):
        with pytest.raises(ValueError):
            apply_payout_rule(Decimal("100"), "tiered", 10)


class TestClassifyService:
    @pytest.mark.parametrize(
        "service_type,delivery_mode,bucket",
        [
            ("team", "online", BUCKET_TEAM),
            ("one_to_one", "in_person", BUCKET_INPERSON),
            ("one_to_one", "hybrid", BUCKET_HYBRID),
            ("one_to_one", "online", BUCKET_ONLINE),
        ],
    )
    def test_buckets(self, service_type, delivery_mode, bucket):
        assert classify_service(_service(service_type, delivery_mode)) == bucket

    def test_unknown_type_has_no_bucket(self):
        assert classify_service(_service("group_class")) is None


class TestCalculatePayouts:
    def test_discount_does_not_reduce_coach_payout(self):
        coach = _coach()
        service = _service()
        sub = SubscriptionRow(subscription_id=uuid4(), coach_user_id=coach.user_id, service_id=service.service_id)
        snapshot = _snapshot(
            [coach],
            [service],
            {service.service_id: Decimal("100")},
            rules={service.service_id: PayoutRuleView("percent", Decimal("70"))},
            subscriptions=[sub],
            discounts_by_subscription={sub.subscription_id: Decimal("20")},
        )

        result = calculate_payouts(snapshot, POLICY)
        m = result.for_coach(coach.coach_id).metrics

        assert m.base_payout == Decimal("70")
        assert m.gross_revenue == Decimal("100")
        assert m.discounts_applied == Decimal("20")
        assert m.net_collected == Decimal("80")
        assert m.total_payment == Decimal("70")
        assert result.totals.platform_retained == Decimal("10")
        assert result.warnings == []

    def test_fixed_rule(self):
        coach = _coach()
        service = _service(delivery_mode="in_person")
        snapshot = _snapshot(
            [coach],
            [service],
            {service.service_id: Decimal("180")},
            rules={service.service_id: PayoutRuleView("fixed", Decimal("90"))},
            subscriptions=[
                SubscriptionRow(subscription_id=uuid4(), coach_user_id=coach.user_id, service_id=service.service_id)
                for _ in range(2)
            ],
        )

        m = calculate_payouts(snapshot, POLICY).for_coach(coach.coach_id).metrics

        assert m.base_payout == Decimal("180")
        assert m.client_breakdown[BUCKET_INPERSON] == 2
        assert m.total_clients == 2

    def test_missing_rule_falls_back_to_default_percent_with_warning(self):
        coach = _coach()
        service = _service()
        snapshot = _snapshot(
            [coach],
            [service],
            {service.service_id: Decimal("50")},
            subscriptions=[
                SubscriptionRow(subscription_id=uuid4(), coach_user_id=coach.user_id, service_id=service.service_id)
            ],
        )

        result = calculate_payouts(snapshot, POLICY)

        assert result.for_coach(coach.coach_id).metrics.base_payout == Decimal("35")
        assert result.warnings == [{"step": "payout_rule_fallback", "service_id": str(service.service_id)}]

    def test_missing_price_counts_client_with_zero_revenue(self):
        coach = _coach()
        service = _service("team")
        snapshot = _snapshot(
            [coach],
            [service],
            {},
            rules={service.service_id: PayoutRuleView("percent", Decimal("70"))},
            subscriptions=[
                SubscriptionRow(subscription_id=uuid4(), coach_user_id=coach.user_id, service_id=service.service_id)
            ],
        )

        m = calculate_payouts(snapshot, POLICY).for_coach(coach.coach_id).metrics

        assert m.gross_revenue == Decimal("0")
        assert m.base_payout == Decimal("0")
        assert m.client_breakdown[BUCKET_TEAM] == 1

    def test_payment_exempt_and_unassigned_subscriptions_are_skipped(self):
        coach = _coach()
        service = _service()
        snapshot = _snapshot(
            [coach],
            [service],
            {service.service_id: Decimal("100")},
            rules={service.service_id: PayoutRuleView("percent", Decimal("70"))},
            subscriptions=[
                SubscriptionRow(
                    subscription_id=uuid4(), coach_user_id=coach.user_id,
                    service_id=service.service_id, payment_exempt=True,
                ),
                SubscriptionRow(subscription_id=uuid4(), coach_user_id=None, service_id=service.service_id),
            ],
        )

        result = calculate_payouts(snapshot, POLICY)
        m = result.for_coach(coach.coach_id).metrics

        assert m.total_clients == 0
        assert m.total_payment == Decimal("0")
        assert result.totals.coaches_processed == 1

    def test_coach_without_clients_gets_zero_record(self):
        busy, idle = _coach(), _coach()
        service = _service()
        snapshot = _snapshot(
            [busy, idle],
            [service],
            {service.service_id: Decimal("100")},
            rules={service.service_id: PayoutRuleView("percent", Decimal("60"))},
            subscriptions=[
                SubscriptionRow(subscription_id=uuid4(), coach_user_id=busy.user_id, service_id=service.service_id)
            ],
        )

        result = calculate_payouts(snapshot, POLICY)

        assert len(result.payouts) == 2
        assert result.for_coach(idle.coach_id).metrics.total_payment == Decimal("0")
        assert result.totals.total_coach_payout == Decimal("60")

    def test_addon_paid_to_primary_coach_by_rule(self):
        coach = _coach()
        service = _service()
        sub = SubscriptionRow(subscription_id=uuid4(), coach_user_id=coach.user_id, service_id=service.service_id)
        nutrition = AddonPricingRef(addon_id=uuid4(), code="nutrition", price_kwd=Decimal("30"))
        snapshot = _snapshot(
            [coach],
            [service],
            {service.service_id: Decimal("100")},
            rules={service.service_id: PayoutRuleView("percent", Decimal("70"))},
            subscriptions=[sub],
            addon_pricing={nutrition.addon_id: nutrition},
            addon_rules={nutrition.addon_id: PayoutRuleView("percent", Decimal("50"), "primary_coach")},
            addons=[AddonRow(addon_row_id=uuid4(), subscription_id=sub.subscription_id, addon_id=nutrition.addon_id)],
        )

        m = calculate_payouts(snapshot, POLICY).for_coach(coach.coach_id).metrics

        assert m.addon_payout == Decimal("15")
        assert m.total_payment == Decimal("85")
        assert m.gross_revenue == Decimal("130")

    def test_addon_paid_to_staff_member(self):
        coach, physio = _coach(), _coach()
        service = _service()
        sub = SubscriptionRow(subscription_id=uuid4(), coach_user_id=coach.user_id, service_id=service.service_id)
        addon = AddonPricingRef(addon_id=uuid4(), code="physio", price_kwd=Decimal("40"))
        snapshot = _snapshot(
            [coach, physio],
            [service],
            {service.service_id: Decimal("100")},
            rules={service.service_id: PayoutRuleView("percent", Decimal("70"))},
            subscriptions=[sub],
            addon_pricing={addon.addon_id: addon},
            addon_rules={addon.addon_id: PayoutRuleView("fixed", Decimal("25"), "addon_staff")},
            addons=[
                AddonRow(
                    addon_row_id=uuid4(), subscription_id=sub.subscription_id,
                    addon_id=addon.addon_id, staff_user_id=physio.user_id,
                )
            ],
        )

        result = calculate_payouts(snapshot, POLICY)

        assert result.for_coach(coach.coach_id).metrics.addon_payout == Decimal("0")
        assert result.for_coach(physio.coach_id).metrics.addon_payout == Decimal("25")

    def test_legacy_specialty_resolves_through_catalog_code(self):
        coach = _coach()
        service = _service()
        sub = SubscriptionRow(subscription_id=uuid4(), coach_user_id=coach.user_id, service_id=service.service_id)
        addon = AddonPricingRef(addon_id=uuid4(), code="nutrition", price_kwd=Decimal("20"))
        snapshot = _snapshot(
            [coach],
            [service],
            {service.service_id: Decimal("100")},
            rules={service.service_id: PayoutRuleView("percent", Decimal("70"))},
            subscriptions=[sub],
            addon_pricing={addon.addon_id: addon},
            addon_rules={addon.addon_id: PayoutRuleView("fixed", Decimal("12"), "primary_coach")},
            addons=[AddonRow(addon_row_id=uuid4(), subscription_id=sub.subscription_id, specialty=" Nutrition ")],
        )

        assert calculate_payouts(snapshot, POLICY).for_coach(coach.coach_id).metrics.addon_payout == Decimal("12")

    def test_legacy_addon_without_rule_uses_stored_payout_or_default(self):
        coach = _coach()
        service = _service()
        sub = SubscriptionRow(subscription_id=uuid4(), coach_user_id=coach.user_id, service_id=service.service_id)
        snapshot = _snapshot(
            [coach],
            [service],
            {service.service_id: Decimal("100")},
            rules={service.service_id: PayoutRuleView("percent", Decimal("70"))},
            subscriptions=[sub],
            addons=[
                AddonRow(
                    addon_row_id=uuid4(), subscription_id=sub.subscription_id, specialty="yoga",
                    staff_user_id=coach.user_id, price_kwd=Decimal("10"), payout_kwd=Decimal("8"),
                ),
                AddonRow(
                    addon_row_id=uuid4(), subscription_id=sub.subscription_id, specialty="pilates",
                    staff_user_id=coach.user_id, price_kwd=Decimal("10"),
                ),
            ],
        )

        # 8 stored + 10 * 100% default
        assert calculate_payouts(snapshot, POLICY).for_coach(coach.coach_id).metrics.addon_payout == Decimal("18")

    def test_addon_for_inactive_subscription_is_ignored(self):
        coach = _coach()
        service = _service()
        snapshot = _snapshot(
            [coach],
            [service],
            {service.service_id: Decimal("100")},
            addons=[
                AddonRow(
                    addon_row_id=uuid4(), subscription_id=uuid4(), specialty="yoga",
                    staff_user_id=coach.user_id, price_kwd=Decimal("10"),
                )
            ],
        )

        assert calculate_payouts(snapshot, POLICY).for_coach(coach.coach_id).metrics.addon_payout == Decimal("0")

    def test_same_snapshot_gives_same_result(self):
        coach = _coach()
        service = _service()
        snapshot = _snapshot(
            [coach],
            [service],
            {service.service_id: Decimal("99.5")},
            rules={service.service_id: PayoutRuleView("percent", Decimal("33"))},
            subscriptions=[
                SubscriptionRow(subscription_id=uuid4(), coach_user_id=coach.user_id, service_id=service.service_id)
            ],
        )

        first = calculate_payouts(snapshot, POLICY).for_coach(coach.coach_id).metrics
        second = calculate_payouts(snapshot, POLICY).for_coach(coach.coach_id).metrics

        assert first.total_payment == second.total_payment
        assert first.client_breakdown == second.client_breakdown
