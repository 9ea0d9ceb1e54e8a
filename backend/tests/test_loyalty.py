# Overview: Pytest coverage for the versioned loyalty engine.

import pytest

from posledger.errors import ValidationError
from posledger.models import LoyaltyRule, LoyaltyTransaction
from posledger.services import loyalty_service
from posledger.services.loyalty_service import LoyaltyRuleConfig


STANDARD = LoyaltyRuleConfig(version=1, points_per_currency_bps=10000)


class TestCalculation:
    def test_one_point_per_currency_unit(self):
        assert loyalty_service.calculate_points(1000, STANDARD) == 10
        assert loyalty_service.calculate_points(1099, STANDARD) == 10

    def test_fractional_rates_floor(self):
        rule = LoyaltyRuleConfig(version=2, points_per_currency_bps=250)
        # 0.025 points per unit: 1,000.00 earns 25
        assert loyalty_service.calculate_points(100000, rule) == 25
        assert loyalty_service.calculate_points(3999, rule) == 0

    def test_min_purchase_applies_to_earning_only(self):
        rule = LoyaltyRuleConfig(version=3, points_per_currency_bps=10000, min_purchase_cents=5000)
        assert loyalty_service.calculate_points(4999, rule) == 0
        assert loyalty_service.calculate_refund_points(4999, rule) == 49

    def test_no_rule_no_points(self):
        assert loyalty_service.calculate_points(1000, None) == 0
        assert loyalty_service.calculate_refund_points(1000, None) == 0


class TestRules:
    def test_publishing_deactivates_previous_version(self, db_session, loyalty_rule):
        newer = loyalty_service.set_active_rule(points_per_currency_bps=20000)

        assert newer.version == loyalty_rule.version + 1
        assert loyalty_service.get_active_rule() == newer
        assert db_session.query(LoyaltyRule).filter_by(is_active=True).count() == 1
        assert loyalty_service.get_rule_version(loyalty_rule.version).points_per_currency_bps == 10000

    def test_negative_rate_rejected(self, db_session):
        with pytest.raises(ValidationError):
            loyalty_service.set_active_rule(points_per_currency_bps=-1)


class TestAwardAndDeduct:
    def test_award_records_rule_version(self, db_session, customer, loyalty_rule):
        txn = loyalty_service.award_points(customer, amount_cents=2500, rule=loyalty_rule)
        db_session.commit()

        assert txn.points_earned == 25
        assert txn.rule_version == loyalty_rule.version
        assert customer.loyalty_points == 25

    def test_award_below_one_point_writes_nothing(self, db_session, customer, loyalty_rule):
        assert loyalty_service.award_points(customer, amount_cents=99, rule=loyalty_rule) is None
        assert db_session.query(LoyaltyTransaction).count() == 0

    def test_refund_deducts_at_earn_time_rate(self, db_session, customer, product, loyalty_rule, make_sale):
        sale = make_sale([(product, 4)], customer=customer)  # 2,000 cents -> 20 points
        assert sale["loyalty_points_awarded"] == 20

        # Rate doubles after the sale; the refund still uses the earn rule
        loyalty_service.set_active_rule(points_per_currency_bps=20000)

        deducted = loyalty_service.deduct_points_for_refund(
            customer, sale_id=sale["id"], refund_amount_cents=1000
        )
        assert deducted == 10
        assert customer.loyalty_points == 10

    def test_deduction_capped_at_outstanding_points(self, db_session, customer, product, loyalty_rule, make_sale):
        sale = make_sale([(product, 1)], customer=customer)  # 5 points

        deducted = loyalty_service.deduct_points_for_refund(
            customer, sale_id=sale["id"], refund_amount_cents=100000
        )
        assert deducted == 5
        assert customer.loyalty_points == 0

    def test_sale_without_points_deducts_nothing(self, db_session, customer, product, make_sale):
        sale = make_sale([(product, 1)], customer=customer)  # no active rule
        assert loyalty_service.deduct_points_for_refund(
            customer, sale_id=sale["id"], refund_amount_cents=500
        ) == 0

    def test_history_newest_first(self, db_session, customer, loyalty_rule):
        loyalty_service.award_points(customer, amount_cents=1000, rule=loyalty_rule, reason="first")
        loyalty_service.award_points(customer, amount_cents=2000, rule=loyalty_rule, reason="second")
        db_session.commit()

        history = loyalty_service.get_loyalty_history(customer.id)
        assert [t.reason for t in history] == ["second", "first"]
