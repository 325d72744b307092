"""
Unit tests for the pricing engine - pure rule evaluation, no database.
"""
from decimal import Decimal

import pytest

from labflow.models.billing import PricingRule, RuleType, SourceEvent
from labflow.models.order import Order, RestorationType, Urgency
from labflow.services.pricing import PriceEngine, PricingContext, money


def rule(rule_id, rule_type, amount, priority=100, **kwargs):
    return PricingRule(
        id=rule_id,
        rule_name=f"rule-{rule_id}",
        rule_type=rule_type,
        amount=Decimal(str(amount)),
        priority=priority,
        **kwargs,
    )


@pytest.fixture
def engine():
    return PriceEngine()


@pytest.fixture
def urgent_zirconia():
    return PricingContext(RestorationType.ZIRCONIA, Urgency.URGENT)


class TestRuleSelection:
    """Which rules apply to an order."""

    def test_wildcards_match_everything(self, engine, urgent_zirconia):
        """Null restoration type and urgency act as wildcards."""
        assert engine.matches(rule(1, RuleType.FLAT_FEE, 10), urgent_zirconia)

    def test_restoration_type_must_match(self, engine, urgent_zirconia):
        r = rule(1, RuleType.BASE_PRICE, 900, restoration_type=RestorationType.EMAX)
        assert not engine.matches(r, urgent_zirconia)

    def test_urgency_must_match(self, engine):
        r = rule(1, RuleType.MULTIPLIER, 25, urgency_level=Urgency.URGENT, is_percentage=True)
        assert not engine.matches(r, PricingContext(RestorationType.ZIRCONIA, Urgency.NORMAL))

    def test_inactive_rules_are_skipped(self, engine, urgent_zirconia):
        assert not engine.matches(rule(1, RuleType.FLAT_FEE, 10, is_active=False), urgent_zirconia)

    def test_sorted_by_priority_then_id(self, engine, urgent_zirconia):
        """Equal priorities are broken by rule id."""
        rules = [rule(3, RuleType.FLAT_FEE, 1, priority=5), rule(2, RuleType.FLAT_FEE, 1, priority=5), rule(9, RuleType.BASE_PRICE, 1, priority=1)]
        assert [r.id for r in engine.select(rules, urgent_zirconia)] == [9, 2, 3]


class TestEvaluation:
    """Running subtotal and line items."""

    def test_base_price_plus_urgent_multiplier(self, engine, urgent_zirconia):
        """BasePrice 1500 then a 25% urgency multiplier gives 1500 + 375."""
        rules = [
            rule(1, RuleType.BASE_PRICE, 1500, priority=1, restoration_type=RestorationType.ZIRCONIA),
            rule(2, RuleType.MULTIPLIER, 25, priority=2, urgency_level=Urgency.URGENT, is_percentage=True),
        ]
        result = engine.evaluate(rules, urgent_zirconia, SourceEvent.ORDER_CREATED)

        assert [(i.line_type, i.total_price) for i in result.line_items] == [
            ("base_price", Decimal("1500.00")),
            ("multiplier", Decimal("375.00")),
        ]
        assert result.subtotal == Decimal("1875.00")
        assert result.line_items[0].description == "Zirconia - Base Price"
        assert {i.source_event for i in result.line_items} == {SourceEvent.ORDER_CREATED}
        assert [i.rule_applied for i in result.line_items] == [1, 2]

    def test_percentage_applies_to_running_subtotal(self, engine, urgent_zirconia):
        """A percentage rule sees only what earlier rules added."""
        rules = [
            rule(1, RuleType.MULTIPLIER, 50, priority=1, is_percentage=True),
            rule(2, RuleType.BASE_PRICE, 100, priority=2),
        ]
        result = engine.evaluate(rules, urgent_zirconia, SourceEvent.ORDER_CREATED)
        assert result.line_items[0].total_price == Decimal("0.00")
        assert result.subtotal == Decimal("100.00")

    def test_penalty_subtracts_and_bonus_adds(self, engine, urgent_zirconia):
        rules = [
            rule(1, RuleType.BASE_PRICE, 200, priority=1),
            rule(2, RuleType.PENALTY, 10, priority=2, is_percentage=True),
            rule(3, RuleType.BONUS, 5, priority=3),
        ]
        result = engine.evaluate(rules, urgent_zirconia, SourceEvent.SLA_CALCULATION)
        assert [i.total_price for i in result.line_items] == [Decimal("200.00"), Decimal("-20.00"), Decimal("5.00")]
        assert result.subtotal == Decimal("185.00")

    def test_negative_flat_fee_is_a_discount(self, engine, urgent_zirconia):
        rules = [rule(1, RuleType.BASE_PRICE, 100, priority=1), rule(2, RuleType.FLAT_FEE, -15, priority=2)]
        assert engine.evaluate(rules, urgent_zirconia, SourceEvent.ORDER_CREATED).subtotal == Decimal("85.00")

    def test_rounds_half_up_to_cents(self, engine, urgent_zirconia):
        rules = [rule(1, RuleType.BASE_PRICE, "10.05", priority=1), rule(2, RuleType.MULTIPLIER, 5, priority=2, is_percentage=True)]
        result = engine.evaluate(rules, urgent_zirconia, SourceEvent.ORDER_CREATED)
        # 10.05 * 5% = 0.5025
        assert result.line_items[1].total_price == Decimal("0.50")
        assert money("0.125") == Decimal("0.13")

    def test_no_matching_rules_gives_empty_breakdown(self, engine, urgent_zirconia):
        result = engine.evaluate([], urgent_zirconia, SourceEvent.ORDER_CREATED)
        assert result.line_items == ()
        assert result.subtotal == Decimal("0.00")


class TestDeterminism:
    """Recomputation must reproduce exactly the same lines."""

    def test_same_inputs_same_lines(self, engine):
        rules = [
            rule(2, RuleType.MULTIPLIER, 25, priority=2, is_percentage=True),
            rule(1, RuleType.BASE_PRICE, 1500, priority=1),
        ]
        order = Order(id=7, restoration_type=RestorationType.ZIRCONIA, urgency=Urgency.URGENT, patient_name="Jane Roe", doctor_id="doc-1")

        first = engine.estimate(rules, order, SourceEvent.LAB_ACCEPTED)
        second = engine.estimate(list(reversed(rules)), order, SourceEvent.LAB_ACCEPTED)
        assert first == second
