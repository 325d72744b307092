from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Iterable, List, Optional, Tuple

from labflow.models.billing import PricingRule, RuleType, SourceEvent
from labflow.models.order import Order, RestorationType, Urgency

CENT = Decimal("0.01")
HUNDRED = Decimal("100")


def money(value) -> Decimal:
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class PricingContext:
    restoration_type: RestorationType
    urgency: Urgency

    @classmethod
    def from_order(cls, order: Order) -> "PricingContext":
        return cls(restoration_type=order.restoration_type, urgency=order.urgency)


@dataclass(frozen=True)
class LineItemDraft:
    line_type: str
    description: str
    quantity: int
    unit_price: Decimal
    total_price: Decimal
    source_event: SourceEvent
    rule_applied: Optional[int]


@dataclass(frozen=True)
class PriceBreakdown:
    line_items: Tuple[LineItemDraft, ...]
    subtotal: Decimal


class RuleEffect:
    """How one rule type changes the running subtotal."""

    line_type = "rule"

    def delta(self, rule: PricingRule, subtotal: Decimal) -> Decimal:
        raise NotImplementedError

    def describe(self, rule: PricingRule, ctx: PricingContext) -> str:
        suffix = f" ({rule.amount}%)" if rule.is_percentage else ""
        return f"{rule.rule_name}{suffix}"


class BasePriceEffect(RuleEffect):
    line_type = "base_price"

    def delta(self, rule: PricingRule, subtotal: Decimal) -> Decimal:
        return money(rule.amount)

    def describe(self, rule: PricingRule, ctx: PricingContext) -> str:
        return f"{ctx.restoration_type.value} - Base Price"


class SignedEffect(RuleEffect):
    """Multiplier, Penalty and Bonus: a percentage of the subtotal or an absolute amount."""

    def __init__(self, line_type: str, sign: int):
        self.line_type = line_type
        self.sign = sign

    def delta(self, rule: PricingRule, subtotal: Decimal) -> Decimal:
        amount = Decimal(rule.amount)
        effect = subtotal * amount / HUNDRED if rule.is_percentage else amount
        return money(effect) * self.sign


class FlatFeeEffect(RuleEffect):
    line_type = "flat_fee"

    def delta(self, rule: PricingRule, subtotal: Decimal) -> Decimal:
        return money(rule.amount)


DEFAULT_EFFECTS: Dict[RuleType, RuleEffect] = {
    RuleType.BASE_PRICE: BasePriceEffect(),
    RuleType.MULTIPLIER: SignedEffect("multiplier", 1),
    RuleType.PENALTY: SignedEffect("penalty", -1),
    RuleType.BONUS: SignedEffect("bonus", 1),
    RuleType.FLAT_FEE: FlatFeeEffect(),
}


class PriceEngine:
    """Rule-based pricing engine.

    Pure: the same rules, order attributes and source event always give equal
    line items, so a retried billing step recomputes exactly what it wrote before.
    """

    def __init__(self, effects: Optional[Dict[RuleType, RuleEffect]] = None):
        self.effects = effects or DEFAULT_EFFECTS

    def matches(self, rule: PricingRule, ctx: PricingContext) -> bool:
        if not rule.is_active:
            return False
        if rule.restoration_type is not None and rule.restoration_type != ctx.restoration_type:
            return False
        if rule.urgency_level is not None and rule.urgency_level != ctx.urgency:
            return False
        return True

    def select(self, rules: Iterable[PricingRule], ctx: PricingContext) -> List[PricingRule]:
        selected = [r for r in rules if self.matches(r, ctx)]
        return sorted(selected, key=lambda r: (r.priority, r.id or 0))

    def evaluate(self, rules: Iterable[PricingRule], ctx: PricingContext, source_event: SourceEvent) -> PriceBreakdown:
        subtotal = Decimal("0.00")
        items: List[LineItemDraft] = []
        for rule in self.select(rules, ctx):
            effect = self.effects[rule.rule_type]
            delta = effect.delta(rule, subtotal)
            subtotal = money(subtotal + delta)
            items.append(
                LineItemDraft(
                    line_type=effect.line_type,
                    description=effect.describe(rule, ctx),
                    quantity=1,
                    unit_price=delta,
                    total_price=delta,
                    source_event=source_event,
                    rule_applied=rule.id,
                )
            )
        return PriceBreakdown(line_items=tuple(items), subtotal=subtotal)

    def estimate(self, rules: Iterable[PricingRule], order: Order, source_event: SourceEvent) -> PriceBreakdown:
        return self.evaluate(rules, PricingContext.from_order(order), source_event)
