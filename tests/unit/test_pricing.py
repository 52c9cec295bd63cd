"""가격 규칙 엔진 단위 테스트."""

from dataclasses import dataclass

import pytest

from tiresync.services.pricing import (
    apply_pricing_rules,
    calculate_final_price,
    resolve_segment,
    select_rule,
)


@dataclass
class Rule:
    id: int
    category: str
    match_field: str
    match_value: str | None
    percentage_markup: float
    fixed_markup: float = 0.0
    priority: int = 100
    is_active: bool = True
    name: str = "rule"


@pytest.mark.unit
class TestCalculateFinalPrice:
    def test_percentage_and_fixed(self):
        assert calculate_final_price(1000, 25, 50) == 1300.0

    def test_rounds_half_up_to_two_decimals(self):
        assert calculate_final_price(99.99, 20, 0) == 119.99
        assert calculate_final_price(100, 15, 0) == 115.0


@pytest.mark.unit
class TestApplyPricingRules:
    def test_first_match_by_priority_wins(self):
        rules = [
            Rule(id=1, category="tire", match_field="all", match_value="*", percentage_markup=20, priority=10),
            Rule(id=2, category="tire", match_field="brand", match_value="Michelin", percentage_markup=30, priority=1),
        ]
        result = apply_pricing_rules(rules, 1000, "tire", brand="michelin")

        assert result.applied_rule_id == 2
        assert result.final_price == 1300.0

    def test_equal_priority_breaks_tie_by_id(self):
        rules = [
            Rule(id=7, category="tire", match_field="all", match_value="*", percentage_markup=40, priority=5),
            Rule(id=3, category="tire", match_field="all", match_value="*", percentage_markup=10, priority=5),
        ]
        assert apply_pricing_rules(rules, 100, "tire").applied_rule_id == 3

    def test_segment_rule(self):
        rules = [Rule(id=1, category="tire", match_field="segment", match_value="premium", percentage_markup=25, fixed_markup=50)]

        premium = apply_pricing_rules(rules, 1000, "tire", brand="Pirelli", segment=resolve_segment("Pirelli"))
        economy = apply_pricing_rules(rules, 1000, "tire", brand="Lassa", segment=resolve_segment("Lassa"))

        assert premium.final_price == 1300.0
        assert economy.used_default is True

    def test_inactive_and_other_category_rules_are_ignored(self):
        rules = [
            Rule(id=1, category="tire", match_field="all", match_value="*", percentage_markup=50, is_active=False),
            Rule(id=2, category="rim", match_field="all", match_value="*", percentage_markup=30),
        ]
        result = apply_pricing_rules(rules, 100, "tire", default_margin_percent=20)

        assert result.applied_rule_id is None
        assert result.margin_percent == 20
        assert result.final_price == 120.0

    def test_wildcard_value_matches_any_brand(self):
        rules = [Rule(id=1, category="battery", match_field="brand", match_value="*", percentage_markup=18, fixed_markup=75)]
        assert select_rule(rules, "battery", brand="Varta").id == 1

    def test_brand_rule_needs_brand(self):
        rules = [Rule(id=1, category="tire", match_field="brand", match_value="Lassa", percentage_markup=15)]
        assert select_rule(rules, "tire", brand=None) is None

    def test_insertion_order_does_not_change_precedence(self):
        high = Rule(id=5, category="tire", match_field="brand", match_value="Lassa", percentage_markup=15, priority=2)
        low = Rule(id=1, category="tire", match_field="all", match_value="*", percentage_markup=20, priority=10)

        assert apply_pricing_rules([high, low], 100, "tire", brand="Lassa").applied_rule_id == 5
        assert apply_pricing_rules([low, high], 100, "tire", brand="Lassa").applied_rule_id == 5


@pytest.mark.unit
class TestPricingMonotonicity:
    """markup이 음수가 아니면 최종 가격은 공급가보다 작아지지 않음."""

    PRICES = [0.01, 1.0, 99.99, 1234.56, 2500.0, 987654.32]
    MARKUPS = [(0, 0), (0, 0.01), (15, 0), (20, 0), (25, 50), (100, 0), (7.5, 3.33)]

    @pytest.mark.parametrize("supplier_price", PRICES)
    @pytest.mark.parametrize("percentage_markup, fixed_markup", MARKUPS)
    def test_rule_price_never_below_supplier_price(self, supplier_price, percentage_markup, fixed_markup):
        rules = [
            Rule(
                id=1,
                category="tire",
                match_field="all",
                match_value="*",
                percentage_markup=percentage_markup,
                fixed_markup=fixed_markup,
            )
        ]
        result = apply_pricing_rules(rules, supplier_price, "tire")

        assert result.final_price >= supplier_price

    @pytest.mark.parametrize("supplier_price", PRICES)
    def test_default_margin_never_below_supplier_price(self, supplier_price):
        result = apply_pricing_rules([], supplier_price, "rim")

        assert result.used_default is True
        assert result.final_price >= supplier_price


@pytest.mark.unit
def test_resolve_segment_unknown_brand():
    assert resolve_segment("Michelin") == "premium"
    assert resolve_segment("NoName") is None
    assert resolve_segment(None) is None
