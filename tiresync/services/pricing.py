from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Iterable, Protocol

from sqlalchemy import select
from sqlalchemy.orm import Session

from tiresync.enums import ProductCategory
from tiresync.exceptions import NotFoundError
from tiresync.models import PriceRule
from tiresync.settings import settings

logger = logging.getLogger(__name__)

MATCH_FIELDS = ("brand", "segment", "all")
WILDCARD = "*"

# 브랜드 → 가격 세그먼트
BRAND_SEGMENTS: dict[str, str] = {
    "michelin": "premium",
    "continental": "premium",
    "bridgestone": "premium",
    "pirelli": "premium",
    "goodyear": "premium",
    "dunlop": "premium",
    "yokohama": "mid",
    "hankook": "mid",
    "kumho": "mid",
    "toyo": "mid",
    "falken": "mid",
    "nokian": "mid",
    "firestone": "mid",
    "bfgoodrich": "mid",
    "lassa": "economy",
    "petlas": "economy",
    "nexen": "economy",
    "kormoran": "economy",
    "debica": "economy",
    "sava": "economy",
    "barum": "economy",
    "laufenn": "economy",
    "starmaxx": "economy",
}


class RuleLike(Protocol):
    id: int | None
    category: str
    match_field: str
    match_value: str | None
    percentage_markup: float
    fixed_markup: float
    priority: int
    is_active: bool


@dataclass
class PricingResult:
    supplier_price: float
    final_price: float
    margin_percent: float
    fixed_markup: float
    applied_rule_id: int | None = None
    applied_rule_name: str | None = None

    @property
    def used_default(self) -> bool:
        return self.applied_rule_id is None


def round2(value: float) -> float:
    return float(Decimal(str(value)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def resolve_segment(brand: str | None) -> str | None:
    if not brand:
        return None
    return BRAND_SEGMENTS.get(brand.strip().lower())


def calculate_final_price(supplier_price: float, percentage_markup: float, fixed_markup: float) -> float:
    return round2(supplier_price * (1 + percentage_markup / 100) + fixed_markup)


def _rule_matches(rule: RuleLike, brand: str | None, segment: str | None) -> bool:
    value = (rule.match_value or "").strip()
    if rule.match_field == "all" or value == WILDCARD:
        return True
    if rule.match_field == "brand":
        return bool(brand) and brand.strip().casefold() == value.casefold()
    if rule.match_field == "segment":
        return bool(segment) and segment.strip().casefold() == value.casefold()
    return False


def order_rules(rules: Iterable[RuleLike]) -> list[RuleLike]:
    """priority 오름차순, 같으면 id 오름차순 (저장 순서에 의존하지 않음)."""
    return sorted(rules, key=lambda r: (r.priority, r.id if r.id is not None else 0))


def select_rule(
    rules: Iterable[RuleLike],
    category: str,
    brand: str | None = None,
    segment: str | None = None,
) -> RuleLike | None:
    candidates = [r for r in rules if r.is_active and r.category == category]
    for rule in order_rules(candidates):
        if _rule_matches(rule, brand, segment):
            return rule
    return None


def apply_pricing_rules(
    rules: Iterable[RuleLike],
    supplier_price: float,
    category: str,
    brand: str | None = None,
    segment: str | None = None,
    default_margin_percent: float = 20.0,
) -> PricingResult:
    """첫 번째로 일치하는 규칙을 적용하고, 없으면 기본 마진을 적용합니다."""
    rule = select_rule(rules, category, brand, segment)
    if rule is None:
        return PricingResult(
            supplier_price=supplier_price,
            final_price=calculate_final_price(supplier_price, default_margin_percent, 0.0),
            margin_percent=default_margin_percent,
            fixed_markup=0.0,
        )
    return PricingResult(
        supplier_price=supplier_price,
        final_price=calculate_final_price(supplier_price, rule.percentage_markup, rule.fixed_markup),
        margin_percent=rule.percentage_markup,
        fixed_markup=rule.fixed_markup,
        applied_rule_id=rule.id,
        applied_rule_name=getattr(rule, "name", None),
    )


DEFAULT_RULES: list[dict[str, Any]] = [
    {"name": "Premium Tire Brands", "category": "tire", "match_field": "segment", "match_value": "premium",
     "percentage_markup": 25.0, "fixed_markup": 50.0, "priority": 1},
    {"name": "Lassa Tires", "category": "tire", "match_field": "brand", "match_value": "Lassa",
     "percentage_markup": 15.0, "fixed_markup": 0.0, "priority": 2},
    {"name": "All Tires", "category": "tire", "match_field": "all", "match_value": "*",
     "percentage_markup": 20.0, "fixed_markup": 0.0, "priority": 10},
    {"name": "All Rims", "category": "rim", "match_field": "all", "match_value": "*",
     "percentage_markup": 30.0, "fixed_markup": 100.0, "priority": 10},
    {"name": "All Batteries", "category": "battery", "match_field": "all", "match_value": "*",
     "percentage_markup": 18.0, "fixed_markup": 75.0, "priority": 10},
]


class PricingRulesService:
    """DB에 저장된 가격 규칙 관리 및 적용."""

    def __init__(self, session: Session, default_margin_percent: float | None = None):
        self.session = session
        self.default_margin_percent = (
            settings.pricing_default_margin_percent if default_margin_percent is None else default_margin_percent
        )

    def get_active_rules(self, category: str) -> list[PriceRule]:
        stmt = (
            select(PriceRule)
            .where(PriceRule.category == category, PriceRule.is_active.is_(True))
            .order_by(PriceRule.priority.asc(), PriceRule.id.asc())
        )
        return list(self.session.scalars(stmt).all())

    def apply_pricing(
        self,
        supplier_price: float,
        category: str,
        brand: str | None = None,
        segment: str | None = None,
    ) -> PricingResult:
        if segment is None:
            segment = resolve_segment(brand)
        return apply_pricing_rules(
            self.get_active_rules(category),
            supplier_price,
            category,
            brand=brand,
            segment=segment,
            default_margin_percent=self.default_margin_percent,
        )

    def list_rules(self, category: str | None = None) -> list[PriceRule]:
        stmt = select(PriceRule).order_by(PriceRule.category, PriceRule.priority.asc(), PriceRule.id.asc())
        if category:
            stmt = stmt.where(PriceRule.category == category)
        return list(self.session.scalars(stmt).all())

    def find_duplicate_rules(self, rule: PriceRule) -> list[PriceRule]:
        """같은 category/match_field/match_value로 활성화된 다른 규칙."""
        stmt = select(PriceRule).where(
            PriceRule.category == rule.category,
            PriceRule.match_field == rule.match_field,
            PriceRule.is_active.is_(True),
        )
        if rule.id is not None:
            stmt = stmt.where(PriceRule.id != rule.id)
        target = (rule.match_value or "").casefold()
        return [r for r in self.session.scalars(stmt).all() if (r.match_value or "").casefold() == target]

    def _validate(self, data: dict[str, Any]) -> None:
        if "category" in data:
            ProductCategory.parse(data["category"])
        if "match_field" in data and data["match_field"] not in MATCH_FIELDS:
            raise ValueError(f"match_field는 {MATCH_FIELDS} 중 하나여야 합니다: {data['match_field']}")

    def create_rule(self, **data: Any) -> PriceRule:
        self._validate(data)
        data["category"] = ProductCategory.parse(data["category"]).value
        rule = PriceRule(**data)
        if rule.is_active is None or rule.is_active:
            duplicates = self.find_duplicate_rules(rule)
            if duplicates:
                logger.warning(
                    f"중복 가격 규칙: {rule.category}/{rule.match_field}/{rule.match_value} "
                    f"(기존 id={[d.id for d in duplicates]}). priority, id 순으로 첫 규칙만 적용됩니다."
                )
        self.session.add(rule)
        self.session.commit()
        return rule

    def update_rule(self, rule_id: int, **changes: Any) -> PriceRule:
        rule = self.session.get(PriceRule, rule_id)
        if rule is None:
            raise NotFoundError(f"가격 규칙을 찾을 수 없습니다: {rule_id}", rule_id=rule_id)
        self._validate(changes)
        for key, value in changes.items():
            if value is not None:
                setattr(rule, key, value)
        self.session.commit()
        return rule

    def delete_rule(self, rule_id: int) -> None:
        rule = self.session.get(PriceRule, rule_id)
        if rule is None:
            raise NotFoundError(f"가격 규칙을 찾을 수 없습니다: {rule_id}", rule_id=rule_id)
        self.session.delete(rule)
        self.session.commit()

    def seed_default_rules(self) -> int:
        """규칙이 하나도 없을 때만 기본 규칙을 넣습니다. 추가된 개수를 반환."""
        existing = self.session.scalars(select(PriceRule.id).limit(1)).first()
        if existing is not None:
            logger.info("가격 규칙이 이미 존재하여 기본 규칙 시드를 건너뜁니다.")
            return 0
        for data in DEFAULT_RULES:
            self.session.add(PriceRule(**data))
        self.session.commit()
        logger.info(f"기본 가격 규칙 {len(DEFAULT_RULES)}개를 생성했습니다.")
        return len(DEFAULT_RULES)
