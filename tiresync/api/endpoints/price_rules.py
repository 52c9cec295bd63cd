from dataclasses import asdict

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from tiresync.db import get_session
from tiresync.enums import ProductCategory
from tiresync.schemas.price_rule import (
    PricePreviewRequest,
    PricePreviewResponse,
    PriceRuleCreate,
    PriceRuleResponse,
    PriceRuleUpdate,
)
from tiresync.services.pricing import PricingRulesService

router = APIRouter()


@router.get("", response_model=list[PriceRuleResponse])
def list_price_rules(
    category: str | None = Query(default=None),
    session: Session = Depends(get_session),
):
    return PricingRulesService(session).list_rules(category)


@router.post("", response_model=PriceRuleResponse, status_code=201)
def create_price_rule(payload: PriceRuleCreate, session: Session = Depends(get_session)):
    try:
        return PricingRulesService(session).create_rule(**payload.model_dump())
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.patch("/{rule_id}", response_model=PriceRuleResponse)
def update_price_rule(rule_id: int, payload: PriceRuleUpdate, session: Session = Depends(get_session)):
    try:
        return PricingRulesService(session).update_rule(rule_id, **payload.model_dump(exclude_unset=True))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.delete("/{rule_id}", status_code=204)
def delete_price_rule(rule_id: int, session: Session = Depends(get_session)) -> None:
    PricingRulesService(session).delete_rule(rule_id)


@router.post("/seed")
def seed_price_rules(session: Session = Depends(get_session)) -> dict:
    return {"created": PricingRulesService(session).seed_default_rules()}


@router.post("/preview", response_model=PricePreviewResponse)
def preview_price(payload: PricePreviewRequest, session: Session = Depends(get_session)):
    """규칙을 적용했을 때의 판매가를 미리 계산합니다."""
    try:
        category = ProductCategory.parse(payload.category).value
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    result = PricingRulesService(session).apply_pricing(
        payload.supplier_price, category, brand=payload.brand, segment=payload.segment
    )
    return asdict(result)
