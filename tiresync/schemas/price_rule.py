from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class PriceRuleCreate(BaseModel):
    name: str
    category: str
    match_field: str = "all"
    match_value: Optional[str] = "*"
    percentage_markup: float = Field(default=0.0, ge=0)
    fixed_markup: float = Field(default=0.0, ge=0)
    priority: int = 100
    is_active: bool = True


class PriceRuleUpdate(BaseModel):
    name: Optional[str] = None
    category: Optional[str] = None
    match_field: Optional[str] = None
    match_value: Optional[str] = None
    percentage_markup: Optional[float] = Field(default=None, ge=0)
    fixed_markup: Optional[float] = Field(default=None, ge=0)
    priority: Optional[int] = None
    is_active: Optional[bool] = None


class PriceRuleResponse(BaseModel):
    id: int
    name: str
    category: str
    match_field: str
    match_value: Optional[str] = None
    percentage_markup: float
    fixed_markup: float
    priority: int
    is_active: bool
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class PricePreviewRequest(BaseModel):
    supplier_price: float = Field(ge=0)
    category: str
    brand: Optional[str] = None
    segment: Optional[str] = None


class PricePreviewResponse(BaseModel):
    supplier_price: float
    final_price: float
    margin_percent: float
    fixed_markup: float
    applied_rule_id: Optional[int] = None
    applied_rule_name: Optional[str] = None
