from datetime import datetime
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class SupplierProductResponse(BaseModel):
    id: int
    supplier_sku: str
    category: str
    title: str
    brand: Optional[str] = None
    model: Optional[str] = None
    barcode: Optional[str] = None
    current_price: Optional[int] = None
    current_stock: Optional[int] = None
    images: List[str] = Field(default_factory=list)
    validation_status: str
    validation_errors: List[Any] = Field(default_factory=list)
    missing_fields: List[str] = Field(default_factory=list)
    generated_sku: Optional[str] = None
    shopify_product_id: Optional[str] = None
    last_synced_price: Optional[int] = None
    last_synced_stock: Optional[int] = None
    last_synced_at: Optional[datetime] = None
    is_active: bool
    last_seen_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class SupplierProductHistoryResponse(BaseModel):
    id: int
    change_type: str
    old_price: Optional[int] = None
    new_price: Optional[int] = None
    old_stock: Optional[int] = None
    new_stock: Optional[int] = None
    fetch_job_id: Optional[int] = None
    recorded_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class SupplierProductListResponse(BaseModel):
    items: List[SupplierProductResponse]
    total: int
    page: int
    page_size: int
    total_pages: int


class SupplierProductDetailResponse(BaseModel):
    product: SupplierProductResponse
    history: List[SupplierProductHistoryResponse]


class ValidationSettingsUpdate(BaseModel):
    min_price: Optional[int] = Field(default=None, ge=0)
    min_stock: Optional[int] = Field(default=None, ge=0)
    require_image: Optional[bool] = None
    require_brand: Optional[bool] = None


class ValidateRequest(BaseModel):
    category: Optional[str] = None


class RejectRequest(BaseModel):
    reason: str = Field(min_length=1)
