from dataclasses import asdict

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from tiresync.db import get_session
from tiresync.enums import ProductCategory
from tiresync.schemas.supplier_product import (
    RejectRequest,
    SupplierProductDetailResponse,
    SupplierProductListResponse,
    SupplierProductResponse,
    ValidateRequest,
    ValidationSettingsUpdate,
)
from tiresync.services.supplier_products import ProductFilters, SupplierProductRepository
from tiresync.services.validation import ValidationService

router = APIRouter()


def _category(value: str | None) -> str | None:
    if not value:
        return None
    try:
        return ProductCategory.parse(value).value
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.get("", response_model=SupplierProductListResponse)
def list_supplier_products(
    session: Session = Depends(get_session),
    category: str | None = Query(default=None),
    brand: str | None = Query(default=None),
    search: str | None = Query(default=None),
    is_active: bool | None = Query(default=None),
    validation_status: str | None = Query(default=None),
    min_price: int | None = Query(default=None, ge=0),
    max_price: int | None = Query(default=None, ge=0),
    in_stock: bool | None = Query(default=None),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=50, ge=1, le=200),
    sort_by: str = Query(default="updated_at"),
    sort_order: str = Query(default="desc", pattern="^(asc|desc)$"),
):
    filters = ProductFilters(
        category=_category(category),
        brand=brand,
        search=search,
        is_active=is_active,
        validation_status=validation_status,
        min_price=min_price,
        max_price=max_price,
        in_stock=in_stock,
    )
    return SupplierProductRepository(session).list_products(filters, page, page_size, sort_by, sort_order)


@router.get("/stats")
def get_supplier_product_stats(
    category: str | None = Query(default=None),
    session: Session = Depends(get_session),
) -> dict:
    repository = SupplierProductRepository(session)
    if category:
        return repository.get_stats(_category(category))
    return repository.get_overall_stats()


@router.get("/brands")
def get_supplier_brands(
    category: str | None = Query(default=None),
    session: Session = Depends(get_session),
) -> list[dict]:
    return SupplierProductRepository(session).get_brands(_category(category))


@router.get("/changes")
def get_recent_changes(
    category: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    session: Session = Depends(get_session),
) -> list[dict]:
    return SupplierProductRepository(session).get_recent_changes(limit, _category(category))


# --- 검증 ---

@router.post("/validate")
def validate_supplier_products(payload: ValidateRequest, session: Session = Depends(get_session)) -> dict:
    return asdict(ValidationService(session).validate_all(_category(payload.category)))


@router.get("/validation/stats")
def get_validation_stats(
    category: str | None = Query(default=None),
    session: Session = Depends(get_session),
) -> dict:
    return ValidationService(session).get_validation_stats(_category(category))


@router.get("/validation/settings")
def get_validation_settings(session: Session = Depends(get_session)) -> dict:
    return asdict(ValidationService(session).get_settings())


@router.put("/validation/settings")
def update_validation_settings(payload: ValidationSettingsUpdate, session: Session = Depends(get_session)) -> dict:
    config = ValidationService(session).update_settings(**payload.model_dump(exclude_none=True))
    return asdict(config)


@router.post("/{product_id}/approve", response_model=SupplierProductResponse)
def approve_supplier_product(product_id: int, session: Session = Depends(get_session)):
    return ValidationService(session).approve_product(product_id)


@router.post("/{product_id}/reject", response_model=SupplierProductResponse)
def reject_supplier_product(product_id: int, payload: RejectRequest, session: Session = Depends(get_session)):
    return ValidationService(session).reject_product(product_id, payload.reason)


@router.get("/{supplier_sku}", response_model=SupplierProductDetailResponse)
def get_supplier_product(
    supplier_sku: str,
    history_limit: int = Query(default=20, ge=1, le=200),
    session: Session = Depends(get_session),
):
    return SupplierProductRepository(session).get_detail(supplier_sku, history_limit)
