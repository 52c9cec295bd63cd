from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from tiresync.db import get_session
from tiresync.services.cache import CacheService
from tiresync.supplier_client import build_supplier_client

router = APIRouter()


@router.get("/products")
def get_cached_products(
    category: str | None = Query(default=None),
    limit: int | None = Query(default=None, ge=1, le=10000),
    force_refresh: bool = Query(default=False, alias="forceRefresh"),
    session: Session = Depends(get_session),
) -> dict:
    service = CacheService(session)
    if force_refresh or not service.is_cache_valid(category):
        service.supplier = build_supplier_client()
    return service.get_cached_products(category, limit, force_refresh)


@router.get("/status")
def get_cache_status(session: Session = Depends(get_session)) -> dict:
    return CacheService(session).get_all_cache_status()


@router.get("/metadata")
def get_cache_metadata(
    category: str | None = Query(default=None),
    session: Session = Depends(get_session),
) -> dict | None:
    return CacheService(session).get_cache_metadata(category)


@router.post("/refresh")
def refresh_cache(
    category: str | None = Query(default=None),
    session: Session = Depends(get_session),
) -> dict:
    products = CacheService(session, supplier=build_supplier_client()).refresh_cache(category)
    return {"refreshed": len(products)}
