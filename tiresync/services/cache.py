from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from tiresync.enums import ALL_CATEGORIES, CacheStatus, ProductCategory
from tiresync.exceptions import ConfigurationError, RateLimited
from tiresync.models import CacheMetadata, ProductsCache
from tiresync.normalization import SupplierProductData
from tiresync.services.fetch_jobs import SupplierFeed
from tiresync.settings import settings
from tiresync.utils import ensure_aware, utcnow

logger = logging.getLogger(__name__)


def _categories(category: ProductCategory | str | None) -> list[str]:
    if category is None:
        return [c.value for c in ALL_CATEGORIES]
    return [ProductCategory.parse(category).value]


def _is_stale(metadata: CacheMetadata, now: datetime) -> bool:
    if metadata.last_fetch_at is None:
        return True
    interval = metadata.refresh_interval_hours or settings.cache_refresh_interval_hours
    return now - ensure_aware(metadata.last_fetch_at) > timedelta(hours=interval)


def _to_dict(row: ProductsCache) -> dict[str, Any]:
    data = dict(row.data or {})
    data.update(
        {
            "supplier_sku": row.supplier_sku,
            "category": row.category,
            "title": row.title,
            "brand": row.brand,
            "price": row.price,
            "stock": row.stock,
        }
    )
    return data


class CacheService:
    """
    카테고리별 공급사 카탈로그 스냅샷.

    SupplierProduct와는 독립적이며, 미리보기/UI처럼 상류 API를 매번 호출할 필요가 없는 경로에서 사용합니다.
    새로고침이 실패하면 메타데이터에 오류를 남기고 기존(오래된) 캐시를 그대로 돌려줍니다.
    """

    def __init__(
        self,
        session: Session,
        supplier: SupplierFeed | None = None,
        page_size: int | None = None,
        max_pages: int | None = None,
    ):
        self.session = session
        self.supplier = supplier
        self.page_size = page_size or settings.supplier_page_size
        self.max_pages = max_pages or settings.fetch_max_pages

    def get_cached_products(
        self,
        category: ProductCategory | str | None = None,
        limit: int | None = None,
        force_refresh: bool = False,
    ) -> dict[str, Any]:
        if not force_refresh and self.is_cache_valid(category):
            metadata = self.get_cache_metadata(category)
            return {
                "products": self._read_cache(category, limit),
                "from_cache": True,
                "last_fetch_at": metadata["last_fetch_at"] if metadata else None,
            }

        products = self.refresh_cache(category)
        return {
            "products": products[:limit] if limit else products,
            "from_cache": False,
            "last_fetch_at": utcnow(),
        }

    def is_cache_valid(self, category: ProductCategory | str | None = None) -> bool:
        now = utcnow()
        for cat in _categories(category):
            metadata = self.session.get(CacheMetadata, cat)
            if metadata is None or _is_stale(metadata, now):
                return False
        return True

    def _read_cache(self, category: ProductCategory | str | None, limit: int | None = None) -> list[dict[str, Any]]:
        stmt = select(ProductsCache).where(ProductsCache.category.in_(_categories(category))).order_by(ProductsCache.id)
        if limit:
            stmt = stmt.limit(limit)
        return [_to_dict(row) for row in self.session.scalars(stmt).all()]

    def _fetch_all(self, category: str) -> list[SupplierProductData]:
        products: list[SupplierProductData] = []
        for page in range(1, self.max_pages + 1):
            supplier_page = self.supplier.fetch_page(category, page, self.page_size)
            products.extend(supplier_page.products)
            if not supplier_page.has_more:
                break
        return products

    def refresh_cache(self, category: ProductCategory | str | None = None) -> list[dict[str, Any]]:
        if self.supplier is None:
            raise ConfigurationError("공급사 클라이언트가 설정되지 않았습니다", missing=["supplier"])

        results: list[dict[str, Any]] = []
        for cat in _categories(category):
            self._update_metadata(cat, status=CacheStatus.FETCHING.value)
            try:
                products = self._fetch_all(cat)
            except RateLimited as e:
                logger.warning(f"[CACHE] {cat} 캐시 갱신 중 rate limit ({e.wait_seconds}s), 기존 캐시 사용")
                self._update_metadata(cat, status=CacheStatus.RATE_LIMITED.value, last_error=e.message)
                results.extend(self._read_cache(cat))
                continue
            except Exception as e:
                logger.error(f"[CACHE] {cat} 캐시 갱신 실패: {e}")
                self._update_metadata(cat, status=CacheStatus.ERROR.value, last_error=str(e))
                results.extend(self._read_cache(cat))
                continue

            self._save(cat, products)
            self._update_metadata(
                cat,
                status=CacheStatus.IDLE.value,
                product_count=len(products),
                last_fetch_at=utcnow(),
                last_error=None,
            )
            logger.info(f"[CACHE] {cat} 캐시 갱신 완료: {len(products)}개")
            results.extend(self._read_cache(cat))
        return results

    def _save(self, category: str, products: list[SupplierProductData]) -> None:
        # 같은 SKU가 여러 번 오면 마지막 값을 사용
        unique = {p.supplier_sku: p for p in products}
        now = utcnow()
        self.session.execute(delete(ProductsCache).where(ProductsCache.category == category))
        for p in unique.values():
            self.session.add(
                ProductsCache(
                    category=category,
                    supplier_sku=p.supplier_sku,
                    title=p.title,
                    brand=p.brand,
                    price=p.price,
                    stock=p.stock,
                    data={
                        "model": p.model,
                        "barcode": p.barcode,
                        "description": p.description,
                        "images": list(p.images),
                    },
                    fetched_at=now,
                )
            )
        self.session.commit()

    def _update_metadata(self, category: str, **changes: Any) -> None:
        metadata = self.session.get(CacheMetadata, category)
        if metadata is None:
            metadata = CacheMetadata(
                category=category,
                status=CacheStatus.IDLE.value,
                product_count=0,
                refresh_interval_hours=settings.cache_refresh_interval_hours,
            )
            self.session.add(metadata)
        for key, value in changes.items():
            setattr(metadata, key, value)
        self.session.commit()

    def get_cache_metadata(self, category: ProductCategory | str | None = None) -> dict[str, Any] | None:
        """category가 없으면 전체를 합산합니다 (가장 오래된 last_fetch_at 기준)."""
        if category is not None:
            metadata = self.session.get(CacheMetadata, ProductCategory.parse(category).value)
            if metadata is None:
                return None
            return {
                "category": metadata.category,
                "status": metadata.status,
                "product_count": metadata.product_count,
                "last_fetch_at": metadata.last_fetch_at,
                "last_error": metadata.last_error,
            }

        rows = list(self.session.scalars(select(CacheMetadata)).all())
        if not rows:
            return None
        statuses = {m.status for m in rows}
        if CacheStatus.FETCHING.value in statuses:
            status = CacheStatus.FETCHING.value
        elif CacheStatus.ERROR.value in statuses:
            status = CacheStatus.ERROR.value
        elif CacheStatus.RATE_LIMITED.value in statuses:
            status = CacheStatus.RATE_LIMITED.value
        else:
            status = CacheStatus.IDLE.value
        fetched = [ensure_aware(m.last_fetch_at) for m in rows if m.last_fetch_at]
        oldest = min(fetched) if len(fetched) == len(rows) else None
        return {
            "category": "all",
            "status": status,
            "product_count": sum(m.product_count or 0 for m in rows),
            "last_fetch_at": oldest,
            "last_error": next((m.last_error for m in rows if m.last_error), None),
        }

    def get_all_cache_status(self) -> dict[str, Any]:
        now = utcnow()
        rows = list(self.session.scalars(select(CacheMetadata).order_by(CacheMetadata.category)).all())
        categories = [
            {
                "category": m.category,
                "status": m.status,
                "product_count": m.product_count or 0,
                "last_fetch_at": m.last_fetch_at,
                "is_stale": _is_stale(m, now),
            }
            for m in rows
        ]
        fetched = [ensure_aware(m.last_fetch_at) for m in rows if m.last_fetch_at]
        return {
            "categories": categories,
            "total_products": sum(c["product_count"] for c in categories),
            "oldest_fetch": min(fetched) if fetched else None,
        }
