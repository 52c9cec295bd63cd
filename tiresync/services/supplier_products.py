"""
공급사 상품 저장소.

diff 기반 upsert로 가격/재고 변경 시에만 이력을 남깁니다.
같은 입력으로 여러 번 실행해도 결과가 같습니다(idempotent).
"""

from __future__ import annotations

import logging
import threading
import zlib
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Iterator

from sqlalchemy import and_, func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from tiresync.enums import ChangeType, ValidationStatus
from tiresync.exceptions import NotFoundError
from tiresync.models import SupplierProduct, SupplierProductHistory
from tiresync.normalization import SupplierProductData
from tiresync.utils import utcnow

logger = logging.getLogger(__name__)

# 같은 SKU의 upsert가 프로세스 내에서 겹치지 않도록 하는 striped lock
_SKU_LOCK_STRIPES = 64
_sku_locks = [threading.Lock() for _ in range(_SKU_LOCK_STRIPES)]


@contextmanager
def sku_lock(supplier_sku: str) -> Iterator[None]:
    lock = _sku_locks[zlib.crc32(supplier_sku.encode("utf-8")) % _SKU_LOCK_STRIPES]
    with lock:
        yield


@dataclass
class UpsertResult:
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.created + self.updated + self.unchanged + self.failed


@dataclass
class ProductFilters:
    category: str | None = None
    brand: str | None = None
    search: str | None = None
    is_active: bool | None = None
    validation_status: str | None = None
    min_price: int | None = None
    max_price: int | None = None
    in_stock: bool | None = None


SORTABLE_COLUMNS = {
    "title": SupplierProduct.title,
    "brand": SupplierProduct.brand,
    "current_price": SupplierProduct.current_price,
    "current_stock": SupplierProduct.current_stock,
    "last_seen_at": SupplierProduct.last_seen_at,
    "updated_at": SupplierProduct.updated_at,
}


def classify_change(price_changed: bool, stock_changed: bool) -> ChangeType | None:
    if price_changed and stock_changed:
        return ChangeType.BOTH
    if price_changed:
        return ChangeType.PRICE
    if stock_changed:
        return ChangeType.STOCK
    return None


class SupplierProductRepository:
    def __init__(self, session: Session, error_sample_size: int = 10):
        self.session = session
        self.error_sample_size = error_sample_size

    # ------------------------------------------------------------------
    # upsert
    # ------------------------------------------------------------------

    def upsert_many(
        self,
        products: Iterable[SupplierProductData],
        category: str,
        fetch_job_id: int | None = None,
    ) -> UpsertResult:
        """
        상품 목록을 SKU 단위 트랜잭션으로 upsert합니다.

        개별 상품 실패는 집계만 하고 배치를 계속 진행합니다.
        """
        result = UpsertResult()
        for data in products:
            try:
                outcome = self._upsert_with_lock(data, category, fetch_job_id)
            except Exception as e:
                self.session.rollback()
                result.failed += 1
                if len(result.errors) < self.error_sample_size:
                    result.errors.append(f"{data.supplier_sku}: {e}")
                logger.warning(f"상품 upsert 실패 (sku={data.supplier_sku}): {e}")
                continue
            setattr(result, outcome, getattr(result, outcome) + 1)

        logger.info(
            f"[{category}] upsert 완료: 신규 {result.created}, 변경 {result.updated}, "
            f"동일 {result.unchanged}, 실패 {result.failed}"
        )
        return result

    def _upsert_with_lock(self, data: SupplierProductData, category: str, fetch_job_id: int | None) -> str:
        with sku_lock(data.supplier_sku):
            try:
                outcome = self._apply(data, category, fetch_job_id, utcnow())
                self.session.commit()
            except IntegrityError:
                # 다른 세션이 같은 SKU를 먼저 insert한 경우: 갱신 경로로 한 번 더 시도
                self.session.rollback()
                outcome = self._apply(data, category, fetch_job_id, utcnow())
                self.session.commit()
        return outcome

    def _apply(self, data: SupplierProductData, category: str, fetch_job_id: int | None, now: datetime) -> str:
        stmt = (
            select(SupplierProduct)
            .where(SupplierProduct.supplier_sku == data.supplier_sku)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        existing = self.session.scalars(stmt).first()

        if existing is None:
            product = SupplierProduct(
                supplier_sku=data.supplier_sku,
                category=category,
                title=data.title,
                brand=data.brand,
                model=data.model,
                barcode=data.barcode,
                description=data.description,
                current_price=data.price,
                current_stock=data.stock,
                images=list(data.images),
                raw_vendor_payload=data.raw,
                validation_status=ValidationStatus.RAW.value,
                validation_errors=[],
                missing_fields=[],
                is_active=True,
                first_seen_at=now,
                last_seen_at=now,
            )
            self.session.add(product)
            self.session.flush()
            self._record_history(product, ChangeType.NEW, None, data.price, None, data.stock, fetch_job_id)
            return "created"

        price_changed = existing.current_price != data.price
        stock_changed = existing.current_stock != data.stock
        change_type = classify_change(price_changed, stock_changed)

        if change_type is None:
            existing.last_seen_at = now
            existing.is_active = True
            return "unchanged"

        self._record_history(
            existing,
            change_type,
            existing.current_price,
            data.price,
            existing.current_stock,
            data.stock,
            fetch_job_id,
        )
        existing.title = data.title
        existing.brand = data.brand
        existing.model = data.model
        existing.barcode = data.barcode
        existing.description = data.description
        existing.images = list(data.images)
        existing.raw_vendor_payload = data.raw
        existing.current_price = data.price
        existing.current_stock = data.stock
        if price_changed:
            existing.last_price_change_at = now
        if stock_changed:
            existing.last_stock_change_at = now
        # 데이터가 바뀌었으므로 재검증 전까지 게시 불가
        existing.validation_status = ValidationStatus.RAW.value
        existing.last_seen_at = now
        existing.is_active = True
        return "updated"

    def _record_history(
        self,
        product: SupplierProduct,
        change_type: ChangeType,
        old_price: int | None,
        new_price: int | None,
        old_stock: int | None,
        new_stock: int | None,
        fetch_job_id: int | None,
    ) -> None:
        self.session.add(
            SupplierProductHistory(
                product_id=product.id,
                supplier_sku=product.supplier_sku,
                change_type=change_type.value,
                old_price=old_price,
                new_price=new_price,
                old_stock=old_stock,
                new_stock=new_stock,
                fetch_job_id=fetch_job_id,
                recorded_at=utcnow(),
            )
        )

    # ------------------------------------------------------------------
    # 조회
    # ------------------------------------------------------------------

    def get_by_sku(self, supplier_sku: str) -> SupplierProduct | None:
        return self.session.scalars(
            select(SupplierProduct).where(SupplierProduct.supplier_sku == supplier_sku)
        ).first()

    def _filter_clauses(self, filters: ProductFilters) -> list[Any]:
        clauses: list[Any] = []
        if filters.category:
            clauses.append(SupplierProduct.category == filters.category)
        if filters.brand:
            clauses.append(func.lower(SupplierProduct.brand) == filters.brand.lower())
        if filters.search:
            pattern = f"%{filters.search.lower()}%"
            clauses.append(
                or_(
                    func.lower(SupplierProduct.title).like(pattern),
                    func.lower(SupplierProduct.supplier_sku).like(pattern),
                    func.lower(SupplierProduct.brand).like(pattern),
                )
            )
        if filters.is_active is not None:
            clauses.append(SupplierProduct.is_active.is_(filters.is_active))
        if filters.validation_status:
            clauses.append(SupplierProduct.validation_status == filters.validation_status)
        if filters.min_price is not None:
            clauses.append(SupplierProduct.current_price >= filters.min_price)
        if filters.max_price is not None:
            clauses.append(SupplierProduct.current_price <= filters.max_price)
        if filters.in_stock is True:
            clauses.append(SupplierProduct.current_stock > 0)
        elif filters.in_stock is False:
            clauses.append(or_(SupplierProduct.current_stock.is_(None), SupplierProduct.current_stock <= 0))
        return clauses

    def list_products(
        self,
        filters: ProductFilters | None = None,
        page: int = 1,
        page_size: int = 50,
        sort_by: str = "updated_at",
        sort_order: str = "desc",
    ) -> dict[str, Any]:
        filters = filters or ProductFilters()
        clauses = self._filter_clauses(filters)
        where = and_(*clauses) if clauses else None

        count_stmt = select(func.count()).select_from(SupplierProduct)
        stmt = select(SupplierProduct)
        if where is not None:
            count_stmt = count_stmt.where(where)
            stmt = stmt.where(where)

        column = SORTABLE_COLUMNS.get(sort_by, SupplierProduct.updated_at)
        order = column.asc() if sort_order == "asc" else column.desc()
        page = max(1, page)
        stmt = stmt.order_by(order, SupplierProduct.id.asc()).offset((page - 1) * page_size).limit(page_size)

        total = self.session.scalar(count_stmt) or 0
        return {
            "items": list(self.session.scalars(stmt).all()),
            "total": total,
            "page": page,
            "page_size": page_size,
            "total_pages": (total + page_size - 1) // page_size if page_size else 0,
        }

    def get_history(self, product_id: int, limit: int = 20) -> list[SupplierProductHistory]:
        stmt = (
            select(SupplierProductHistory)
            .where(SupplierProductHistory.product_id == product_id)
            .order_by(SupplierProductHistory.id.desc())
            .limit(limit)
        )
        return list(self.session.scalars(stmt).all())

    def get_detail(self, supplier_sku: str, history_limit: int = 20) -> dict[str, Any]:
        product = self.get_by_sku(supplier_sku)
        if product is None:
            raise NotFoundError(f"상품을 찾을 수 없습니다: {supplier_sku}", supplier_sku=supplier_sku)
        return {"product": product, "history": self.get_history(product.id, history_limit)}

    def get_stats(self, category: str | None = None) -> dict[str, Any]:
        base = select(SupplierProduct)
        if category:
            base = base.where(SupplierProduct.category == category)
        sub = base.subquery()

        row = self.session.execute(
            select(
                func.count(),
                func.sum(func.coalesce(sub.c.current_stock, 0)),
                func.avg(sub.c.current_price),
                func.min(sub.c.current_price),
                func.max(sub.c.current_price),
                func.count(func.distinct(sub.c.brand)),
            ).select_from(sub)
        ).one()
        status_rows = self.session.execute(
            select(sub.c.validation_status, func.count()).group_by(sub.c.validation_status)
        ).all()
        in_stock = self.session.scalar(
            select(func.count()).select_from(sub).where(sub.c.current_stock > 0)
        )
        return {
            "category": category,
            "total": row[0] or 0,
            "total_stock": int(row[1] or 0),
            "avg_price": float(row[2]) if row[2] is not None else None,
            "min_price": row[3],
            "max_price": row[4],
            "brand_count": row[5] or 0,
            "in_stock": in_stock or 0,
            "by_status": {status: count for status, count in status_rows},
        }

    def get_overall_stats(self) -> dict[str, Any]:
        categories = [c for (c,) in self.session.execute(select(SupplierProduct.category).distinct()).all()]
        return {
            "overall": self.get_stats(None),
            "by_category": {c: self.get_stats(c) for c in sorted(categories)},
        }

    def get_brands(self, category: str | None = None) -> list[dict[str, Any]]:
        stmt = (
            select(SupplierProduct.brand, func.count())
            .where(SupplierProduct.brand.is_not(None))
            .group_by(SupplierProduct.brand)
            .order_by(func.count().desc(), SupplierProduct.brand.asc())
        )
        if category:
            stmt = stmt.where(SupplierProduct.category == category)
        return [{"brand": brand, "count": count} for brand, count in self.session.execute(stmt).all()]

    def get_recent_changes(self, limit: int = 50, category: str | None = None) -> list[dict[str, Any]]:
        stmt = (
            select(SupplierProductHistory, SupplierProduct.title, SupplierProduct.category)
            .join(SupplierProduct, SupplierProduct.id == SupplierProductHistory.product_id)
            .order_by(SupplierProductHistory.id.desc())
            .limit(limit)
        )
        if category:
            stmt = stmt.where(SupplierProduct.category == category)
        return [
            {
                "supplier_sku": history.supplier_sku,
                "title": title,
                "category": cat,
                "change_type": history.change_type,
                "old_price": history.old_price,
                "new_price": history.new_price,
                "old_stock": history.old_stock,
                "new_stock": history.new_stock,
                "fetch_job_id": history.fetch_job_id,
                "recorded_at": history.recorded_at,
            }
            for history, title, cat in self.session.execute(stmt).all()
        ]
