from typing import Any
from datetime import datetime
import uuid

from sqlalchemy import Boolean, DateTime, Float, ForeignKey, Integer, Text, UniqueConstraint, Uuid, Index
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.sql import func

from tiresync.enums import FetchJobStatus, can_transition
from tiresync.exceptions import InvalidJobTransition


class Base(DeclarativeBase):
    pass


class SupplierProduct(Base):
    """
    공급사 SKU 단위의 상품 레코드.

    supplier_sku는 생성 후 변경되지 않는 자연 키입니다.
    가격은 최소 통화 단위(kuruş) 정수로 저장합니다.
    """
    __tablename__ = "supplier_products"
    __table_args__ = (
        Index("ix_supplier_products_category_status", "category", "validation_status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    supplier_sku: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    category: Mapped[str] = mapped_column(Text, nullable=False)

    title: Mapped[str] = mapped_column(Text, nullable=False)
    brand: Mapped[str | None] = mapped_column(Text, nullable=True)
    model: Mapped[str | None] = mapped_column(Text, nullable=True)
    barcode: Mapped[str | None] = mapped_column(Text, nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    current_price: Mapped[int | None] = mapped_column(Integer, nullable=True)
    current_stock: Mapped[int | None] = mapped_column(Integer, nullable=True)
    images: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)
    raw_vendor_payload: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)

    # 검증 결과
    validation_status: Mapped[str] = mapped_column(Text, nullable=False, default="raw")
    validation_errors: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)
    missing_fields: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)
    generated_sku: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_validated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # 스토어프론트 참조
    shopify_product_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    shopify_variant_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    shopify_inventory_item_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_synced_price: Mapped[int | None] = mapped_column(Integer, nullable=True)
    last_synced_stock: Mapped[int | None] = mapped_column(Integer, nullable=True)
    last_synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    last_price_change_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_stock_change_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    first_seen_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_seen_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    @property
    def is_published(self) -> bool:
        return bool(self.shopify_product_id)


class SupplierProductHistory(Base):
    """가격/재고 변경 원장. append-only."""
    __tablename__ = "supplier_product_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    product_id: Mapped[int] = mapped_column(ForeignKey("supplier_products.id", ondelete="CASCADE"), nullable=False, index=True)
    supplier_sku: Mapped[str] = mapped_column(Text, nullable=False)
    change_type: Mapped[str] = mapped_column(Text, nullable=False)  # new, price, stock, both
    old_price: Mapped[int | None] = mapped_column(Integer, nullable=True)
    new_price: Mapped[int | None] = mapped_column(Integer, nullable=True)
    old_stock: Mapped[int | None] = mapped_column(Integer, nullable=True)
    new_stock: Mapped[int | None] = mapped_column(Integer, nullable=True)
    fetch_job_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    recorded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class FetchJob(Base):
    """
    공급사 카탈로그 수집 작업.

    completed_categories는 재개 커서입니다. 상태 변경은 transition_to()를 통해서만 합니다.
    """
    __tablename__ = "fetch_jobs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_type: Mapped[str] = mapped_column(Text, nullable=False, default="full_fetch")
    status: Mapped[str] = mapped_column(Text, nullable=False, default=FetchJobStatus.PENDING.value)
    categories: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)
    total_categories: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    completed_categories: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    current_category: Mapped[str | None] = mapped_column(Text, nullable=True)
    # 현재 카테고리에서 카운터에 반영된 마지막 페이지 (rate limit 재개 시 중복 집계 방지)
    current_category_page: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    products_fetched: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    products_created: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    products_updated: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    products_unchanged: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    products_failed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_retries: Mapped[int] = mapped_column(Integer, nullable=False, default=5)
    retry_after: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    rate_limit_category: Mapped[str | None] = mapped_column(Text, nullable=True)
    rate_limit_wait_seconds: Mapped[int | None] = mapped_column(Integer, nullable=True)

    triggered_by: Mapped[str] = mapped_column(Text, nullable=False, default="manual")
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_activity_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    @property
    def job_status(self) -> FetchJobStatus:
        return FetchJobStatus(self.status)

    def transition_to(self, target: FetchJobStatus) -> None:
        current = self.job_status
        if not can_transition(current, target):
            raise InvalidJobTransition(current.value, target.value, job_id=self.id)
        self.status = target.value


class PriceRule(Base):
    """카테고리별 가격 규칙. priority가 낮을수록 먼저 평가됩니다."""
    __tablename__ = "price_rules"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[str] = mapped_column(Text, nullable=False)
    match_field: Mapped[str] = mapped_column(Text, nullable=False, default="all")  # brand, segment, all
    match_value: Mapped[str | None] = mapped_column(Text, nullable=True)
    percentage_markup: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    fixed_markup: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=100)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class ValidationSetting(Base):
    __tablename__ = "validation_settings"

    key: Mapped[str] = mapped_column(Text, primary_key=True)
    value: Mapped[Any] = mapped_column(JSONB, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class ProductMap(Base):
    """공급사 SKU ↔ 스토어프론트 상품 ID 매핑."""
    __tablename__ = "product_map"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    supplier_sku: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    generated_sku: Mapped[str | None] = mapped_column(Text, nullable=True)
    category: Mapped[str] = mapped_column(Text, nullable=False)
    shopify_product_id: Mapped[str] = mapped_column(Text, nullable=False)
    shopify_variant_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    inventory_item_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    data_hash: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_sync_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class SyncSession(Base):
    __tablename__ = "sync_sessions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    mode: Mapped[str] = mapped_column(Text, nullable=False)
    dry_run: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    status: Mapped[str] = mapped_column(Text, nullable=False, default="running")
    categories: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)
    stats: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)
    error_summary: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class SyncItem(Base):
    __tablename__ = "sync_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("sync_sessions.id", ondelete="CASCADE"), nullable=False, index=True)
    supplier_sku: Mapped[str] = mapped_column(Text, nullable=False)
    action: Mapped[str] = mapped_column(Text, nullable=False)  # create, update, deactivate
    status: Mapped[str] = mapped_column(Text, nullable=False, default="success")  # success, failed, skipped
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    details: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class ProductsCache(Base):
    """카테고리별 공급사 카탈로그 스냅샷 (미리보기/UI 용도)."""
    __tablename__ = "products_cache"
    __table_args__ = (UniqueConstraint("category", "supplier_sku", name="uq_products_cache_category_sku"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    category: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    supplier_sku: Mapped[str] = mapped_column(Text, nullable=False)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    brand: Mapped[str | None] = mapped_column(Text, nullable=True)
    price: Mapped[int | None] = mapped_column(Integer, nullable=True)
    stock: Mapped[int | None] = mapped_column(Integer, nullable=True)
    data: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)
    fetched_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class CacheMetadata(Base):
    __tablename__ = "cache_metadata"

    category: Mapped[str] = mapped_column(Text, primary_key=True)
    status: Mapped[str] = mapped_column(Text, nullable=False, default="idle")  # idle, fetching, error, rate_limited
    product_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    refresh_interval_hours: Mapped[int] = mapped_column(Integer, nullable=False, default=6)
    last_fetch_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
