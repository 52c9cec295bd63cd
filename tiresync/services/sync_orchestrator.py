"""
공급사 → 스토어프론트 동기화 파이프라인.

1단계: Ingest   - Fetch Job 컨트롤러로 카테고리별 수집
2단계: Validate - 카테고리별 validate_all, validation-only 모드는 여기서 종료
3단계: Publish  - valid는 생성, needs_update는 변경분만 갱신, inactive는 재고 0 처리

원격 호출은 제한된 스레드 풀에서 병렬로 실행하고, DB 쓰기는 모두 호출 스레드에서 수행합니다.
상품 단위 실패는 집계/기록만 하고 배치를 중단하지 않습니다.
"""

from __future__ import annotations

import hashlib
import json
import logging
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Protocol

from pydantic import BaseModel, Field, field_validator
from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from tiresync.enums import ALL_CATEGORIES, FetchJobStatus, ProductCategory, SyncAction, SyncMode, TriggeredBy, ValidationStatus
from tiresync.exceptions import ConfigurationError, TerminalRemoteError
from tiresync.models import ProductMap, SupplierProduct, SyncItem, SyncSession
from tiresync.services.description import generate_description
from tiresync.services.fetch_jobs import FetchJobService, SupplierFeed
from tiresync.services.metafields import CATEGORY_LABELS, MetafieldInput, build_product_metafields
from tiresync.services.pricing import PricingResult, PricingRulesService
from tiresync.services.rate_limiter import get_shared_rate_limiter
from tiresync.services.title_parser import enrich_metafields
from tiresync.services.validation import ValidationService
from tiresync.settings import settings
from tiresync.shopify_client import CreatedProduct, CreateProductInput, StorefrontProduct, build_shopify_client
from tiresync.supplier_client import build_supplier_client
from tiresync.utils import utcnow

logger = logging.getLogger(__name__)

PUBLISHABLE_STATUSES = (
    ValidationStatus.VALID.value,
    ValidationStatus.NEEDS_UPDATE.value,
    ValidationStatus.INACTIVE.value,
)

SUPPLIER_NAME = "Tedarikçi"


class Storefront(Protocol):
    def find_by_sku(self, sku: str) -> StorefrontProduct | None: ...

    def create_product(self, product: CreateProductInput) -> CreatedProduct: ...

    def update_variant_price(self, variant_id: str, price: float, product_id: str | None = None) -> None: ...

    def set_inventory(self, inventory_item_id: str, location_id: str | None, quantity: int) -> None: ...

    def set_metafields(self, owner_id: str, entries: list[MetafieldInput]) -> int: ...


class SyncConfig(BaseModel):
    mode: SyncMode = SyncMode.FULL
    categories: list[ProductCategory] = Field(default_factory=lambda: list(ALL_CATEGORIES))
    dry_run: bool = False
    validate_first: bool = True

    @field_validator("categories", mode="before")
    @classmethod
    def validate_categories(cls, v: Any) -> Any:
        if v is None or v == []:
            return list(ALL_CATEGORIES)
        if isinstance(v, str):
            v = [c.strip() for c in v.split(",") if c.strip()]
        return [ProductCategory.parse(c) for c in v]


@dataclass
class SyncResult:
    session_id: str | None = None
    status: str = "running"
    mode: str = SyncMode.FULL.value
    dry_run: bool = False
    categories: list[str] = field(default_factory=list)

    fetch_job_id: int | None = None
    fetch_status: str | None = None
    fetched: int = 0

    validated: int = 0
    valid_count: int = 0
    invalid_count: int = 0
    needs_update_count: int = 0
    published_count: int = 0
    inactive_count: int = 0

    created: int = 0
    updated: int = 0
    deactivated: int = 0
    skipped: int = 0
    failed: int = 0

    errors: list[str] = field(default_factory=list)
    error_count: int = 0
    started_at: datetime | None = None
    finished_at: datetime | None = None

    def add_error(self, message: str, limit: int) -> None:
        self.error_count += 1
        if len(self.errors) < limit:
            self.errors.append(message)

    def stats(self) -> dict[str, Any]:
        data = asdict(self)
        for key in ("session_id", "status", "errors", "started_at", "finished_at", "categories"):
            data.pop(key, None)
        return data


@dataclass(frozen=True)
class ProductSnapshot:
    """스레드 풀로 넘기는 ORM 비의존 상품 스냅샷."""

    id: int
    supplier_sku: str
    category: str
    title: str
    brand: str | None
    description: str | None
    barcode: str | None
    images: tuple[str, ...]
    current_price: int | None
    current_stock: int | None
    generated_sku: str | None
    validation_status: str
    shopify_product_id: str | None
    shopify_variant_id: str | None
    shopify_inventory_item_id: str | None
    last_synced_price: int | None
    last_synced_stock: int | None

    @classmethod
    def from_model(cls, product: SupplierProduct) -> "ProductSnapshot":
        return cls(
            id=product.id,
            supplier_sku=product.supplier_sku,
            category=product.category,
            title=product.title,
            brand=product.brand,
            description=product.description,
            barcode=product.barcode,
            images=tuple(product.images or []),
            current_price=product.current_price,
            current_stock=product.current_stock,
            generated_sku=product.generated_sku,
            validation_status=product.validation_status,
            shopify_product_id=product.shopify_product_id,
            shopify_variant_id=product.shopify_variant_id,
            shopify_inventory_item_id=product.shopify_inventory_item_id,
            last_synced_price=product.last_synced_price,
            last_synced_stock=product.last_synced_stock,
        )

    @property
    def action(self) -> SyncAction:
        if self.validation_status == ValidationStatus.INACTIVE.value:
            return SyncAction.DEACTIVATE
        if self.validation_status == ValidationStatus.NEEDS_UPDATE.value:
            return SyncAction.UPDATE
        return SyncAction.CREATE

    @property
    def storefront_sku(self) -> str:
        return self.generated_sku or self.supplier_sku


@dataclass
class PublishPlan:
    snapshot: ProductSnapshot
    pricing: PricingResult | None = None
    metafields: list[MetafieldInput] = field(default_factory=list)
    description_html: str | None = None


@dataclass
class PublishOutcome:
    plan: PublishPlan
    product_id: str | None = None
    variant_id: str | None = None
    inventory_item_id: str | None = None
    message: str = ""
    details: dict[str, Any] = field(default_factory=dict)


def compute_data_hash(snapshot: ProductSnapshot, final_price: float | None) -> str:
    payload = {
        "title": snapshot.title,
        "brand": snapshot.brand,
        "price": snapshot.current_price,
        "final_price": final_price,
        "stock": snapshot.current_stock,
        "images": list(snapshot.images),
    }
    return hashlib.sha256(json.dumps(payload, sort_keys=True, ensure_ascii=False).encode("utf-8")).hexdigest()


class SyncOrchestrator:
    def __init__(
        self,
        session: Session,
        supplier: SupplierFeed | None = None,
        storefront: Storefront | None = None,
        publish_concurrency: int | None = None,
        error_limit: int | None = None,
        validation: ValidationService | None = None,
        pricing: PricingRulesService | None = None,
        fetch_jobs: FetchJobService | None = None,
    ):
        self.session = session
        self.supplier = supplier
        self.storefront = storefront
        self.publish_concurrency = publish_concurrency or settings.sync_publish_concurrency
        self.error_limit = error_limit or settings.sync_error_limit
        self.validation = validation or ValidationService(session)
        self.pricing = pricing or PricingRulesService(session)
        self.fetch_jobs = fetch_jobs or FetchJobService(session, supplier=supplier)

    # ------------------------------------------------------------------
    # entry point
    # ------------------------------------------------------------------

    def run_sync(self, config: SyncConfig | dict[str, Any] | None = None) -> SyncResult:
        """
        동기화 1회 실행.

        설정 누락(ConfigurationError)과 활성 작업 충돌(ConcurrencyConflict)만 즉시 예외로 올리고,
        그 외 실패는 SyncResult의 카운트와 errors로 보고합니다.
        """
        if config is None:
            config = SyncConfig()
        elif isinstance(config, dict):
            config = SyncConfig.model_validate(config)

        categories = [c.value for c in config.categories]
        needs_ingest = config.mode == SyncMode.FULL
        needs_publish = config.mode != SyncMode.VALIDATION_ONLY
        needs_validate = config.mode == SyncMode.VALIDATION_ONLY or config.validate_first

        if needs_ingest and self.supplier is None:
            raise ConfigurationError("수집 단계에 필요한 공급사 클라이언트가 없습니다", missing=["supplier"])
        if needs_publish and not config.dry_run and self.storefront is None:
            raise ConfigurationError("게시 단계에 필요한 스토어프론트 클라이언트가 없습니다", missing=["storefront"])

        # 활성 작업 충돌은 세션 생성 전에 드러나야 함
        fetch_job = self.fetch_jobs.create_job(categories, TriggeredBy.MANUAL) if needs_ingest else None

        result = SyncResult(
            mode=config.mode.value,
            dry_run=config.dry_run,
            categories=categories,
            started_at=utcnow(),
        )
        sync_session = SyncSession(
            mode=config.mode.value,
            dry_run=config.dry_run,
            status="running",
            categories=categories,
            stats={},
            error_summary=[],
            started_at=result.started_at,
        )
        self.session.add(sync_session)
        self.session.commit()
        result.session_id = str(sync_session.id)
        logger.info(f"[SYNC] 세션 {result.session_id} 시작: mode={config.mode.value}, dry_run={config.dry_run}, categories={categories}")

        fatal = False
        try:
            if fetch_job is not None:
                self._ingest(fetch_job.id, result)
            if needs_validate:
                self._validate(categories, result)
            if needs_publish:
                self._publish(sync_session, categories, config.dry_run, result)
        except Exception as e:
            fatal = True
            self.session.rollback()
            logger.exception(f"[SYNC] 세션 {result.session_id} 실패: {e}")
            result.add_error(f"sync aborted: {e}", self.error_limit)

        result.finished_at = utcnow()
        if fatal:
            result.status = "failed"
        elif result.error_count:
            result.status = "completed_with_errors"
        else:
            result.status = "completed"

        sync_session.status = result.status
        sync_session.stats = json.loads(json.dumps(result.stats(), default=str))
        sync_session.error_summary = list(result.errors)
        sync_session.finished_at = result.finished_at
        self.session.commit()
        logger.info(
            f"[SYNC] 세션 {result.session_id} 종료 ({result.status}): 생성 {result.created}, 갱신 {result.updated}, "
            f"비활성 {result.deactivated}, 건너뜀 {result.skipped}, 실패 {result.failed}"
        )
        return result

    # ------------------------------------------------------------------
    # phases
    # ------------------------------------------------------------------

    def _ingest(self, job_id: int, result: SyncResult) -> None:
        job = self.fetch_jobs.process_job(job_id)
        result.fetch_job_id = job.id
        result.fetch_status = job.status
        result.fetched = job.products_fetched
        if job.status != FetchJobStatus.COMPLETED.value:
            detail = job.error_message or (
                f"retry after {job.rate_limit_wait_seconds}s" if job.status == FetchJobStatus.RATE_LIMITED.value else ""
            )
            result.add_error(f"fetch job {job.id} {job.status}: {detail}".strip(), self.error_limit)

    def _validate(self, categories: list[str], result: SyncResult) -> None:
        for category in categories:
            stats = self.validation.validate_all(category)
            result.validated += stats.total
            result.valid_count += stats.valid
            result.invalid_count += stats.invalid
            result.needs_update_count += stats.needs_update
            result.published_count += stats.published
            result.inactive_count += stats.inactive

    def _load_candidates(self, categories: list[str]) -> list[ProductSnapshot]:
        stmt = (
            select(SupplierProduct)
            .where(
                SupplierProduct.category.in_(categories),
                SupplierProduct.validation_status.in_(PUBLISHABLE_STATUSES),
                # 이미 재고 0으로 내린 inactive 상품은 다시 호출하지 않음
                or_(
                    SupplierProduct.validation_status != ValidationStatus.INACTIVE.value,
                    SupplierProduct.last_synced_stock.is_(None),
                    SupplierProduct.last_synced_stock != 0,
                ),
            )
            .order_by(SupplierProduct.id.asc())
        )
        return [ProductSnapshot.from_model(p) for p in self.session.scalars(stmt).all()]

    def _plan(self, snapshot: ProductSnapshot) -> PublishPlan:
        plan = PublishPlan(snapshot=snapshot)
        if snapshot.action == SyncAction.DEACTIVATE or snapshot.current_price is None:
            return plan
        plan.pricing = self.pricing.apply_pricing(snapshot.current_price / 100, snapshot.category, brand=snapshot.brand)
        if snapshot.action == SyncAction.CREATE:
            parsed = enrich_metafields(snapshot.title, snapshot.category)
            plan.description_html = generate_description(
                snapshot.category, snapshot.title, snapshot.brand, parsed, supplier_description=snapshot.description
            )
            plan.metafields = build_product_metafields(
                snapshot.category,
                parsed,
                brand=snapshot.brand,
                supplier_name=SUPPLIER_NAME,
            )
        return plan

    def _publish(self, sync_session: SyncSession, categories: list[str], dry_run: bool, result: SyncResult) -> None:
        snapshots = self._load_candidates(categories)
        logger.info(f"[SYNC] 게시 대상 {len(snapshots)}개 (dry_run={dry_run})")
        if not snapshots:
            return

        plans: list[PublishPlan] = []
        for snapshot in snapshots:
            try:
                plans.append(self._plan(snapshot))
            except Exception as e:
                self._record_failure(sync_session, PublishPlan(snapshot=snapshot), e, result)

        if dry_run:
            for plan in plans:
                self._record_skip(sync_session, plan, result)
            self.session.commit()
            return

        with ThreadPoolExecutor(max_workers=self.publish_concurrency) as executor:
            futures: dict[Future[PublishOutcome], PublishPlan] = {
                executor.submit(self._execute_remote, plan): plan for plan in plans
            }
            for future in as_completed(futures):
                plan = futures[future]
                try:
                    outcome = future.result()
                except Exception as e:
                    self._record_failure(sync_session, plan, e, result)
                    continue
                try:
                    self._apply_outcome(sync_session, outcome, result)
                except Exception as e:
                    self.session.rollback()
                    self._record_failure(sync_session, plan, e, result)

    # ------------------------------------------------------------------
    # remote (worker threads, DB 접근 금지)
    # ------------------------------------------------------------------

    def _execute_remote(self, plan: PublishPlan) -> PublishOutcome:
        action = plan.snapshot.action
        if action == SyncAction.CREATE:
            return self._remote_create(plan)
        if action == SyncAction.UPDATE:
            return self._remote_update(plan)
        return self._remote_deactivate(plan)

    def _resolve_listing(self, snapshot: ProductSnapshot) -> StorefrontProduct | None:
        if snapshot.shopify_product_id and snapshot.shopify_variant_id and snapshot.shopify_inventory_item_id:
            return StorefrontProduct(
                id=snapshot.shopify_product_id,
                variant_id=snapshot.shopify_variant_id,
                inventory_item_id=snapshot.shopify_inventory_item_id,
            )
        return self.storefront.find_by_sku(snapshot.storefront_sku)

    def _remote_create(self, plan: PublishPlan) -> PublishOutcome:
        snapshot = plan.snapshot
        final_price = plan.pricing.final_price if plan.pricing else 0.0

        # 재실행 시 중복 생성을 막기 위해 먼저 SKU로 조회
        existing = self.storefront.find_by_sku(snapshot.storefront_sku)
        if existing is not None:
            if existing.variant_id:
                self.storefront.update_variant_price(existing.variant_id, final_price, product_id=existing.id)
            if existing.inventory_item_id:
                self.storefront.set_inventory(existing.inventory_item_id, None, snapshot.current_stock or 0)
            return PublishOutcome(
                plan=plan,
                product_id=existing.id,
                variant_id=existing.variant_id,
                inventory_item_id=existing.inventory_item_id,
                message="adopted existing storefront listing",
                details={"adopted": True, "final_price": final_price},
            )

        category = ProductCategory.parse(snapshot.category)
        created = self.storefront.create_product(
            CreateProductInput(
                title=snapshot.title,
                sku=snapshot.storefront_sku,
                price=final_price,
                vendor=snapshot.brand,
                product_type=CATEGORY_LABELS[category],
                description_html=plan.description_html,
                tags=[t for t in (category.value, snapshot.brand) if t],
                images=list(snapshot.images),
                barcode=snapshot.barcode,
            )
        )
        metafield_count = self.storefront.set_metafields(created.id, plan.metafields) if plan.metafields else 0
        if created.inventory_item_id:
            self.storefront.set_inventory(created.inventory_item_id, None, snapshot.current_stock or 0)
        return PublishOutcome(
            plan=plan,
            product_id=created.id,
            variant_id=created.variant_id,
            inventory_item_id=created.inventory_item_id,
            message="created",
            details={"final_price": final_price, "metafields": metafield_count},
        )

    def _remote_update(self, plan: PublishPlan) -> PublishOutcome:
        snapshot = plan.snapshot
        listing = self._resolve_listing(snapshot)
        if listing is None:
            raise TerminalRemoteError(f"스토어프론트에서 상품을 찾을 수 없습니다: {snapshot.storefront_sku}")

        price_changed = snapshot.current_price != snapshot.last_synced_price
        stock_changed = snapshot.current_stock != snapshot.last_synced_stock
        details: dict[str, Any] = {"price_changed": price_changed, "stock_changed": stock_changed}

        if price_changed and plan.pricing is not None:
            if not listing.variant_id:
                raise TerminalRemoteError(f"variant ID가 없습니다: {snapshot.storefront_sku}")
            self.storefront.update_variant_price(listing.variant_id, plan.pricing.final_price, product_id=listing.id)
            details["final_price"] = plan.pricing.final_price
        if stock_changed:
            if not listing.inventory_item_id:
                raise TerminalRemoteError(f"inventory item ID가 없습니다: {snapshot.storefront_sku}")
            self.storefront.set_inventory(listing.inventory_item_id, None, snapshot.current_stock or 0)
            details["stock"] = snapshot.current_stock
        return PublishOutcome(
            plan=plan,
            product_id=listing.id,
            variant_id=listing.variant_id,
            inventory_item_id=listing.inventory_item_id,
            message="updated",
            details=details,
        )

    def _remote_deactivate(self, plan: PublishPlan) -> PublishOutcome:
        snapshot = plan.snapshot
        listing = self._resolve_listing(snapshot)
        if listing is None or not listing.inventory_item_id:
            return PublishOutcome(
                plan=plan,
                product_id=snapshot.shopify_product_id,
                message="storefront listing not found, nothing to zero",
                details={"not_found": True},
            )
        # 원격 상품은 삭제하지 않고 재고만 0으로
        self.storefront.set_inventory(listing.inventory_item_id, None, 0)
        return PublishOutcome(
            plan=plan,
            product_id=listing.id,
            variant_id=listing.variant_id,
            inventory_item_id=listing.inventory_item_id,
            message="inventory zeroed",
        )

    # ------------------------------------------------------------------
    # DB 반영 (호출 스레드)
    # ------------------------------------------------------------------

    def _apply_outcome(self, sync_session: SyncSession, outcome: PublishOutcome, result: SyncResult) -> None:
        snapshot = outcome.plan.snapshot
        action = snapshot.action
        product = self.session.get(SupplierProduct, snapshot.id)
        if product is None:
            raise TerminalRemoteError(f"게시 후 상품 레코드가 사라졌습니다: {snapshot.supplier_sku}")

        now = utcnow()
        final_price = outcome.plan.pricing.final_price if outcome.plan.pricing else None
        if outcome.product_id:
            product.shopify_product_id = outcome.product_id
        if outcome.variant_id:
            product.shopify_variant_id = outcome.variant_id
        if outcome.inventory_item_id:
            product.shopify_inventory_item_id = outcome.inventory_item_id

        if action == SyncAction.DEACTIVATE:
            product.last_synced_stock = 0
            product.validation_status = ValidationStatus.INACTIVE.value
            result.deactivated += 1
        else:
            product.last_synced_price = snapshot.current_price
            product.last_synced_stock = snapshot.current_stock
            product.validation_status = ValidationStatus.PUBLISHED.value
            if action == SyncAction.CREATE:
                result.created += 1
            else:
                result.updated += 1
        product.last_synced_at = now

        if product.shopify_product_id:
            self._upsert_product_map(product, compute_data_hash(snapshot, final_price), now)

        self.session.add(
            SyncItem(
                session_id=sync_session.id,
                supplier_sku=snapshot.supplier_sku,
                action=action.value,
                status="success",
                message=outcome.message,
                details=json.loads(json.dumps(outcome.details, default=str)),
            )
        )
        self.session.commit()

    def _upsert_product_map(self, product: SupplierProduct, data_hash: str, now: datetime) -> None:
        mapping = self.session.scalars(
            select(ProductMap).where(ProductMap.supplier_sku == product.supplier_sku)
        ).first()
        if mapping is None:
            mapping = ProductMap(supplier_sku=product.supplier_sku, category=product.category)
            self.session.add(mapping)
        mapping.generated_sku = product.generated_sku
        mapping.shopify_product_id = product.shopify_product_id
        mapping.shopify_variant_id = product.shopify_variant_id
        mapping.inventory_item_id = product.shopify_inventory_item_id
        mapping.data_hash = data_hash
        mapping.last_sync_at = now

    def _record_skip(self, sync_session: SyncSession, plan: PublishPlan, result: SyncResult) -> None:
        result.skipped += 1
        details: dict[str, Any] = {"dry_run": True}
        if plan.pricing is not None:
            details["final_price"] = plan.pricing.final_price
            details["rule_id"] = plan.pricing.applied_rule_id
        self.session.add(
            SyncItem(
                session_id=sync_session.id,
                supplier_sku=plan.snapshot.supplier_sku,
                action=plan.snapshot.action.value,
                status="skipped",
                message="dry run",
                details=details,
            )
        )

    def _record_failure(
        self, sync_session: SyncSession, plan: PublishPlan, error: Exception, result: SyncResult
    ) -> None:
        snapshot = plan.snapshot
        result.failed += 1
        result.add_error(f"{snapshot.supplier_sku}: {error}", self.error_limit)
        logger.warning(f"[SYNC] {snapshot.action.value} 실패 (sku={snapshot.supplier_sku}): {error}")
        self.session.add(
            SyncItem(
                session_id=sync_session.id,
                supplier_sku=snapshot.supplier_sku,
                action=snapshot.action.value,
                status="failed",
                message=str(error)[:1000],
                details={"error_type": error.__class__.__name__},
            )
        )
        self.session.commit()


def build_orchestrator(session: Session, config: SyncConfig) -> SyncOrchestrator:
    """설정으로 필요한 클라이언트만 생성합니다. 자격 증명 누락은 ConfigurationError."""
    supplier = build_supplier_client() if config.mode == SyncMode.FULL else None
    storefront = None
    if config.mode != SyncMode.VALIDATION_ONLY and not config.dry_run:
        storefront = build_shopify_client(get_shared_rate_limiter())
    return SyncOrchestrator(session, supplier=supplier, storefront=storefront)
