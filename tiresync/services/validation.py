"""
상품 게시 가능 여부 검증 엔진.

validate_all은 현재 데이터와 마지막 동기화 스냅샷만으로 다음 상태를 다시 계산합니다.
이전 validation_status에 의존하지 않으므로 여러 번 실행하거나 순서를 바꿔도 결과가 같습니다.
"""

from __future__ import annotations

import logging
import re
import threading
import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Callable

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from tiresync.enums import ProductCategory, ValidationStatus
from tiresync.exceptions import NotFoundError
from tiresync.models import SupplierProduct, ValidationSetting
from tiresync.services.title_parser import parse_detailed
from tiresync.settings import settings
from tiresync.utils import utcnow

logger = logging.getLogger(__name__)

BRAND_CODES: dict[str, str] = {
    "pirelli": "PIR",
    "michelin": "MCH",
    "goodyear": "GDY",
    "bridgestone": "BRD",
    "continental": "CNT",
    "hankook": "HNK",
    "yokohama": "YOK",
    "dunlop": "DUN",
    "firestone": "FRS",
    "bfgoodrich": "BFG",
    "kumho": "KMH",
    "toyo": "TOY",
    "falken": "FLK",
    "nexen": "NXN",
    "maxxis": "MXS",
    "laufenn": "LFN",
    "nokian": "NOK",
    "petlas": "PTL",
    "lassa": "LSA",
    "kormoran": "KRM",
    "debica": "DBC",
    "sava": "SVA",
    "barum": "BRM",
    "semperit": "SMP",
    "kleber": "KLB",
    "uniroyal": "UNR",
    "general": "GNR",
    "gt_radial": "GTR",
    "varta": "VRT",
    "bosch": "BSC",
    "mutlu": "MTL",
    "yuasa": "YSA",
    "exide": "EXD",
    "banner": "BNR",
    "bbs": "BBS",
    "oz": "OZR",
    "mak": "MAK",
    "borbet": "BRB",
    "dezent": "DZT",
    "rial": "RIL",
    "dotz": "DTZ",
}

CATEGORY_CODES: dict[ProductCategory, str] = {
    ProductCategory.TIRE: "TIR",
    ProductCategory.RIM: "JNT",
    ProductCategory.BATTERY: "AKU",
}

UNKNOWN_CODE = "UNK"

SETTING_KEYS = ("min_price", "min_stock", "require_image", "require_brand")


@dataclass(frozen=True)
class ValidationConfig:
    min_price: int = 50000  # 최소 단위
    min_stock: int = 2
    require_image: bool = True
    require_brand: bool = False

    @classmethod
    def from_settings(cls) -> "ValidationConfig":
        return cls(
            min_price=settings.validation_min_price,
            min_stock=settings.validation_min_stock,
            require_image=settings.validation_require_image,
            require_brand=settings.validation_require_brand,
        )


@dataclass
class ValidationResult:
    is_valid: bool
    missing_fields: list[str] = field(default_factory=list)
    errors: list[dict[str, str]] = field(default_factory=list)
    generated_sku: str | None = None


@dataclass
class ValidateAllResult:
    total: int = 0
    valid: int = 0
    invalid: int = 0
    needs_update: int = 0
    published: int = 0
    inactive: int = 0
    by_reason: dict[str, int] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# SKU 생성
# ---------------------------------------------------------------------------

def get_brand_code(brand: str | None) -> str:
    if not brand or not brand.strip():
        return UNKNOWN_CODE
    normalized = re.sub(r"[\s\-]+", "_", brand.strip().lower())
    if normalized in BRAND_CODES:
        return BRAND_CODES[normalized]
    for name, code in BRAND_CODES.items():
        if name in normalized or normalized in name:
            return code
    letters = re.sub(r"[^A-Za-z0-9]", "", brand)
    return letters[:3].upper() if letters else UNKNOWN_CODE


def get_category_code(category: ProductCategory | str) -> str:
    try:
        return CATEGORY_CODES[ProductCategory.parse(category)]
    except ValueError:
        return UNKNOWN_CODE


def _meta(metafields: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = metafields.get(key)
        if value not in (None, ""):
            return value
    return None


def _tire_size_code(title: str, metafields: dict[str, Any]) -> str | None:
    width = _meta(metafields, "width", "lastikGenislik", "genislik")
    ratio = _meta(metafields, "ratio", "aspectRatio", "lastikOran", "profil")
    diameter = _meta(metafields, "diameter", "rimDiameter", "jantCap", "cap")
    if width and ratio and diameter:
        return f"{width}-{ratio}R{diameter}"
    parsed = parse_detailed(title, ProductCategory.TIRE)
    if parsed.success:
        return f"{parsed.data['width']}-{parsed.data['aspectRatio']}R{parsed.data['rimDiameter']}"
    return None


def _rim_size_code(title: str, metafields: dict[str, Any]) -> str | None:
    width = _meta(metafields, "rimWidth", "jantGenislik", "jant_genislik")
    diameter = _meta(metafields, "rimDiameter", "jantCap", "cap")
    if width and diameter:
        return f"{width}x{diameter}"
    parsed = parse_detailed(title, ProductCategory.RIM)
    width = parsed.field_value("rimWidth")
    if parsed.success and width is not None:
        return f"{width}x{parsed.data['rimDiameter']}"
    return None


def _battery_size_code(title: str, metafields: dict[str, Any]) -> str | None:
    capacity = _meta(metafields, "capacity", "kapasite", "akuKapasite")
    if capacity:
        return f"{capacity}AH"
    parsed = parse_detailed(title, ProductCategory.BATTERY)
    if parsed.success:
        return f"{parsed.data['capacity']}AH"
    return None


SIZE_CODE_STRATEGIES: dict[ProductCategory, Callable[[str, dict[str, Any]], str | None]] = {
    ProductCategory.TIRE: _tire_size_code,
    ProductCategory.RIM: _rim_size_code,
    ProductCategory.BATTERY: _battery_size_code,
}


def extract_size_code(category: ProductCategory | str, title: str, metafields: dict[str, Any] | None = None) -> str:
    try:
        strategy = SIZE_CODE_STRATEGIES[ProductCategory.parse(category)]
    except ValueError:
        return UNKNOWN_CODE
    return strategy(title, metafields or {}) or UNKNOWN_CODE


def generate_sku(
    supplier_sku: str,
    category: ProductCategory | str,
    brand: str | None,
    title: str,
    metafields: dict[str, Any] | None = None,
) -> str:
    """{브랜드}-{카테고리}-{사이즈}-{공급사SKU 뒤 6자리}, 전체 대문자."""
    unique_id = re.sub(r"[^A-Za-z0-9]", "", supplier_sku)[-6:] or UNKNOWN_CODE
    parts = [
        get_brand_code(brand),
        get_category_code(category),
        extract_size_code(category, title, metafields),
        unique_id,
    ]
    return "-".join(parts).upper()


# ---------------------------------------------------------------------------
# 검증
# ---------------------------------------------------------------------------

def _has_real_image(images: list[Any] | None) -> bool:
    for image in images or []:
        url = str(image or "").strip()
        if url and "placeholder" not in url.lower():
            return True
    return False


def validate_product(product: SupplierProduct, config: ValidationConfig) -> ValidationResult:
    """가격 → 재고 → 이미지 → 브랜드 순으로 검사합니다. 예외를 던지지 않습니다."""
    missing: list[str] = []
    errors: list[dict[str, str]] = []

    if product.current_price is None or product.current_price <= 0:
        missing.append("price")
        errors.append({"field": "price", "message": "가격 정보가 없습니다"})
    elif product.current_price < config.min_price:
        errors.append(
            {"field": "price", "message": f"가격이 최소 기준({config.min_price}) 미만입니다: {product.current_price}"}
        )

    if product.current_stock is None:
        missing.append("stock")
        errors.append({"field": "stock", "message": "재고 정보가 없습니다"})
    elif product.current_stock < config.min_stock:
        errors.append(
            {"field": "stock", "message": f"재고가 최소 기준({config.min_stock}) 미만입니다: {product.current_stock}"}
        )

    if config.require_image and not _has_real_image(product.images):
        missing.append("image")
        errors.append({"field": "image", "message": "유효한 이미지가 없습니다"})

    if config.require_brand and not (product.brand or "").strip():
        missing.append("brand")
        errors.append({"field": "brand", "message": "브랜드 정보가 없습니다"})

    generated_sku = generate_sku(
        product.supplier_sku,
        product.category,
        product.brand,
        product.title,
        product.raw_vendor_payload if isinstance(product.raw_vendor_payload, dict) else {},
    )
    return ValidationResult(is_valid=not errors, missing_fields=missing, errors=errors, generated_sku=generated_sku)


def has_drift(product: SupplierProduct) -> bool:
    return product.current_price != product.last_synced_price or product.current_stock != product.last_synced_stock


def next_validation_status(is_valid: bool, product: SupplierProduct) -> ValidationStatus:
    """유효성 + 게시 이력 + 동기화 이후 변경 여부로 다음 상태를 결정합니다."""
    if is_valid:
        if not product.is_published:
            return ValidationStatus.VALID
        return ValidationStatus.NEEDS_UPDATE if has_drift(product) else ValidationStatus.PUBLISHED
    return ValidationStatus.INACTIVE if product.is_published else ValidationStatus.INVALID


class ValidationService:
    # 프로세스 단위 설정 캐시 (TTL)
    _cache_lock = threading.Lock()
    _cached_config: ValidationConfig | None = None
    _cached_at: float = 0.0

    def __init__(self, session: Session, cache_ttl: float | None = None, config: ValidationConfig | None = None):
        self.session = session
        self.cache_ttl = settings.validation_settings_cache_ttl if cache_ttl is None else cache_ttl
        self._override = config

    # ------------------------------------------------------------------
    # 설정
    # ------------------------------------------------------------------

    @classmethod
    def clear_cache(cls) -> None:
        with cls._cache_lock:
            cls._cached_config = None
            cls._cached_at = 0.0

    def get_settings(self) -> ValidationConfig:
        if self._override is not None:
            return self._override
        with self._cache_lock:
            cls = type(self)
            if cls._cached_config is not None and time.monotonic() - cls._cached_at < self.cache_ttl:
                return cls._cached_config

        defaults = ValidationConfig.from_settings()
        rows = self.session.scalars(select(ValidationSetting).where(ValidationSetting.key.in_(SETTING_KEYS))).all()
        stored = {row.key: row.value for row in rows}
        config = ValidationConfig(
            min_price=int(stored.get("min_price", defaults.min_price)),
            min_stock=int(stored.get("min_stock", defaults.min_stock)),
            require_image=bool(stored.get("require_image", defaults.require_image)),
            require_brand=bool(stored.get("require_brand", defaults.require_brand)),
        )
        with self._cache_lock:
            type(self)._cached_config = config
            type(self)._cached_at = time.monotonic()
        return config

    def update_settings(self, **changes: Any) -> ValidationConfig:
        unknown = set(changes) - set(SETTING_KEYS)
        if unknown:
            raise ValueError(f"알 수 없는 검증 설정입니다: {sorted(unknown)}")
        for key, value in changes.items():
            if value is None:
                continue
            row = self.session.get(ValidationSetting, key)
            if row is None:
                self.session.add(ValidationSetting(key=key, value=value))
            else:
                row.value = value
        self.session.commit()
        self.clear_cache()
        logger.info(f"검증 설정 변경: {changes}")
        return self.get_settings()

    # ------------------------------------------------------------------
    # 검증
    # ------------------------------------------------------------------

    def validate_product(self, product: SupplierProduct) -> ValidationResult:
        return validate_product(product, self.get_settings())

    def validate_all(self, category: str | None = None, batch_size: int = 500) -> ValidateAllResult:
        config = self.get_settings()
        result = ValidateAllResult()
        reasons: Counter[str] = Counter()

        stmt = select(SupplierProduct).where(SupplierProduct.is_active.is_(True)).order_by(SupplierProduct.id.asc())
        if category:
            stmt = stmt.where(SupplierProduct.category == ProductCategory.parse(category).value)

        now = utcnow()
        processed = 0
        for product in self.session.scalars(stmt).all():
            outcome = validate_product(product, config)
            status = next_validation_status(outcome.is_valid, product)

            product.validation_status = status.value
            product.generated_sku = outcome.generated_sku
            product.missing_fields = outcome.missing_fields
            product.validation_errors = outcome.errors
            product.last_validated_at = now

            result.total += 1
            counter_name = status.value
            setattr(result, counter_name, getattr(result, counter_name) + 1)
            for error in outcome.errors:
                reasons[error["field"]] += 1

            processed += 1
            if processed % batch_size == 0:
                self.session.commit()

        self.session.commit()
        result.by_reason = dict(reasons)
        logger.info(
            f"검증 완료 ({category or 'all'}): 총 {result.total}, valid {result.valid}, "
            f"invalid {result.invalid}, needs_update {result.needs_update}, "
            f"published {result.published}, inactive {result.inactive}"
        )
        return result

    def get_validation_stats(self, category: str | None = None) -> dict[str, Any]:
        stmt = select(SupplierProduct.validation_status, func.count()).group_by(SupplierProduct.validation_status)
        if category:
            stmt = stmt.where(SupplierProduct.category == category)
        by_status = {status: count for status, count in self.session.execute(stmt).all()}
        return {
            "category": category,
            "total": sum(by_status.values()),
            "by_status": {s.value: by_status.get(s.value, 0) for s in ValidationStatus},
        }

    # ------------------------------------------------------------------
    # 수동 override
    # ------------------------------------------------------------------

    def _get_product(self, product_id: int) -> SupplierProduct:
        product = self.session.get(SupplierProduct, product_id)
        if product is None:
            raise NotFoundError(f"상품을 찾을 수 없습니다: {product_id}", product_id=product_id)
        return product

    def approve_product(self, product_id: int) -> SupplierProduct:
        product = self._get_product(product_id)
        if not product.generated_sku:
            product.generated_sku = generate_sku(
                product.supplier_sku, product.category, product.brand, product.title, product.raw_vendor_payload or {}
            )
        product.validation_status = ValidationStatus.VALID.value
        product.validation_errors = []
        product.missing_fields = []
        product.last_validated_at = utcnow()
        self.session.commit()
        logger.info(f"상품 수동 승인: {product.supplier_sku}")
        return product

    def reject_product(self, product_id: int, reason: str) -> SupplierProduct:
        product = self._get_product(product_id)
        product.validation_status = ValidationStatus.INVALID.value
        product.validation_errors = [{"field": "manual", "message": reason}]
        product.last_validated_at = utcnow()
        self.session.commit()
        logger.info(f"상품 수동 거부: {product.supplier_sku} ({reason})")
        return product
