import logging
import math
import re
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

# Candidate vendor field names per logical field, tried in order.
SKU_FIELDS = ("erpCode", "productId", "StokKodu", "stockCode", "sku")
TITLE_FIELDS = ("title", "StokAdi", "name", "productName")
BRAND_FIELDS = ("brandTitle", "Marka", "brand", "brandName")
MODEL_FIELDS = ("model", "Model", "pattern")
PRICE_FIELDS = ("currentPrice", "Fiyat", "price", "salePrice")
STOCK_FIELDS = ("amount", "StokAdet", "stock", "quantity")
BARCODE_FIELDS = ("Barkod", "barcode", "ean")
DESCRIPTION_FIELDS = ("description", "Aciklama")
IMAGE_FIELDS = ("image", "Resimler", "images", "imageUrl")


@dataclass
class SupplierProductData:
    """Normalized supplier product, independent of the vendor's field naming."""

    supplier_sku: str
    category: str
    title: str
    brand: str | None = None
    model: str | None = None
    price: int | None = None  # minor units
    stock: int | None = None
    barcode: str | None = None
    description: str | None = None
    images: list[str] = field(default_factory=list)
    raw: dict[str, Any] = field(default_factory=dict)


def _first_present(raw: dict[str, Any], candidates: tuple[str, ...]) -> Any:
    for name in candidates:
        value = raw.get(name)
        if value is None:
            continue
        if isinstance(value, str) and not value.strip():
            continue
        return value
    return None


def _as_text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def parse_decimal(value: Any) -> float | None:
    """
    Parses vendor numbers such as 1234.5, "1234,50", "1.234,50" or "1,234.50".
    Returns None when the value is not numeric.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else None
    text = re.sub(r"[^\d,.\-]", "", str(value))
    if not text or text in {"-", ".", ","}:
        return None
    if "," in text and "." in text:
        # the right-most separator is the decimal separator
        if text.rfind(",") > text.rfind("."):
            text = text.replace(".", "").replace(",", ".")
        else:
            text = text.replace(",", "")
    elif "," in text:
        text = text.replace(",", ".")
    try:
        number = float(text)
    except ValueError:
        return None
    return number if math.isfinite(number) else None


def to_minor_units(price: Any) -> int | None:
    number = parse_decimal(price)
    if number is None:
        return None
    return int(math.floor(number * 100 + 0.5))


def parse_stock(value: Any) -> int | None:
    number = parse_decimal(value)
    if number is None:
        return None
    return max(0, math.floor(number))


def parse_images(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value.strip()] if value.strip() else []
    if isinstance(value, dict):
        value = value.get("url") or value.get("src")
        return parse_images(value)
    if isinstance(value, (list, tuple)):
        images: list[str] = []
        for item in value:
            images.extend(parse_images(item))
        return images
    return []


def normalize_supplier_product(raw: dict[str, Any], category: str, index: int) -> SupplierProductData:
    """
    Maps one raw vendor payload to SupplierProductData.

    Every logical field is resolved through its alias list; nothing else in the
    code base should read vendor field names directly.
    """
    sku = _as_text(_first_present(raw, SKU_FIELDS))
    if not sku:
        sku = f"unknown-{category}-{index}"
        logger.warning(f"SKU 없는 공급사 상품, 임시 SKU 부여: {sku}")

    return SupplierProductData(
        supplier_sku=sku,
        category=category,
        title=_as_text(_first_present(raw, TITLE_FIELDS)) or "Untitled",
        brand=_as_text(_first_present(raw, BRAND_FIELDS)),
        model=_as_text(_first_present(raw, MODEL_FIELDS)),
        price=to_minor_units(_first_present(raw, PRICE_FIELDS)),
        stock=parse_stock(_first_present(raw, STOCK_FIELDS)),
        barcode=_as_text(_first_present(raw, BARCODE_FIELDS)),
        description=_as_text(_first_present(raw, DESCRIPTION_FIELDS)),
        images=parse_images(_first_present(raw, IMAGE_FIELDS)),
        raw=raw,
    )
