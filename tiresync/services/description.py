"""
카테고리별 상품 상세 HTML 생성.

요약 문단 + 기술 사양 표 + (있으면) 공급사 원문 설명 순으로 구성합니다.
사양 값은 title_parser가 추출한 필드를 사용하며, 값이 없는 행은 생략합니다.
"""

from __future__ import annotations

from html import escape
from typing import Any, Callable

from tiresync.enums import ProductCategory
from tiresync.services.metafields import SEASON_LABELS


def _row(label: str, value: Any) -> str:
    if value is None or value == "":
        return ""
    return f'<tr><td class="spec-label">{escape(label)}</td><td class="spec-value">{escape(str(value))}</td></tr>'


def _suffix(value: Any, unit: str) -> str | None:
    return f"{value}{unit}" if value not in (None, "") else None


def _lead(brand: str, connector: str) -> str:
    return f"<strong>{brand}</strong> {connector} " if brand else ""


def _tire_summary(title: str, brand: str, parsed: dict[str, Any]) -> str:
    season = SEASON_LABELS.get(parsed.get("season") or "")
    season_text = f"{season} mevsim koşullarına uygun, " if season else ""
    return (
        f"{_lead(brand, 'kalitesiyle üretilen')}<strong>{title}</strong>, {season_text}"
        "yüksek performanslı ve güvenli bir sürüş deneyimi sunar."
    )


def _rim_summary(title: str, brand: str, parsed: dict[str, Any]) -> str:
    return (
        f"{_lead(brand, 'tasarımı')}<strong>{title}</strong> jant, "
        "aracınıza şık bir görünüm kazandırırken dayanıklı yapısıyla uzun ömürlü kullanım sağlar."
    )


def _battery_summary(title: str, brand: str, parsed: dict[str, Any]) -> str:
    return (
        f"{_lead(brand, 'güvencesiyle')}<strong>{title}</strong>, "
        "yüksek marş gücü ve uzun ömürlü performansı ile aracınızın enerji ihtiyacını karşılar."
    )


def _tire_rows(parsed: dict[str, Any]) -> list[tuple[str, Any]]:
    return [
        ("Genişlik", parsed.get("width")),
        ("Kesit Oranı", parsed.get("aspectRatio")),
        ("Jant Çapı", _suffix(parsed.get("rimDiameter"), '"')),
        ("Yük Endeksi", parsed.get("loadIndex")),
        ("Hız Endeksi", parsed.get("speedIndex")),
        ("Mevsim", SEASON_LABELS.get(parsed.get("season") or "")),
        ("Run Flat", "Evet" if parsed.get("runflat") else "Hayır"),
    ]


def _rim_rows(parsed: dict[str, Any]) -> list[tuple[str, Any]]:
    return [
        ("Jant Çapı", _suffix(parsed.get("rimDiameter"), '"')),
        ("Jant Genişliği", _suffix(parsed.get("rimWidth"), '"')),
        ("Bijon Aralığı (PCD)", parsed.get("pcd")),
        ("Offset (ET)", parsed.get("offset")),
    ]


def _battery_rows(parsed: dict[str, Any]) -> list[tuple[str, Any]]:
    return [
        ("Voltaj", _suffix(parsed.get("voltage"), "V")),
        ("Kapasite", _suffix(parsed.get("capacity"), "Ah")),
        ("Marş Gücü (CCA)", _suffix(parsed.get("cca"), "A")),
    ]


DESCRIPTION_STRATEGIES: dict[
    ProductCategory,
    tuple[Callable[[str, str, dict[str, Any]], str], Callable[[dict[str, Any]], list[tuple[str, Any]]]],
] = {
    ProductCategory.TIRE: (_tire_summary, _tire_rows),
    ProductCategory.RIM: (_rim_summary, _rim_rows),
    ProductCategory.BATTERY: (_battery_summary, _battery_rows),
}


def generate_description(
    category: ProductCategory | str,
    title: str,
    brand: str | None,
    parsed: dict[str, Any] | None = None,
    supplier_description: str | None = None,
) -> str:
    """상품 상세 HTML을 만듭니다. 상품명/브랜드/사양 값은 escape 하고, 공급사 설명(HTML)은 그대로 붙입니다."""
    parsed = parsed or {}
    summary_for, rows_for = DESCRIPTION_STRATEGIES[ProductCategory.parse(category)]
    safe_title = escape(title or "")
    safe_brand = escape(brand or "")

    rows = [_row("Marka", brand), _row("Model", parsed.get("model") or title)]
    rows += [_row(label, value) for label, value in rows_for(parsed)]
    body = "".join(r for r in rows if r)

    parts = [
        '<div class="product-description">',
        f"<p>{summary_for(safe_title, safe_brand, parsed)}</p>",
        f'<table class="product-specs"><thead><tr><th colspan="2">Teknik Özellikler</th></tr></thead>'
        f"<tbody>{body}</tbody></table>",
    ]
    if supplier_description and supplier_description.strip():
        parts.append(f'<div class="supplier-description">{supplier_description.strip()}</div>')
    parts.append("</div>")
    return "".join(parts)
