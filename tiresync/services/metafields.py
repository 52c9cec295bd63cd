"""
Metafield 타입 변환.

파싱/정규화된 값을 스토어프론트가 요구하는 (namespace, key, type, value 문자열) 형태로 직렬화합니다.
잘못된 값은 예외 대신 경고 로그와 함께 건너뜁니다.
"""

from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Callable

from pydantic import TypeAdapter, ValidationError

from tiresync.enums import ProductCategory

logger = logging.getLogger(__name__)

SINGLE_LINE_MAX = 255

TRUE_VALUES = {"true", "1", "yes", "evet", "on"}
FALSE_VALUES = {"false", "0", "no", "hayir", "hayır", "off"}

_float_adapter = TypeAdapter(float)
_date_adapter = TypeAdapter(date)
_datetime_adapter = TypeAdapter(datetime)


@dataclass(frozen=True)
class MetafieldDefinition:
    key: str
    type: str
    required: bool = False
    description: str = ""


@dataclass
class MetafieldInput:
    namespace: str
    key: str
    type: str
    value: str

    def to_graphql(self) -> dict[str, str]:
        return {"namespace": self.namespace, "key": self.key, "type": self.type, "value": self.value}


METAFIELD_DEFINITIONS: dict[str, MetafieldDefinition] = {
    d.key: d
    for d in [
        MetafieldDefinition("marka", "single_line_text_field", True, "Marka"),
        MetafieldDefinition("urun_tipi", "single_line_text_field", True, "Ürün tipi"),
        MetafieldDefinition("ebat", "single_line_text_field", True, "Ebat / ölçü"),
        MetafieldDefinition("sezon", "single_line_text_field"),
        MetafieldDefinition("yuk_indeksi", "number_integer"),
        MetafieldDefinition("hiz_indeksi", "single_line_text_field"),
        MetafieldDefinition("genislik", "number_integer"),
        MetafieldDefinition("profil", "number_integer"),
        MetafieldDefinition("cap", "number_decimal"),
        MetafieldDefinition("jant_genislik", "number_decimal"),
        MetafieldDefinition("pcd", "single_line_text_field"),
        MetafieldDefinition("offset", "number_integer"),
        MetafieldDefinition("kapasite", "number_integer"),
        MetafieldDefinition("cca", "number_integer"),
        MetafieldDefinition("voltaj", "number_integer"),
        MetafieldDefinition("uretim_yili", "number_integer"),
        MetafieldDefinition("dot", "single_line_text_field"),
        MetafieldDefinition("ozellikler", "list.single_line_text_field"),
        MetafieldDefinition("xl", "boolean"),
        MetafieldDefinition("runflat", "boolean"),
        MetafieldDefinition("tedarikci_adi", "single_line_text_field"),
        MetafieldDefinition("hammadde_fiyati", "number_decimal"),
    ]
}


class MetafieldCoercionError(ValueError):
    pass


def _coerce_single_line(value: Any) -> str:
    text = str(value).replace("\n", " ").strip()
    return text[:SINGLE_LINE_MAX]


def _coerce_multi_line(value: Any) -> str:
    return str(value)


def _coerce_integer(value: Any) -> str:
    if isinstance(value, bool):
        raise MetafieldCoercionError("boolean은 정수로 변환할 수 없습니다")
    try:
        number = _float_adapter.validate_python(str(value).replace(",", ".") if isinstance(value, str) else value)
    except ValidationError as e:
        raise MetafieldCoercionError(f"정수가 아닙니다: {value!r}") from e
    if not math.isfinite(number):
        raise MetafieldCoercionError(f"유한한 수가 아닙니다: {value!r}")
    return str(int(math.floor(number + 0.5)))


def _coerce_decimal(value: Any) -> str:
    if isinstance(value, bool):
        raise MetafieldCoercionError("boolean은 숫자로 변환할 수 없습니다")
    try:
        number = _float_adapter.validate_python(str(value).replace(",", ".") if isinstance(value, str) else value)
    except ValidationError as e:
        raise MetafieldCoercionError(f"숫자가 아닙니다: {value!r}") from e
    if not math.isfinite(number):
        raise MetafieldCoercionError(f"유한한 수가 아닙니다: {value!r}")
    return str(int(number)) if number.is_integer() else repr(number)


def _coerce_boolean(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    text = str(value).strip().lower()
    if text in TRUE_VALUES:
        return "true"
    if text in FALSE_VALUES:
        return "false"
    raise MetafieldCoercionError(f"boolean 값이 아닙니다: {value!r}")


def _coerce_json(value: Any) -> str:
    if isinstance(value, str):
        try:
            json.loads(value)
        except json.JSONDecodeError as e:
            raise MetafieldCoercionError(f"JSON 문자열이 아닙니다: {value!r}") from e
        return value
    return json.dumps(value, ensure_ascii=False)


def _coerce_list(value: Any) -> str:
    items: list[Any]
    if isinstance(value, (list, tuple)):
        items = list(value)
    else:
        text = str(value).strip()
        if text.startswith("["):
            try:
                parsed = json.loads(text)
            except json.JSONDecodeError as e:
                raise MetafieldCoercionError(f"JSON 배열이 아닙니다: {value!r}") from e
            items = parsed if isinstance(parsed, list) else [parsed]
        else:
            items = text.split(",")
    cleaned = [_coerce_single_line(v) for v in items if str(v).strip()]
    return json.dumps(cleaned, ensure_ascii=False)


def _coerce_date(value: Any) -> str:
    try:
        if isinstance(value, datetime):
            return value.date().isoformat()
        if isinstance(value, str) and "T" in value:
            return _datetime_adapter.validate_python(value).date().isoformat()
        return _date_adapter.validate_python(value).isoformat()
    except ValidationError as e:
        raise MetafieldCoercionError(f"날짜가 아닙니다: {value!r}") from e


def _coerce_datetime(value: Any) -> str:
    try:
        return _datetime_adapter.validate_python(value).isoformat()
    except ValidationError as e:
        raise MetafieldCoercionError(f"일시가 아닙니다: {value!r}") from e


COERCERS: dict[str, Callable[[Any], str]] = {
    "single_line_text_field": _coerce_single_line,
    "multi_line_text_field": _coerce_multi_line,
    "number_integer": _coerce_integer,
    "number_decimal": _coerce_decimal,
    "boolean": _coerce_boolean,
    "json": _coerce_json,
    "list.single_line_text_field": _coerce_list,
    "date": _coerce_date,
    "date_time": _coerce_datetime,
}


def coerce_metafield_value(value: Any, metafield_type: str) -> str:
    """값을 타입에 맞는 문자열로 변환합니다. 변환 불가 시 MetafieldCoercionError."""
    if value is None or (isinstance(value, str) and not value.strip()):
        raise MetafieldCoercionError("빈 값입니다")
    coercer = COERCERS.get(metafield_type)
    if coercer is None:
        raise MetafieldCoercionError(f"지원하지 않는 metafield 타입입니다: {metafield_type}")
    return coercer(value)


def infer_metafield_type(value: Any) -> str:
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, int):
        return "number_integer"
    if isinstance(value, float):
        return "number_integer" if value.is_integer() else "number_decimal"
    if isinstance(value, (list, tuple)):
        return "list.single_line_text_field"
    if isinstance(value, dict):
        return "json"
    if isinstance(value, datetime):
        return "date_time"
    if isinstance(value, date):
        return "date"
    text = str(value)
    return "multi_line_text_field" if "\n" in text or len(text) > SINGLE_LINE_MAX else "single_line_text_field"


def prepare_metafields(data: dict[str, Any], namespace: str = "custom") -> list[MetafieldInput]:
    """
    dict를 MetafieldInput 목록으로 변환합니다.

    정의된 키는 정의된 타입으로, 미정의 키는 값으로 타입을 추론합니다.
    None 값은 건너뛰고, 변환 실패 필드는 경고만 남기고 제외합니다.
    """
    prepared: list[MetafieldInput] = []
    for key, value in data.items():
        if value is None:
            continue
        definition = METAFIELD_DEFINITIONS.get(key)
        metafield_type = definition.type if definition else infer_metafield_type(value)
        try:
            serialized = coerce_metafield_value(value, metafield_type)
        except MetafieldCoercionError as e:
            logger.warning(f"Metafield '{key}' 건너뜀 ({metafield_type}): {e}")
            continue
        prepared.append(MetafieldInput(namespace=namespace, key=key, type=metafield_type, value=serialized))
    return prepared


def missing_required_metafields(data: dict[str, Any]) -> list[str]:
    return [key for key, d in METAFIELD_DEFINITIONS.items() if d.required and data.get(key) in (None, "")]


# ---------------------------------------------------------------------------
# 카테고리별 metafield 매핑
# ---------------------------------------------------------------------------

SEASON_LABELS = {"summer": "Yaz", "winter": "Kış", "all_season": "4 Mevsim"}
CATEGORY_LABELS = {
    ProductCategory.TIRE: "Lastik",
    ProductCategory.RIM: "Jant",
    ProductCategory.BATTERY: "Akü",
}


def _tire_metafields(parsed: dict[str, Any]) -> dict[str, Any]:
    width, ratio, diameter = parsed.get("width"), parsed.get("aspectRatio"), parsed.get("rimDiameter")
    size = f"{width}/{ratio}R{diameter}" if width and ratio and diameter else None
    return {
        "ebat": size,
        "genislik": width,
        "profil": ratio,
        "cap": diameter,
        "yuk_indeksi": parsed.get("loadIndex"),
        "hiz_indeksi": parsed.get("speedIndex"),
        "sezon": SEASON_LABELS.get(parsed.get("season") or ""),
        "xl": parsed.get("xl"),
        "runflat": parsed.get("runflat"),
    }


def _rim_metafields(parsed: dict[str, Any]) -> dict[str, Any]:
    width, diameter = parsed.get("rimWidth"), parsed.get("rimDiameter")
    size = f"{width}x{diameter}" if width and diameter else (f"{diameter}\"" if diameter else None)
    return {
        "ebat": size,
        "cap": diameter,
        "jant_genislik": width,
        "pcd": parsed.get("pcd"),
        "offset": parsed.get("offset"),
    }


def _battery_metafields(parsed: dict[str, Any]) -> dict[str, Any]:
    capacity = parsed.get("capacity")
    return {
        "ebat": f"{capacity}Ah" if capacity else None,
        "kapasite": capacity,
        "cca": parsed.get("cca"),
        "voltaj": parsed.get("voltage"),
    }


CATEGORY_METAFIELD_BUILDERS: dict[ProductCategory, Callable[[dict[str, Any]], dict[str, Any]]] = {
    ProductCategory.TIRE: _tire_metafields,
    ProductCategory.RIM: _rim_metafields,
    ProductCategory.BATTERY: _battery_metafields,
}


def build_product_metafields(
    category: ProductCategory | str,
    parsed: dict[str, Any],
    brand: str | None = None,
    supplier_name: str | None = None,
    namespace: str = "custom",
) -> list[MetafieldInput]:
    resolved = ProductCategory.parse(category)
    data: dict[str, Any] = {
        "marka": brand,
        "urun_tipi": CATEGORY_LABELS[resolved],
        "tedarikci_adi": supplier_name,
    }
    data.update(CATEGORY_METAFIELD_BUILDERS[resolved](parsed))
    return prepare_metafields(data, namespace=namespace)
