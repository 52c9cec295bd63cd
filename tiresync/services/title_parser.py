"""
상품명(title) → 카테고리별 구조화 속성 파서.

정규식 cascade로 타이어 규격, 림 치수, 배터리 용량 등을 추출합니다.
모든 추출 시도는 성공/실패와 관계없이 ParsingFieldResult로 기록되며, 예외를 던지지 않습니다.
순수 함수로만 구성되어 같은 입력에는 항상 같은 결과를 돌려줍니다.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Callable

from tiresync.enums import ProductCategory

# 타이어 규격 허용 범위
TIRE_WIDTH_RANGE = (125, 355)
TIRE_RATIO_RANGE = (25, 85)
TIRE_DIAMETER_RANGE = (10, 24)
LOAD_INDEX_RANGE = (60, 130)

RIM_DIAMETER_RANGE = (12, 24)
RIM_WIDTH_RANGE = (4.0, 13.0)
BATTERY_CCA_RANGE = (100, 1500)
DEFAULT_BATTERY_VOLTAGE = 12

REQUIRED_FIELDS: dict[ProductCategory, tuple[str, ...]] = {
    ProductCategory.TIRE: ("width", "aspectRatio", "rimDiameter"),
    ProductCategory.RIM: ("rimDiameter",),
    ProductCategory.BATTERY: ("capacity",),
}

# (패턴, 신뢰도) 순서대로 시도
TIRE_SIZE_PATTERNS: list[tuple[re.Pattern[str], float, str]] = [
    (re.compile(r"(\d{3})\s*/\s*(\d{2})\s*z?r?\s*(\d{2})"), 0.95, "slash"),
    (re.compile(r"(?<!\d)(\d{3})\s+(\d{2})\s+r?(\d{2})(?!\d)"), 0.8, "space"),
    (re.compile(r"(?<!\d)(\d{3})(\d{2})r?(\d{2})(?!\d)"), 0.7, "compact"),
]
LOAD_SPEED_PATTERN = re.compile(r"\b(\d{2,3})\s*([HJKLMNPQRSTUVWYZ])\b", re.IGNORECASE)

SEASON_KEYWORDS: list[tuple[str, tuple[str, ...]]] = [
    ("winter", ("kış", "kis", "winter", "snow", "kar", "alpin", "blizzak", "ice", "nordic")),
    (
        "all_season",
        (
            "4 mevsim",
            "dört mevsim",
            "dort mevsim",
            "all season",
            "all-season",
            "allseason",
            "4season",
            "4seasons",
            "crossclimate",
            "quattro",
            "vector",
        ),
    ),
    ("summer", ("yaz", "summer", "primacy", "pilot sport", "p zero", "eagle", "sport")),
]

RIM_INCH_PATTERN = re.compile(r"\b(\d{2})\s*(?:inç|inch|inc|\")")
RIM_DIMENSION_PATTERN = re.compile(r"(\d+(?:[.,]\d+)?)\s*j?\s*x\s*(\d+(?:[.,]\d+)?)\b")
RIM_R_PATTERN = re.compile(r"\br\s*(\d{2})\b")
RIM_WIDTH_J_PATTERN = re.compile(r"\b(\d+(?:[.,]\d+)?)\s*j\b")
RIM_PCD_PATTERN = re.compile(r"(?<![\d.,])([3-8])\s*[x*]\s*(\d{3}(?:[.,]\d)?)(?!\d)")
RIM_OFFSET_PATTERN = re.compile(r"(?:\bet|offset)\s*(-?\d{1,3})\b")

BATTERY_CAPACITY_PATTERN = re.compile(r"(\d{2,3})\s*ah\b")
BATTERY_CCA_PATTERN = re.compile(r"(\d{3,4})\s*a\b", re.IGNORECASE)
BATTERY_VOLTAGE_PATTERN = re.compile(r"(\d{1,2})\s*v\b")


@dataclass
class ParsingFieldResult:
    field: str
    value: Any
    success: bool
    reason: str | None = None
    confidence: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "field": self.field,
            "value": self.value,
            "success": self.success,
            "reason": self.reason,
            "confidence": self.confidence,
        }


@dataclass
class DetailedParseResult:
    category: ProductCategory
    raw_title: str
    success: bool
    data: dict[str, Any] | None
    fields: list[ParsingFieldResult] = field(default_factory=list)

    def field_value(self, name: str) -> Any:
        for item in self.fields:
            if item.field == name and item.success:
                return item.value
        return None


def _to_number(text: str) -> float:
    return float(text.replace(",", "."))


def _clean_number(value: float) -> int | float:
    return int(value) if float(value).is_integer() else value


def _in_range(value: float, bounds: tuple[float, float]) -> bool:
    return bounds[0] <= value <= bounds[1]


def _normalize_title(title: str) -> str:
    text = (title or "").lower()
    text = re.sub(r"[\[\](){}]", " ", text)
    return re.sub(r"\s+", " ", text).strip()


def _ok(name: str, value: Any, confidence: float) -> ParsingFieldResult:
    return ParsingFieldResult(field=name, value=value, success=True, confidence=confidence)


def _miss(name: str, reason: str) -> ParsingFieldResult:
    return ParsingFieldResult(field=name, value=None, success=False, reason=reason, confidence=0.0)


# ---------------------------------------------------------------------------
# 타이어
# ---------------------------------------------------------------------------

def _match_tire_size(text: str) -> tuple[tuple[int, int, int] | None, float, str, int]:
    """규격 (너비, 편평비, 림 지름), 신뢰도, 실패 사유, 매치 끝 위치를 돌려줍니다."""
    saw_candidate = False
    for pattern, confidence, _name in TIRE_SIZE_PATTERNS:
        for match in pattern.finditer(text):
            saw_candidate = True
            width, ratio, diameter = (int(g) for g in match.groups())
            if (
                _in_range(width, TIRE_WIDTH_RANGE)
                and _in_range(ratio, TIRE_RATIO_RANGE)
                and _in_range(diameter, TIRE_DIAMETER_RANGE)
            ):
                return (width, ratio, diameter), confidence, "", match.end()
    return None, 0.0, "out_of_range" if saw_candidate else "pattern_not_found", 0


def detect_season(text: str) -> str | None:
    lowered = text.lower()
    for season, keywords in SEASON_KEYWORDS:
        for keyword in keywords:
            if re.search(rf"(?<!\w){re.escape(keyword)}(?!\w)", lowered):
                return season
    return None


def _parse_tire(title: str) -> list[ParsingFieldResult]:
    text = _normalize_title(title)
    results: list[ParsingFieldResult] = []

    size, confidence, reason, size_end = _match_tire_size(text)
    if size:
        width, ratio, diameter = size
        results += [
            _ok("width", width, confidence),
            _ok("aspectRatio", ratio, confidence),
            _ok("rimDiameter", diameter, confidence),
        ]
    else:
        results += [_miss("width", reason), _miss("aspectRatio", reason), _miss("rimDiameter", reason)]

    # 하중/속도 지수는 규격 뒤에서만 찾음 (띄어 쓴 "65 R"를 지수로 읽지 않도록)
    load_index = speed_index = None
    for match in LOAD_SPEED_PATTERN.finditer(text, size_end):
        value = int(match.group(1))
        if _in_range(value, LOAD_INDEX_RANGE):
            load_index, speed_index = value, match.group(2).upper()
            break
    if load_index is not None:
        results += [_ok("loadIndex", load_index, 0.9), _ok("speedIndex", speed_index, 0.9)]
    else:
        results += [_miss("loadIndex", "not_present"), _miss("speedIndex", "not_present")]

    season = detect_season(text)
    results.append(_ok("season", season, 0.7) if season else _miss("season", "not_present"))

    results.append(
        _ok("xl", True, 0.8) if re.search(r"\b(xl|extra load|reinforced)\b", text) else _miss("xl", "not_present")
    )
    results.append(
        _ok("runflat", True, 0.8)
        if re.search(r"\b(run ?flat|rft|ssr|zp)\b", text)
        else _miss("runflat", "not_present")
    )
    return results


# ---------------------------------------------------------------------------
# 림(jant)
# ---------------------------------------------------------------------------

def _parse_rim(title: str) -> list[ParsingFieldResult]:
    text = _normalize_title(title)
    results: list[ParsingFieldResult] = []
    diameter: int | None = None
    width: float | None = None
    diameter_confidence = 0.0
    width_confidence = 0.0

    inch = RIM_INCH_PATTERN.search(text)
    if inch and _in_range(int(inch.group(1)), RIM_DIAMETER_RANGE):
        diameter, diameter_confidence = int(inch.group(1)), 0.95

    for match in RIM_DIMENSION_PATTERN.finditer(text):
        v1, v2 = _to_number(match.group(1)), _to_number(match.group(2))
        # 큰 값을 직경으로 판단
        if v1 > 10 and v2 < 14:
            cand_diameter, cand_width = v1, v2
        elif v2 > 10 and v1 < 14:
            cand_diameter, cand_width = v2, v1
        else:
            continue
        if not (_in_range(cand_diameter, RIM_DIAMETER_RANGE) and _in_range(cand_width, RIM_WIDTH_RANGE)):
            continue
        if diameter is None:
            diameter, diameter_confidence = int(cand_diameter), 0.85
        width, width_confidence = cand_width, 0.85
        break

    if diameter is None:
        r_match = RIM_R_PATTERN.search(text)
        if r_match and _in_range(int(r_match.group(1)), RIM_DIAMETER_RANGE):
            diameter, diameter_confidence = int(r_match.group(1)), 0.7

    if width is None:
        j_match = RIM_WIDTH_J_PATTERN.search(text)
        if j_match and _in_range(_to_number(j_match.group(1)), RIM_WIDTH_RANGE):
            width, width_confidence = _to_number(j_match.group(1)), 0.6

    results.append(
        _ok("rimDiameter", diameter, diameter_confidence)
        if diameter is not None
        else _miss("rimDiameter", "pattern_not_found")
    )
    results.append(
        _ok("rimWidth", _clean_number(width), width_confidence)
        if width is not None
        else _miss("rimWidth", "pattern_not_found")
    )

    pcd = RIM_PCD_PATTERN.search(text)
    if pcd:
        results.append(_ok("pcd", f"{pcd.group(1)}x{pcd.group(2).replace(',', '.')}", 0.9))
    else:
        results.append(_miss("pcd", "not_present"))

    offset = RIM_OFFSET_PATTERN.search(text)
    results.append(_ok("offset", int(offset.group(1)), 0.9) if offset else _miss("offset", "not_present"))
    return results


# ---------------------------------------------------------------------------
# 배터리(akü)
# ---------------------------------------------------------------------------

def _parse_battery(title: str) -> list[ParsingFieldResult]:
    text = _normalize_title(title)
    results: list[ParsingFieldResult] = []

    capacity = BATTERY_CAPACITY_PATTERN.search(text)
    results.append(
        _ok("capacity", int(capacity.group(1)), 0.95) if capacity else _miss("capacity", "pattern_not_found")
    )

    cca_value = None
    for match in BATTERY_CCA_PATTERN.finditer(title or ""):
        value = int(match.group(1))
        if _in_range(value, BATTERY_CCA_RANGE):
            cca_value = value
            break
    results.append(_ok("cca", cca_value, 0.8) if cca_value is not None else _miss("cca", "not_present"))

    voltage = BATTERY_VOLTAGE_PATTERN.search(text)
    if voltage:
        results.append(_ok("voltage", int(voltage.group(1)), 0.9))
    else:
        results.append(
            ParsingFieldResult(
                field="voltage", value=DEFAULT_BATTERY_VOLTAGE, success=True, reason="defaulted", confidence=0.5
            )
        )
    return results


PARSERS: dict[ProductCategory, Callable[[str], list[ParsingFieldResult]]] = {
    ProductCategory.TIRE: _parse_tire,
    ProductCategory.RIM: _parse_rim,
    ProductCategory.BATTERY: _parse_battery,
}


def detect_category(title: str) -> ProductCategory | None:
    """상품명만으로 카테고리를 추정합니다. 판단 불가 시 None."""
    text = _normalize_title(title)
    if re.search(r"\b\d{2,3}\s*ah\b", text) or re.search(r"\b(akü|aku|battery|akumulator)\b", text):
        return ProductCategory.BATTERY
    if re.search(r"\b(jant|rim|wheel|alloy)\b", text) or RIM_PCD_PATTERN.search(text) or RIM_OFFSET_PATTERN.search(text):
        return ProductCategory.RIM
    if re.search(r"\b(lastik|tire|tyre)\b", text) or _match_tire_size(text)[0]:
        return ProductCategory.TIRE
    if RIM_DIMENSION_PATTERN.search(text):
        return ProductCategory.RIM
    return None


def parse_detailed(title: str, category: ProductCategory | str | None = None) -> DetailedParseResult:
    """
    상품명을 카테고리 전략으로 파싱합니다.

    category가 없으면 detect_category()로 추정하며, 그래도 모르면 타이어로 간주합니다.
    success는 카테고리의 필수 필드가 모두 추출된 경우에만 True입니다.
    """
    if category is None or category == "unknown":
        resolved = detect_category(title) or ProductCategory.TIRE
    else:
        resolved = ProductCategory.parse(category)

    fields = PARSERS[resolved](title or "")
    by_name = {item.field: item for item in fields}
    required = REQUIRED_FIELDS[resolved]
    success = all(by_name.get(name) is not None and by_name[name].success for name in required)

    data = None
    if success:
        data = {item.field: item.value for item in fields if item.success}
    return DetailedParseResult(category=resolved, raw_title=title or "", success=success, data=data, fields=fields)


def enrich_metafields(title: str, category: ProductCategory | str | None = None) -> dict[str, Any]:
    """파싱에 성공한 필드만 추려 metafield 원천 데이터로 돌려줍니다."""
    result = parse_detailed(title, category)
    return {item.field: item.value for item in result.fields if item.success and item.value is not None}
