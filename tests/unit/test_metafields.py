"""Metafield 타입 변환 테스트."""

import json
from datetime import date

import pytest

from tiresync.services.metafields import (
    MetafieldCoercionError,
    build_product_metafields,
    coerce_metafield_value,
    infer_metafield_type,
    missing_required_metafields,
    prepare_metafields,
)


@pytest.mark.unit
class TestCoercion:
    def test_single_line_is_truncated(self):
        assert len(coerce_metafield_value("x" * 300, "single_line_text_field")) == 255

    def test_integer_rounds_half_up(self):
        assert coerce_metafield_value(91.5, "number_integer") == "92"
        assert coerce_metafield_value("16,4", "number_integer") == "16"

    def test_decimal(self):
        assert coerce_metafield_value("7,5", "number_decimal") == "7.5"
        assert coerce_metafield_value(17.0, "number_decimal") == "17"

    @pytest.mark.parametrize("raw", ["evet", "Yes", "1", True])
    def test_boolean_true(self, raw):
        assert coerce_metafield_value(raw, "boolean") == "true"

    @pytest.mark.parametrize("raw", ["hayir", "no", "0", False])
    def test_boolean_false(self, raw):
        assert coerce_metafield_value(raw, "boolean") == "false"

    def test_boolean_rejects_garbage(self):
        with pytest.raises(MetafieldCoercionError):
            coerce_metafield_value("belki", "boolean")

    def test_list_from_comma_string(self):
        assert json.loads(coerce_metafield_value("XL, RunFlat", "list.single_line_text_field")) == ["XL", "RunFlat"]

    def test_list_from_json_array(self):
        assert json.loads(coerce_metafield_value('["a", "b"]', "list.single_line_text_field")) == ["a", "b"]

    def test_date(self):
        assert coerce_metafield_value(date(2024, 3, 1), "date") == "2024-03-01"
        assert coerce_metafield_value("2024-03-01T10:00:00", "date") == "2024-03-01"

    def test_json_string_must_parse(self):
        with pytest.raises(MetafieldCoercionError):
            coerce_metafield_value("{not json", "json")

    def test_empty_value_rejected(self):
        with pytest.raises(MetafieldCoercionError, match="빈 값"):
            coerce_metafield_value("  ", "single_line_text_field")


@pytest.mark.unit
class TestPrepareMetafields:
    def test_invalid_fields_are_skipped(self):
        prepared = prepare_metafields({"marka": "Michelin", "yuk_indeksi": "abc", "xl": None})

        assert [m.key for m in prepared] == ["marka"]

    def test_unknown_keys_infer_type(self):
        prepared = {m.key: m for m in prepare_metafields({"stok_kodu": "ABC-1", "adet": 4}, namespace="tedarik")}

        assert prepared["stok_kodu"].type == "single_line_text_field"
        assert prepared["adet"].type == "number_integer"
        assert prepared["adet"].namespace == "tedarik"

    def test_infer_types(self):
        assert infer_metafield_type(True) == "boolean"
        assert infer_metafield_type(7.5) == "number_decimal"
        assert infer_metafield_type(["a"]) == "list.single_line_text_field"
        assert infer_metafield_type({"a": 1}) == "json"

    def test_missing_required(self):
        assert missing_required_metafields({"marka": "Lassa"}) == ["urun_tipi", "ebat"]


@pytest.mark.unit
class TestBuildProductMetafields:
    def test_tire(self):
        parsed = {"width": 205, "aspectRatio": 55, "rimDiameter": 16, "loadIndex": 91, "speedIndex": "V", "season": "summer"}
        fields = {m.key: m.value for m in build_product_metafields("tire", parsed, brand="Michelin", supplier_name="Tedarikçi")}

        assert fields["ebat"] == "205/55R16"
        assert fields["urun_tipi"] == "Lastik"
        assert fields["sezon"] == "Yaz"
        assert fields["yuk_indeksi"] == "91"
        assert fields["marka"] == "Michelin"

    def test_rim(self):
        fields = {m.key: m.value for m in build_product_metafields("rim", {"rimDiameter": 17, "rimWidth": 7.5, "pcd": "5x112"})}

        assert fields["ebat"] == "7.5x17"
        assert fields["pcd"] == "5x112"
        assert "marka" not in fields

    def test_battery(self):
        fields = {m.key: m.value for m in build_product_metafields("battery", {"capacity": 60, "cca": 540, "voltage": 12})}

        assert fields["ebat"] == "60Ah"
        assert fields["kapasite"] == "60"
        assert fields["urun_tipi"] == "Akü"
