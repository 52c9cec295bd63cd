"""Supplier payload normalization tests."""

import pytest

from tiresync.normalization import normalize_supplier_product, parse_decimal, parse_stock, to_minor_units


@pytest.mark.unit
class TestNumbers:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            (1234.5, 1234.5),
            ("1234,50", 1234.5),
            ("1.234,50", 1234.5),
            ("1,234.50", 1234.5),
            ("₺ 899,90", 899.9),
            ("abc", None),
            (None, None),
        ],
    )
    def test_parse_decimal(self, raw, expected):
        assert parse_decimal(raw) == expected

    def test_minor_units(self):
        assert to_minor_units("2.500,00") == 250000
        assert to_minor_units("899,90") == 89990
        assert to_minor_units(None) is None

    def test_stock_is_floored_and_non_negative(self):
        assert parse_stock("4.8") == 4
        assert parse_stock(-3) == 0


@pytest.mark.unit
class TestNormalizeSupplierProduct:
    def test_alias_fields(self):
        raw = {
            "StokKodu": "LST-001",
            "StokAdi": "Lassa Driveways 205/55 R16",
            "Marka": "Lassa",
            "Fiyat": "1.999,90",
            "StokAdet": "12",
            "Barkod": "8690000000001",
            "Resimler": [{"url": "https://cdn.example.com/1.jpg"}, "https://cdn.example.com/2.jpg"],
        }
        product = normalize_supplier_product(raw, "tire", 0)

        assert product.supplier_sku == "LST-001"
        assert product.brand == "Lassa"
        assert product.price == 199990
        assert product.stock == 12
        assert product.barcode == "8690000000001"
        assert product.images == ["https://cdn.example.com/1.jpg", "https://cdn.example.com/2.jpg"]
        assert product.raw is raw

    def test_alias_order_prefers_first_candidate(self):
        product = normalize_supplier_product({"erpCode": "E1", "sku": "S1", "title": "T"}, "rim", 0)
        assert product.supplier_sku == "E1"

    def test_fallbacks(self):
        product = normalize_supplier_product({"price": 10}, "battery", 7)

        assert product.supplier_sku == "unknown-battery-7"
        assert product.title == "Untitled"
        assert product.images == []
