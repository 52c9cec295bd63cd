"""
공급사 상품 저장소 테스트.
"""

import pytest
from sqlalchemy import select

from tiresync.exceptions import NotFoundError
from tiresync.models import SupplierProduct, SupplierProductHistory
from tiresync.services.supplier_products import ProductFilters, SupplierProductRepository
from tiresync.services.validation import ValidationService


def _history(session, sku):
    return list(
        session.scalars(
            select(SupplierProductHistory)
            .where(SupplierProductHistory.supplier_sku == sku)
            .order_by(SupplierProductHistory.id)
        ).all()
    )


class TestUpsert:
    def test_new_products_are_created_with_history(self, db_session, product_data):
        repo = SupplierProductRepository(db_session)

        result = repo.upsert_many([product_data("T1"), product_data("T2")], "tire", fetch_job_id=7)

        assert (result.created, result.updated, result.unchanged) == (2, 0, 0)
        product = repo.get_by_sku("T1")
        assert product.validation_status == "raw"
        assert product.current_price == 250000
        history = _history(db_session, "T1")
        assert [h.change_type for h in history] == ["new"]
        assert history[0].fetch_job_id == 7

    def test_same_input_is_idempotent(self, db_session, product_data):
        repo = SupplierProductRepository(db_session)
        repo.upsert_many([product_data("T1")], "tire")

        result = repo.upsert_many([product_data("T1")], "tire")

        assert result.unchanged == 1
        assert len(_history(db_session, "T1")) == 1

    def test_price_and_stock_changes_are_recorded(self, db_session, product_data):
        repo = SupplierProductRepository(db_session)
        repo.upsert_many([product_data("T1")], "tire")

        repo.upsert_many([product_data("T1", price=260000)], "tire")
        repo.upsert_many([product_data("T1", price=260000, stock=3)], "tire")
        repo.upsert_many([product_data("T1", price=255000, stock=4)], "tire")

        history = _history(db_session, "T1")
        assert [h.change_type for h in history] == ["new", "price", "stock", "both"]
        assert (history[1].old_price, history[1].new_price) == (250000, 260000)
        assert (history[2].old_stock, history[2].new_stock) == (10, 3)

    def test_change_resets_validation_status(self, db_session, product_data):
        repo = SupplierProductRepository(db_session)
        repo.upsert_many([product_data("T1")], "tire")
        product = repo.get_by_sku("T1")
        product.validation_status = "published"
        db_session.commit()

        repo.upsert_many([product_data("T1", stock=1)], "tire")

        assert repo.get_by_sku("T1").validation_status == "raw"

    def test_published_price_change_becomes_needs_update(self, db_session, product_data):
        """게시된 상품의 가격이 바뀌면 raw로 돌아가고, 재검증 후 needs_update가 됩니다."""
        repo = SupplierProductRepository(db_session)
        repo.upsert_many([product_data("T1")], "tire")
        product = repo.get_by_sku("T1")
        product.shopify_product_id = "gid://shopify/Product/1"
        product.validation_status = "published"
        product.last_synced_price = 250000
        product.last_synced_stock = 10
        db_session.commit()

        repo.upsert_many([product_data("T1", price=270000)], "tire")
        assert repo.get_by_sku("T1").validation_status == "raw"

        result = ValidationService(db_session).validate_all("tire")

        assert result.needs_update == 1
        assert repo.get_by_sku("T1").validation_status == "needs_update"


class TestQueries:
    @pytest.fixture
    def seeded(self, db_session, product_data):
        repo = SupplierProductRepository(db_session)
        repo.upsert_many(
            [
                product_data("T1", brand="Michelin", price=300000, stock=5),
                product_data("T2", title="Lassa Driveways 195/65 R15", brand="Lassa", price=150000, stock=0),
            ],
            "tire",
        )
        repo.upsert_many(
            [product_data("B1", category="battery", title="Varta Blue 60Ah", brand="Varta", price=200000, stock=3)],
            "battery",
        )
        return repo

    def test_filters(self, seeded):
        assert seeded.list_products(ProductFilters(category="tire"))["total"] == 2
        assert seeded.list_products(ProductFilters(brand="lassa"))["items"][0].supplier_sku == "T2"
        assert seeded.list_products(ProductFilters(search="varta"))["total"] == 1
        assert seeded.list_products(ProductFilters(in_stock=False))["total"] == 1
        assert seeded.list_products(ProductFilters(min_price=200000))["total"] == 2

    def test_pagination_and_sort(self, seeded):
        page = seeded.list_products(page=2, page_size=2, sort_by="current_price", sort_order="asc")

        assert page["total"] == 3
        assert page["total_pages"] == 2
        assert [p.supplier_sku for p in page["items"]] == ["T1"]

    def test_stats(self, seeded):
        stats = seeded.get_stats("tire")

        assert stats["total"] == 2
        assert stats["total_stock"] == 5
        assert stats["in_stock"] == 1
        assert stats["min_price"] == 150000
        assert stats["by_status"] == {"raw": 2}
        assert set(seeded.get_overall_stats()["by_category"]) == {"battery", "tire"}

    def test_brands_and_changes(self, seeded):
        assert {b["brand"] for b in seeded.get_brands("tire")} == {"Michelin", "Lassa"}
        changes = seeded.get_recent_changes(limit=2)
        assert changes[0]["supplier_sku"] == "B1"
        assert changes[0]["change_type"] == "new"

    def test_detail(self, seeded):
        detail = seeded.get_detail("T1")
        assert detail["product"].brand == "Michelin"
        assert len(detail["history"]) == 1

        with pytest.raises(NotFoundError):
            seeded.get_detail("NOPE")


def test_failed_item_does_not_stop_batch(db_session, product_data, monkeypatch):
    repo = SupplierProductRepository(db_session)
    original = repo._apply

    def flaky(data, category, fetch_job_id, now):
        if data.supplier_sku == "BAD":
            raise RuntimeError("boom")
        return original(data, category, fetch_job_id, now)

    monkeypatch.setattr(repo, "_apply", flaky)
    result = repo.upsert_many([product_data("T1"), product_data("BAD"), product_data("T2")], "tire")

    assert result.created == 2
    assert result.failed == 1
    assert result.errors == ["BAD: boom"]
    assert db_session.scalar(select(SupplierProduct).where(SupplierProduct.supplier_sku == "BAD")) is None
