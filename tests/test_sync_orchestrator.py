"""
동기화 파이프라인 통합 테스트 (가짜 공급사/스토어프론트).
"""

import uuid

import pytest
from sqlalchemy import select

from tiresync.exceptions import ConcurrencyConflict, ConfigurationError, RateLimited
from tiresync.models import ProductMap, SupplierProduct, SyncItem, SyncSession
from tiresync.services.fetch_jobs import FetchJobService
from tiresync.services.sync_orchestrator import SyncConfig, SyncOrchestrator
from tiresync.services.validation import generate_sku
from tiresync.shopify_client import StorefrontProduct

TITLE = "Michelin Primacy 4 205/55 R16 91V"


@pytest.fixture
def tires(product_data):
    items = [product_data(f"T{i:02d}") for i in range(8)]
    items += [product_data(f"N{i:02d}", images=[]) for i in range(2)]
    return items


def _product(session, sku):
    return session.scalars(select(SupplierProduct).where(SupplierProduct.supplier_sku == sku)).one()


def _items(session, session_id):
    return list(session.scalars(select(SyncItem).where(SyncItem.session_id == session_id)).all())


class TestFullSync:
    def test_dry_run_makes_no_remote_calls(self, db_session, supplier_cls, storefront_cls, tires):
        storefront = storefront_cls()
        orchestrator = SyncOrchestrator(db_session, supplier=supplier_cls({"tire": tires}), storefront=storefront)

        result = orchestrator.run_sync(SyncConfig(mode="full", categories=["tire"], dry_run=True))

        assert result.status == "completed"
        assert result.fetch_status == "completed"
        assert result.fetched == 10
        assert result.valid_count == 8
        assert result.invalid_count == 2
        assert result.created == 0
        assert result.skipped == 8
        assert storefront.created == [] and storefront.lookups == []
        items = _items(db_session, uuid.UUID(result.session_id))
        assert {i.status for i in items} == {"skipped"}
        # dry run은 상태를 바꾸지 않음
        assert _product(db_session, "T00").validation_status == "valid"

    def test_creates_valid_products(self, db_session, supplier_cls, storefront_cls, tires):
        storefront = storefront_cls()
        orchestrator = SyncOrchestrator(
            db_session, supplier=supplier_cls({"tire": tires}), storefront=storefront, publish_concurrency=3
        )

        result = orchestrator.run_sync({"mode": "full", "categories": "tire"})

        assert result.status == "completed"
        assert result.created == 8
        assert len(storefront.created) == 8
        assert len(storefront.inventory) == 8
        assert all(count > 0 for _, count in storefront.metafields)

        product = _product(db_session, "T00")
        assert product.validation_status == "published"
        assert product.shopify_product_id.startswith("gid://shopify/Product/")
        assert product.last_synced_price == 250000
        assert product.last_synced_stock == 10

        created = next(c for c in storefront.created if c.sku == product.generated_sku)
        # Michelin은 premium 세그먼트지만 규칙이 없으면 기본 마진 20%
        assert created.price == 3000.0
        assert created.product_type == "Lastik"
        assert "Teknik Özellikler" in created.description_html
        assert "<td class=\"spec-value\">205</td>" in created.description_html

        mapping = db_session.scalars(select(ProductMap).where(ProductMap.supplier_sku == "T00")).one()
        assert mapping.shopify_product_id == product.shopify_product_id
        assert mapping.data_hash

        session_row = db_session.get(SyncSession, uuid.UUID(result.session_id))
        assert session_row.status == "completed"
        assert session_row.stats["created"] == 8

    def test_existing_listing_is_adopted(self, db_session, supplier_cls, storefront_cls, product_data):
        sku = generate_sku("T01", "tire", "Michelin", TITLE)
        storefront = storefront_cls(
            existing={
                sku: StorefrontProduct(
                    id="gid://shopify/Product/900",
                    variant_id="gid://shopify/ProductVariant/901",
                    inventory_item_id="gid://shopify/InventoryItem/902",
                )
            }
        )
        orchestrator = SyncOrchestrator(
            db_session, supplier=supplier_cls({"tire": [product_data("T01")]}), storefront=storefront
        )

        result = orchestrator.run_sync(SyncConfig(categories=["tire"]))

        assert result.created == 1
        assert storefront.created == []
        assert storefront.price_updates == [("gid://shopify/ProductVariant/901", 3000.0)]
        assert storefront.inventory == [("gid://shopify/InventoryItem/902", 10)]
        assert _product(db_session, "T01").shopify_product_id == "gid://shopify/Product/900"

    def test_remote_failure_is_isolated(self, db_session, supplier_cls, storefront_cls, product_data):
        bad_sku = generate_sku("T02", "tire", "Michelin", TITLE)
        storefront = storefront_cls(fail_skus={bad_sku})
        supplier = supplier_cls({"tire": [product_data("T01"), product_data("T02"), product_data("T03")]})
        orchestrator = SyncOrchestrator(db_session, supplier=supplier, storefront=storefront)

        result = orchestrator.run_sync(SyncConfig(categories=["tire"]))

        assert result.status == "completed_with_errors"
        assert result.created == 2
        assert result.failed == 1
        assert result.error_count == 1
        assert result.errors[0].startswith("T02:")
        failed = _product(db_session, "T02")
        assert failed.validation_status == "valid"
        assert failed.shopify_product_id is None
        items = _items(db_session, uuid.UUID(result.session_id))
        assert sorted(i.status for i in items) == ["failed", "success", "success"]

    def test_error_list_is_capped(self, db_session, supplier_cls, storefront_cls, product_data):
        products = [product_data(f"T{i:02d}") for i in range(4)]
        storefront = storefront_cls(fail_skus={generate_sku(p.supplier_sku, "tire", "Michelin", TITLE) for p in products})
        orchestrator = SyncOrchestrator(
            db_session, supplier=supplier_cls({"tire": products}), storefront=storefront, error_limit=2
        )

        result = orchestrator.run_sync(SyncConfig(categories=["tire"]))

        assert result.failed == 4
        assert result.error_count == 4
        assert len(result.errors) == 2

    def test_rate_limited_fetch_is_reported(self, db_session, supplier_cls, storefront_cls, tires):
        supplier = supplier_cls({"tire": tires}, fail_on={("tire", 1): RateLimited(wait_seconds=30)})
        orchestrator = SyncOrchestrator(db_session, supplier=supplier, storefront=storefront_cls())

        result = orchestrator.run_sync(SyncConfig(categories=["tire"]))

        assert result.fetch_status == "rate_limited"
        assert result.status == "completed_with_errors"
        assert "rate_limited" in result.errors[0]


class TestIncrementalSync:
    @pytest.fixture
    def published(self, db_session, supplier_cls, storefront_cls, product_data):
        supplier = supplier_cls({"tire": [product_data("P1"), product_data("P2"), product_data("P3")]})
        storefront = storefront_cls()
        SyncOrchestrator(db_session, supplier=supplier, storefront=storefront).run_sync(SyncConfig(categories=["tire"]))
        return supplier, storefront_cls()

    def test_only_drifted_fields_are_pushed(self, db_session, published, product_data):
        supplier, storefront = published
        supplier.catalog["tire"] = [product_data("P1", price=300000), product_data("P2", stock=7), product_data("P3")]

        result = SyncOrchestrator(db_session, supplier=supplier, storefront=storefront).run_sync(
            SyncConfig(mode="full", categories=["tire"])
        )

        assert result.needs_update_count == 2
        assert result.published_count == 1
        assert result.updated == 2
        p1 = _product(db_session, "P1")
        p2 = _product(db_session, "P2")
        assert storefront.price_updates == [(p1.shopify_variant_id, 3600.0)]
        assert storefront.inventory == [(p2.shopify_inventory_item_id, 7)]
        assert storefront.lookups == []
        assert p1.last_synced_price == 300000
        assert p1.validation_status == "published"

    def test_invalid_published_product_is_zeroed_once(self, db_session, published, product_data):
        supplier, storefront = published
        product = _product(db_session, "P3")
        product.current_stock = 0
        db_session.commit()

        result = SyncOrchestrator(db_session, storefront=storefront).run_sync(
            SyncConfig(mode="incremental", categories=["tire"])
        )

        assert result.inactive_count == 1
        assert result.deactivated == 1
        assert storefront.inventory == [(product.shopify_inventory_item_id, 0)]
        assert _product(db_session, "P3").last_synced_stock == 0

        again = SyncOrchestrator(db_session, storefront=storefront).run_sync(
            SyncConfig(mode="incremental", categories=["tire"])
        )
        assert again.deactivated == 0
        assert len(storefront.inventory) == 1

    def test_validation_only(self, db_session, published):
        _, storefront = published
        product = _product(db_session, "P2")
        product.current_price = 1000
        db_session.commit()

        result = SyncOrchestrator(db_session).run_sync(SyncConfig(mode="validation-only", categories=["tire"]))

        assert result.status == "completed"
        assert result.validated == 3
        assert result.inactive_count == 1
        assert result.deactivated == 0
        assert _product(db_session, "P2").validation_status == "inactive"

    def test_skip_validation_publishes_existing_states(self, db_session, published, product_data):
        _, storefront = published
        product = _product(db_session, "P1")
        product.current_stock = 4
        product.validation_status = "needs_update"
        db_session.commit()

        result = SyncOrchestrator(db_session, storefront=storefront).run_sync(
            SyncConfig(mode="incremental", categories=["tire"], validate_first=False)
        )

        assert result.validated == 0
        assert result.updated == 1
        assert storefront.inventory == [(product.shopify_inventory_item_id, 4)]


class TestPreconditions:
    def test_full_mode_requires_supplier(self, db_session, storefront_cls):
        with pytest.raises(ConfigurationError):
            SyncOrchestrator(db_session, storefront=storefront_cls()).run_sync(SyncConfig())

    def test_publish_requires_storefront(self, db_session):
        with pytest.raises(ConfigurationError):
            SyncOrchestrator(db_session).run_sync(SyncConfig(mode="incremental"))

    def test_active_fetch_job_conflicts(self, db_session, supplier_cls, storefront_cls):
        FetchJobService(db_session).create_job(["tire"])

        with pytest.raises(ConcurrencyConflict):
            SyncOrchestrator(db_session, supplier=supplier_cls(), storefront=storefront_cls()).run_sync(SyncConfig())
        assert db_session.query(SyncSession).count() == 0


@pytest.mark.unit
class TestSyncConfig:
    def test_categories_parsing(self):
        assert [c.value for c in SyncConfig(categories="Tire, battery").categories] == ["tire", "battery"]
        assert len(SyncConfig(categories=None).categories) == 3

    def test_invalid_mode(self):
        with pytest.raises(ValueError):
            SyncConfig(mode="partial")
