"""
카탈로그 캐시 서비스 테스트.
"""

from datetime import timedelta

import pytest

from tiresync.exceptions import ConfigurationError, RateLimited
from tiresync.models import CacheMetadata
from tiresync.services.cache import CacheService
from tiresync.utils import utcnow


@pytest.fixture
def supplier(supplier_cls, product_data):
    return supplier_cls(
        {
            "tire": [product_data("T1"), product_data("T2"), product_data("T1", price=260000)],
            "rim": [product_data("R1", category="rim", title="BBS 8.5x19 5x112", brand="BBS")],
            "battery": [],
        }
    )


def test_refresh_saves_snapshot_and_metadata(db_session, supplier):
    service = CacheService(db_session, supplier=supplier, page_size=10)

    products = service.refresh_cache("tire")

    # 중복 SKU는 마지막 값
    assert sorted(p["supplier_sku"] for p in products) == ["T1", "T2"]
    assert next(p for p in products if p["supplier_sku"] == "T1")["price"] == 260000
    metadata = service.get_cache_metadata("tire")
    assert metadata["status"] == "idle"
    assert metadata["product_count"] == 2
    assert metadata["last_error"] is None


def test_get_cached_products_uses_valid_cache(db_session, supplier):
    service = CacheService(db_session, supplier=supplier, page_size=10)
    first = service.get_cached_products("tire")
    assert first["from_cache"] is False

    supplier.calls.clear()
    second = service.get_cached_products("tire", limit=1)

    assert second["from_cache"] is True
    assert len(second["products"]) == 1
    assert supplier.calls == []


def test_stale_cache_is_refreshed(db_session, supplier):
    service = CacheService(db_session, supplier=supplier, page_size=10)
    service.refresh_cache("rim")
    metadata = db_session.get(CacheMetadata, "rim")
    metadata.last_fetch_at = utcnow() - timedelta(hours=7)
    db_session.commit()

    assert service.is_cache_valid("rim") is False
    assert service.get_cached_products("rim")["from_cache"] is False


def test_refresh_failure_keeps_previous_snapshot(db_session, supplier):
    service = CacheService(db_session, supplier=supplier, page_size=10)
    service.refresh_cache("tire")

    supplier.fail_on[("tire", 1)] = RuntimeError("feed down")
    products = service.refresh_cache("tire")

    assert len(products) == 2
    metadata = service.get_cache_metadata("tire")
    assert metadata["status"] == "error"
    assert metadata["last_error"] == "feed down"
    assert metadata["product_count"] == 2


def test_rate_limited_refresh(db_session, supplier):
    supplier.fail_on[("rim", 1)] = RateLimited(wait_seconds=10)
    service = CacheService(db_session, supplier=supplier, page_size=10)

    assert service.refresh_cache("rim") == []
    assert service.get_cache_metadata("rim")["status"] == "rate_limited"


def test_refresh_requires_supplier(db_session):
    with pytest.raises(ConfigurationError):
        CacheService(db_session).refresh_cache("tire")


def test_aggregate_status(db_session, supplier):
    service = CacheService(db_session, supplier=supplier, page_size=10)
    assert service.get_cache_metadata() is None

    service.refresh_cache()
    aggregate = service.get_cache_metadata()
    assert aggregate["status"] == "idle"
    assert aggregate["product_count"] == 3

    supplier.fail_on[("battery", 1)] = RuntimeError("boom")
    service.refresh_cache("battery")
    assert service.get_cache_metadata()["status"] == "error"

    status = service.get_all_cache_status()
    assert [c["category"] for c in status["categories"]] == ["battery", "rim", "tire"]
    assert status["total_products"] == 3
    assert not any(c["is_stale"] for c in status["categories"])
