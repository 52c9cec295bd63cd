"""Pytest configuration and fixtures."""

import os
import threading

# tiresync.db가 import 시점에 엔진을 만들기 때문에 먼저 지정
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")

import pytest
from sqlalchemy import create_engine, JSON
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

from tiresync.exceptions import TerminalRemoteError
from tiresync.models import Base
from tiresync.normalization import SupplierProductData
from tiresync.services.validation import ValidationService
from tiresync.shopify_client import CreatedProduct, StorefrontProduct
from tiresync.supplier_client import SupplierPage


# 테스트용 메모리 SQLite 엔진 (스레드 간 같은 연결 공유)
TEST_DATABASE_URL = "sqlite:///:memory:"

test_engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
    echo=False  # 테스트 로그 줄이기
)

TestSessionLocal = sessionmaker(
    bind=test_engine,
    autoflush=False,
    expire_on_commit=False,
)


def _patch_jsonb_to_json(base):
    """
    SQLite에서 JSONB를 JSON으로 변경하여 컴파일 오류 방지.
    테스트용으로만 사용.
    """
    from sqlalchemy.dialects.postgresql import JSONB

    for table in base.metadata.sorted_tables:
        for column in table.columns:
            if isinstance(column.type, JSONB):
                # JSONB → JSON으로 변경 (SQLite 호환)
                column.type = JSON()


@pytest.fixture(scope="function")
def test_session() -> Session:
    """
    테스트용 데이터베이스 세션 fixture.
    각 테스트마다 새로운 메모리 DB 생성.
    """
    _patch_jsonb_to_json(Base)
    Base.metadata.create_all(bind=test_engine)

    session = TestSessionLocal()
    try:
        yield session
        session.commit()  # 테스트 성공 시 commit
    except Exception:
        session.rollback()  # 실패 시 rollback
        raise
    finally:
        session.close()
        Base.metadata.drop_all(bind=test_engine)


@pytest.fixture(scope="function")
def db_session(test_session: Session):
    """
    test_session alias.
    """
    yield test_session


@pytest.fixture(autouse=True)
def _reset_validation_cache():
    """검증 설정 캐시는 클래스 단위라 테스트마다 초기화."""
    ValidationService.clear_cache()
    yield
    ValidationService.clear_cache()


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------

def make_product_data(
    sku: str,
    category: str = "tire",
    title: str = "Michelin Primacy 4 205/55 R16 91V",
    brand: str | None = "Michelin",
    price: int | None = 250000,
    stock: int | None = 10,
    images: list[str] | None = None,
) -> SupplierProductData:
    return SupplierProductData(
        supplier_sku=sku,
        category=category,
        title=title,
        brand=brand,
        price=price,
        stock=stock,
        images=["https://cdn.example.com/p.jpg"] if images is None else images,
        raw={"sku": sku},
    )


class FakeSupplier:
    """
    카테고리별 상품 목록을 페이지 단위로 돌려주는 공급사.
    fail_on에 (category, page) → 예외를 넣으면 해당 호출에서 한 번 던집니다.
    """

    def __init__(self, catalog: dict[str, list[SupplierProductData]] | None = None, fail_on=None):
        self.catalog = catalog or {}
        self.fail_on = dict(fail_on or {})
        self.calls: list[tuple[str, int]] = []

    def fetch_page(self, category: str, page: int, page_size: int) -> SupplierPage:
        self.calls.append((category, page))
        error = self.fail_on.pop((category, page), None)
        if error is not None:
            raise error
        items = self.catalog.get(category, [])
        start = (page - 1) * page_size
        chunk = items[start:start + page_size]
        return SupplierPage(products=chunk, has_more=start + page_size < len(items), total=len(items))


class FakeStorefront:
    """호출을 기록하는 스토어프론트. 스레드 풀에서 호출됩니다."""

    def __init__(self, existing: dict[str, StorefrontProduct] | None = None, fail_skus: set[str] | None = None):
        self.existing = dict(existing or {})
        self.fail_skus = set(fail_skus or ())
        self.created: list = []
        self.price_updates: list[tuple[str, float]] = []
        self.inventory: list[tuple[str, int]] = []
        self.metafields: list[tuple[str, int]] = []
        self.lookups: list[str] = []
        self._lock = threading.Lock()

    def find_by_sku(self, sku: str):
        self.lookups.append(sku)
        return self.existing.get(sku)

    def create_product(self, product):
        if product.sku in self.fail_skus:
            raise TerminalRemoteError(f"create failed for {product.sku}", status_code=422)
        with self._lock:
            self.created.append(product)
            n = len(self.created)
        return CreatedProduct(
            id=f"gid://shopify/Product/{n}",
            variant_id=f"gid://shopify/ProductVariant/{n}",
            inventory_item_id=f"gid://shopify/InventoryItem/{n}",
        )

    def update_variant_price(self, variant_id: str, price: float, product_id: str | None = None) -> None:
        self.price_updates.append((variant_id, price))

    def set_inventory(self, inventory_item_id: str, location_id, quantity: int) -> None:
        self.inventory.append((inventory_item_id, quantity))

    def set_metafields(self, owner_id: str, entries) -> int:
        self.metafields.append((owner_id, len(entries)))
        return len(entries)


@pytest.fixture
def product_data():
    """SupplierProductData 팩토리."""
    return make_product_data


@pytest.fixture
def supplier_cls():
    return FakeSupplier


@pytest.fixture
def storefront_cls():
    return FakeStorefront


# 테스트 마커 정의
def pytest_configure(config):
    """Pytest 마커 등록."""
    config.addinivalue_line("markers", "unit: 단위 테스트 (DB 불필요)")
    config.addinivalue_line("markers", "integration: 통합 테스트 (실제 DB/API 필요)")
    config.addinivalue_line("markers", "slow: 느린 테스트 (> 1분)")
