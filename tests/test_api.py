"""
HTTP API 테스트

FastAPI TestClient + 테스트 DB 세션으로 엔드포인트와 예외 → 상태 코드 매핑을 확인합니다.
"""
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from tiresync.db import get_session
from tiresync.main import app
from tiresync.services.supplier_products import SupplierProductRepository
from tiresync.services.sync_orchestrator import SyncOrchestrator


@pytest.fixture
def client(db_session):
    """테스트 세션을 주입한 TestClient"""

    def _override():
        yield db_session

    app.dependency_overrides[get_session] = _override
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def seeded(db_session, product_data):
    SupplierProductRepository(db_session).upsert_many(
        [product_data("T1"), product_data("T2", stock=0, brand="Lassa")], "tire"
    )


class TestHealth:
    def test_health(self, client):
        assert client.get("/api/health").json() == {"status": "ok"}

    def test_system_health(self, client):
        body = client.get("/api/health/system").json()

        assert body["database"] == "ok"
        assert body["storefront"]["configured"] is False
        assert "available_points" in body["rate_limiter"]


class TestFetchJobsApi:
    def test_create_runs_in_background(self, client, supplier_cls):
        """작업 생성 시 202와 함께 백그라운드 실행을 등록"""
        with patch("tiresync.api.endpoints.fetch_jobs.build_supplier_client", return_value=supplier_cls()), patch(
            "tiresync.api.endpoints.fetch_jobs.start_background_fetch_job"
        ) as mock_start:
            response = client.post("/api/fetch-jobs", json={"categories": ["tire"]})

        assert response.status_code == 202
        body = response.json()
        assert body["status"] == "pending"
        assert body["categories"] == ["tire"]
        assert mock_start.call_args.args[2] == body["id"]

    def test_second_job_conflicts(self, client, supplier_cls):
        with patch("tiresync.api.endpoints.fetch_jobs.build_supplier_client", return_value=supplier_cls()), patch(
            "tiresync.api.endpoints.fetch_jobs.start_background_fetch_job"
        ):
            client.post("/api/fetch-jobs", json={})
            response = client.post("/api/fetch-jobs", json={})

        assert response.status_code == 409
        assert response.json()["error"]["error_code"] == "CONCURRENCY_CONFLICT"

    def test_missing_supplier_credentials(self, client):
        response = client.post("/api/fetch-jobs", json={})

        assert response.status_code == 503
        assert "api_key" in response.json()["error"]["context"]["missing"]

    def test_unknown_category(self, client, supplier_cls):
        with patch("tiresync.api.endpoints.fetch_jobs.build_supplier_client", return_value=supplier_cls()):
            response = client.post("/api/fetch-jobs", json={"categories": ["wheel"]})
        assert response.status_code == 400

    def test_progress_cancel_and_retry(self, client, supplier_cls):
        with patch("tiresync.api.endpoints.fetch_jobs.build_supplier_client", return_value=supplier_cls()), patch(
            "tiresync.api.endpoints.fetch_jobs.start_background_fetch_job"
        ):
            job_id = client.post("/api/fetch-jobs", json={}).json()["id"]

        progress = client.get(f"/api/fetch-jobs/{job_id}").json()
        assert progress["progress_percent"] == 0
        assert client.get("/api/fetch-jobs/active").json()["id"] == job_id

        # pending 작업은 재개 불가
        assert client.post(f"/api/fetch-jobs/{job_id}/retry").status_code == 409

        cancelled = client.post(f"/api/fetch-jobs/{job_id}/cancel")
        assert cancelled.json()["status"] == "cancelled"
        # 종료된 작업 재취소는 상태 전이 오류
        assert client.post(f"/api/fetch-jobs/{job_id}/cancel").status_code == 409
        assert client.get("/api/fetch-jobs/active").json() is None
        assert len(client.get("/api/fetch-jobs").json()) == 1

    def test_missing_job(self, client):
        assert client.get("/api/fetch-jobs/999").status_code == 404


class TestSyncApi:
    def test_dry_run_sync(self, client, db_session, supplier_cls, storefront_cls, product_data):
        orchestrator = SyncOrchestrator(
            db_session, supplier=supplier_cls({"tire": [product_data("T1")]}), storefront=storefront_cls()
        )
        with patch("tiresync.api.endpoints.sync.build_orchestrator", return_value=orchestrator):
            response = client.post("/api/sync", json={"mode": "full", "categories": ["tire"], "dry_run": True})

        assert response.status_code == 200
        result = response.json()
        assert result["status"] == "completed"
        assert result["skipped"] == 1

        sessions = client.get("/api/sync/sessions").json()
        assert sessions[0]["id"] == result["session_id"]
        detail = client.get(f"/api/sync/sessions/{result['session_id']}", params={"status": "skipped"}).json()
        assert detail["items"][0]["supplier_sku"] == "T1"

    def test_invalid_mode(self, client):
        assert client.post("/api/sync", json={"mode": "partial"}).status_code == 422

    def test_unknown_session(self, client):
        response = client.get("/api/sync/sessions/00000000-0000-0000-0000-000000000000")
        assert response.status_code == 404


class TestSupplierProductsApi:
    def test_list_and_detail(self, client, seeded):
        listing = client.get("/api/supplier-products", params={"brand": "lassa"}).json()
        assert listing["total"] == 1
        assert listing["items"][0]["supplier_sku"] == "T2"

        detail = client.get("/api/supplier-products/T1").json()
        assert detail["product"]["current_price"] == 250000
        assert detail["history"][0]["change_type"] == "new"

        assert client.get("/api/supplier-products/NOPE").status_code == 404
        assert client.get("/api/supplier-products", params={"category": "wheel"}).status_code == 400

    def test_stats_and_brands(self, client, seeded):
        assert client.get("/api/supplier-products/stats", params={"category": "tire"}).json()["total"] == 2
        brands = {b["brand"] for b in client.get("/api/supplier-products/brands").json()}
        assert brands == {"Michelin", "Lassa"}
        assert len(client.get("/api/supplier-products/changes").json()) == 2

    def test_validation_flow(self, client, seeded):
        result = client.post("/api/supplier-products/validate", json={"category": "tire"}).json()
        assert (result["valid"], result["invalid"]) == (1, 1)

        settings = client.put("/api/supplier-products/validation/settings", json={"min_stock": 0}).json()
        assert settings["min_stock"] == 0
        assert client.get("/api/supplier-products/validation/settings").json()["min_stock"] == 0

        stats = client.get("/api/supplier-products/validation/stats").json()
        assert stats["by_status"]["valid"] == 1

    def test_approve_and_reject(self, client, seeded):
        product_id = client.get("/api/supplier-products/T2").json()["product"]["id"]

        assert client.post(f"/api/supplier-products/{product_id}/approve").json()["validation_status"] == "valid"
        rejected = client.post(f"/api/supplier-products/{product_id}/reject", json={"reason": "duplicate"}).json()
        assert rejected["validation_status"] == "invalid"
        assert client.post("/api/supplier-products/999/approve").status_code == 404


class TestPriceRulesApi:
    def test_crud_and_preview(self, client):
        assert client.post("/api/price-rules/seed").json() == {"created": 5}

        created = client.post(
            "/api/price-rules",
            json={"name": "Varta", "category": "battery", "match_field": "brand", "match_value": "Varta",
                  "percentage_markup": 10, "priority": 1},
        )
        assert created.status_code == 201
        rule_id = created.json()["id"]

        preview = client.post(
            "/api/price-rules/preview", json={"supplier_price": 1000, "category": "Battery", "brand": "varta"}
        ).json()
        assert preview["final_price"] == 1100.0
        assert preview["applied_rule_id"] == rule_id

        updated = client.patch(f"/api/price-rules/{rule_id}", json={"fixed_markup": 25}).json()
        assert updated["fixed_markup"] == 25.0
        assert client.delete(f"/api/price-rules/{rule_id}").status_code == 204
        assert client.delete(f"/api/price-rules/{rule_id}").status_code == 404
        assert len(client.get("/api/price-rules", params={"category": "battery"}).json()) == 1

    def test_invalid_rule(self, client):
        response = client.post("/api/price-rules", json={"name": "x", "category": "tire", "match_field": "color"})
        assert response.status_code == 400
        assert client.post("/api/price-rules/preview", json={"supplier_price": 1, "category": "x"}).status_code == 400


class TestCacheApi:
    def test_products_and_status(self, client, supplier_cls, product_data):
        supplier = supplier_cls({"rim": [product_data("R1", category="rim", title="BBS 8.5x19", brand="BBS")]})
        with patch("tiresync.api.endpoints.cache.build_supplier_client", return_value=supplier):
            first = client.get("/api/cache/products", params={"category": "rim"}).json()
            second = client.get("/api/cache/products", params={"category": "rim"}).json()

        assert first["from_cache"] is False
        assert second["from_cache"] is True
        assert second["products"][0]["supplier_sku"] == "R1"
        assert client.get("/api/cache/metadata", params={"category": "rim"}).json()["product_count"] == 1
        assert client.get("/api/cache/status").json()["total_products"] == 1

    def test_refresh_without_credentials(self, client):
        assert client.post("/api/cache/refresh").status_code == 503
