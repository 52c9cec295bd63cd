from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from importlib import resources
from typing import Any

import httpx

from tiresync.exceptions import ConfigurationError, RateLimited, TerminalRemoteError, TransientRemoteError
from tiresync.normalization import SupplierProductData, normalize_supplier_product
from tiresync.services.retry import RetryPolicy, extract_retry_after, with_retry

logger = logging.getLogger(__name__)

PRODUCT_LIST_KEYS = ("products", "data", "items", "Urunler", "result")


@dataclass
class SupplierPage:
    products: list[SupplierProductData] = field(default_factory=list)
    has_more: bool = False
    total: int | None = None


def _extract_product_list(payload: Any) -> tuple[list[dict[str, Any]], dict[str, Any]]:
    if isinstance(payload, list):
        return [p for p in payload if isinstance(p, dict)], {}
    if isinstance(payload, dict):
        for key in PRODUCT_LIST_KEYS:
            value = payload.get(key)
            if isinstance(value, list):
                return [p for p in value if isinstance(p, dict)], payload
    raise TerminalRemoteError("공급사 응답에서 상품 목록을 찾을 수 없습니다", response_body=str(payload)[:500])


def _resolve_has_more(meta: dict[str, Any], page: int, page_size: int, count: int) -> tuple[bool, int | None]:
    total = meta.get("total") or meta.get("totalCount")
    if isinstance(meta.get("hasMore"), bool):
        return meta["hasMore"], total
    total_pages = meta.get("totalPages")
    if isinstance(total_pages, int):
        return page < total_pages, total
    if isinstance(total, int):
        return page * page_size < total, total
    return count >= page_size, total


class SupplierClient:
    """
    공급사 상품 피드 클라이언트.

    URL 형식: {base_url}/{customer_id}/{api_key}/{category_id}?page=N&limit=M
    HTTP 429는 RateLimited로, 그 외 4xx/5xx는 TerminalRemoteError로 변환합니다.
    네트워크 오류는 TransientRemoteError로 변환되어 Retry Executor가 재시도합니다.
    """

    def __init__(
        self,
        base_url: str,
        customer_id: str,
        api_key: str,
        category_ids: dict[str, str],
        timeout: float = 60.0,
        retry_policy: RetryPolicy | None = None,
        default_wait_seconds: int = 60,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        missing = [
            name
            for name, value in (("customer_id", customer_id), ("api_key", api_key), ("base_url", base_url))
            if not value
        ]
        if missing:
            raise ConfigurationError(f"공급사 API 설정이 누락되었습니다: {', '.join(missing)}", missing=missing)
        self._base_url = base_url.rstrip("/")
        self._customer_id = customer_id
        self._api_key = api_key
        self._category_ids = dict(category_ids)
        self._timeout = httpx.Timeout(timeout, connect=10.0)
        self._retry_policy = retry_policy or RetryPolicy()
        self._default_wait_seconds = default_wait_seconds
        self._transport = transport

    def _category_url(self, category: str) -> str:
        category_id = self._category_ids.get(category)
        if not category_id:
            raise ConfigurationError(f"카테고리 ID가 설정되지 않았습니다: {category}", missing=[f"category_ids.{category}"])
        return f"{self._base_url}/{self._customer_id}/{self._api_key}/{category_id}"

    def get(self, url: str, params: dict[str, Any] | None = None) -> tuple[int, dict[str, Any] | list, dict[str, str]]:
        try:
            with httpx.Client(timeout=self._timeout, transport=self._transport) as client:
                resp = client.get(url, params=params, headers={"Accept": "application/json"})
        except httpx.TransportError as e:
            raise TransientRemoteError(f"공급사 API 네트워크 오류: {e}") from e

        headers = dict(resp.headers)
        if not resp.content:
            return resp.status_code, {}, headers
        try:
            return resp.status_code, resp.json(), headers
        except ValueError:
            return resp.status_code, {"_raw_text": resp.text}, headers

    def fetch_page(self, category: str, page: int, page_size: int) -> SupplierPage:
        url = self._category_url(category)

        def _call() -> SupplierPage:
            status_code, payload, headers = self.get(url, params={"page": page, "limit": page_size})
            if status_code == 429:
                wait = extract_retry_after(headers.get("retry-after"), default=self._default_wait_seconds)
                raise RateLimited(f"공급사 API rate limit (HTTP 429), {wait} seconds 후 재시도", wait_seconds=wait)
            if status_code >= 500:
                raise TransientRemoteError(f"공급사 API 호출 실패: HTTP {status_code}", status_code=status_code)
            if status_code >= 400:
                raise TerminalRemoteError(
                    f"공급사 API 호출 실패: HTTP {status_code}",
                    status_code=status_code,
                    response_body=str(payload)[:500],
                )
            if isinstance(payload, dict) and payload.get("rateLimited"):
                wait = extract_retry_after(payload.get("retryAfter"), default=self._default_wait_seconds)
                raise RateLimited("공급사 API rate limit 응답", wait_seconds=wait)

            raw_products, meta = _extract_product_list(payload)
            if not meta and len(raw_products) > page_size:
                # 페이지네이션을 지원하지 않는 응답: 전체 카탈로그로 간주
                products = [
                    normalize_supplier_product(raw, category, idx) for idx, raw in enumerate(raw_products)
                ]
                return SupplierPage(products=products, has_more=False, total=len(products))

            offset = (page - 1) * page_size
            products = [
                normalize_supplier_product(raw, category, offset + idx) for idx, raw in enumerate(raw_products)
            ]
            has_more, total = _resolve_has_more(meta, page, page_size, len(raw_products))
            return SupplierPage(products=products, has_more=has_more and bool(raw_products), total=total)

        return with_retry(_call, policy=self._retry_policy, operation=f"공급사 {category} p{page}")


class MockSupplierClient:
    """패키지에 포함된 JSON 혹은 주입된 데이터로 동작하는 공급사 클라이언트 (개발/데모용)."""

    def __init__(self, catalog: dict[str, list[dict[str, Any]]] | None = None) -> None:
        if catalog is None:
            text = resources.files("tiresync.data").joinpath("mock_products.json").read_text(encoding="utf-8")
            catalog = json.loads(text)
        self._catalog = catalog

    def fetch_page(self, category: str, page: int, page_size: int) -> SupplierPage:
        items = self._catalog.get(category, [])
        start = (page - 1) * page_size
        chunk = items[start:start + page_size]
        products = [normalize_supplier_product(raw, category, start + idx) for idx, raw in enumerate(chunk)]
        return SupplierPage(products=products, has_more=start + page_size < len(items), total=len(items))


def build_supplier_client(transport: httpx.BaseTransport | None = None) -> SupplierClient | MockSupplierClient:
    from tiresync.settings import settings

    if settings.supplier_use_mock:
        logger.info("Mock 공급사 클라이언트를 사용합니다.")
        return MockSupplierClient()
    return SupplierClient(
        base_url=settings.supplier_api_base_url,
        customer_id=settings.supplier_customer_id,
        api_key=settings.supplier_api_key,
        category_ids=settings.supplier_category_ids,
        timeout=settings.supplier_http_timeout,
        retry_policy=RetryPolicy.from_settings(),
        default_wait_seconds=settings.fetch_default_wait_seconds,
        transport=transport,
    )
