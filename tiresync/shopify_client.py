from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable

import httpx

from tiresync.exceptions import ConfigurationError, TerminalRemoteError, TransientRemoteError
from tiresync.services.metafields import MetafieldInput
from tiresync.services.rate_limiter import ESTIMATED_COSTS, CostRateLimiter, parse_cost_from_response
from tiresync.services.retry import RetryPolicy, is_retryable_error, is_safe_to_resend, with_retry

logger = logging.getLogger(__name__)

DEFAULT_API_VERSION = "2024-10"


@dataclass
class StorefrontProduct:
    id: str
    title: str | None = None
    status: str | None = None
    variant_id: str | None = None
    inventory_item_id: str | None = None
    sku: str | None = None
    price: str | None = None


@dataclass
class CreatedProduct:
    id: str
    variant_id: str | None
    inventory_item_id: str | None


@dataclass
class CreateProductInput:
    title: str
    sku: str
    price: float
    vendor: str | None = None
    product_type: str | None = None
    description_html: str | None = None
    tags: list[str] = field(default_factory=list)
    images: list[str] = field(default_factory=list)
    barcode: str | None = None
    status: str = "ACTIVE"


FIND_BY_SKU_QUERY = """
query ($query: String!) {
  productVariants(first: 1, query: $query) {
    edges {
      node {
        id
        sku
        price
        inventoryItem { id }
        product { id title status }
      }
    }
  }
}
"""

# 상품/variant/SKU를 한 번의 mutation으로 생성 (부분 생성된 SKU 없는 상품이 남지 않음)
PRODUCT_SET_MUTATION = """
mutation productSet($input: ProductSetInput!, $synchronous: Boolean!) {
  productSet(input: $input, synchronous: $synchronous) {
    product {
      id
      variants(first: 1) {
        edges { node { id inventoryItem { id } } }
      }
    }
    userErrors { field message }
  }
}
"""

VARIANTS_BULK_UPDATE_MUTATION = """
mutation productVariantsBulkUpdate($productId: ID!, $variants: [ProductVariantsBulkInput!]!) {
  productVariantsBulkUpdate(productId: $productId, variants: $variants) {
    productVariants { id price sku }
    userErrors { field message }
  }
}
"""

VARIANT_PRODUCT_QUERY = """
query ($id: ID!) {
  productVariant(id: $id) { id product { id } }
}
"""

INVENTORY_SET_MUTATION = """
mutation inventorySetOnHandQuantities($input: InventorySetOnHandQuantitiesInput!) {
  inventorySetOnHandQuantities(input: $input) {
    inventoryAdjustmentGroup { id }
    userErrors { field message }
  }
}
"""

METAFIELDS_SET_MUTATION = """
mutation metafieldsSet($metafields: [MetafieldsSetInput!]!) {
  metafieldsSet(metafields: $metafields) {
    metafields { id key namespace }
    userErrors { field message }
  }
}
"""


def _gid(kind: str, value: str) -> str:
    value = str(value)
    return value if value.startswith("gid://") else f"gid://shopify/{kind}/{value}"


def _raise_user_errors(operation: str, payload: dict[str, Any]) -> None:
    errors = payload.get("userErrors") or []
    if errors:
        messages = "; ".join(f"{'.'.join(e.get('field') or [])}: {e.get('message')}" for e in errors)
        raise TerminalRemoteError(f"Shopify {operation} 실패: {messages}")


class ShopifyClient:
    """
    Shopify Admin GraphQL 클라이언트.

    모든 호출은 주입된 CostRateLimiter로 비용을 예약한 뒤 실행하고, 응답의 실제 비용으로 보정합니다.
    throttle/5xx/네트워크 오류는 TransientRemoteError로 Retry Executor가 재시도하며,
    그 외 오류는 TerminalRemoteError입니다. 상품 생성은 요청이 전달되지 않은 연결 오류와
    throttle에만 재전송하고, 나머지는 SKU 조회로 이미 생성된 상품을 확인합니다.
    """

    def __init__(
        self,
        shop_domain: str,
        access_token: str,
        location_id: str,
        rate_limiter: CostRateLimiter,
        api_version: str = DEFAULT_API_VERSION,
        retry_policy: RetryPolicy | None = None,
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        missing = [
            name
            for name, value in (
                ("shop_domain", shop_domain),
                ("access_token", access_token),
                ("location_id", location_id),
            )
            if not value
        ]
        if missing:
            raise ConfigurationError(f"Shopify 설정이 누락되었습니다: {', '.join(missing)}", missing=missing)
        domain = shop_domain.replace("https://", "").replace("http://", "").rstrip("/")
        self._url = f"https://{domain}/admin/api/{api_version}/graphql.json"
        self._access_token = access_token
        self.location_id = _gid("Location", location_id)
        self.rate_limiter = rate_limiter
        self._retry_policy = retry_policy or RetryPolicy()
        self._timeout = httpx.Timeout(timeout, connect=10.0)
        self._transport = transport

    def post(self, query: str, variables: dict[str, Any] | None = None) -> tuple[int, dict[str, Any]]:
        headers = {"Content-Type": "application/json", "X-Shopify-Access-Token": self._access_token}
        payload: dict[str, Any] = {"query": query}
        if variables is not None:
            payload["variables"] = variables
        try:
            with httpx.Client(timeout=self._timeout, transport=self._transport) as client:
                resp = client.post(self._url, json=payload, headers=headers)
        except httpx.TransportError as e:
            raise TransientRemoteError(f"Shopify 네트워크 오류: {e}") from e

        if not resp.content:
            return resp.status_code, {}
        try:
            data = resp.json()
        except ValueError:
            return resp.status_code, {"_raw_text": resp.text}
        if isinstance(data, dict):
            return resp.status_code, data
        return resp.status_code, {"_raw": data}

    def graphql(
        self,
        operation: str,
        query: str,
        variables: dict[str, Any] | None = None,
        is_retryable: Callable[[BaseException], bool] = is_retryable_error,
    ) -> dict[str, Any]:
        """비용 예약 → 호출 → 비용 보정. data 부분만 돌려줍니다."""
        estimated = ESTIMATED_COSTS.get(operation, 10)

        def _call() -> dict[str, Any]:
            self.rate_limiter.wait_for_capacity(estimated)
            status_code, payload = self.post(query, variables)
            self.rate_limiter.update_from_response(parse_cost_from_response(payload))

            if status_code == 429:
                raise TransientRemoteError("Shopify throttled (HTTP 429)", status_code=429)
            if status_code >= 500:
                raise TransientRemoteError(f"Shopify GraphQL 호출 실패: HTTP {status_code}", status_code=status_code)
            if status_code >= 400:
                raise TerminalRemoteError(
                    f"Shopify GraphQL 호출 실패: HTTP {status_code}",
                    status_code=status_code,
                    response_body=str(payload)[:500],
                )
            errors = payload.get("errors")
            if errors:
                codes = {((e or {}).get("extensions") or {}).get("code") for e in errors if isinstance(e, dict)}
                if "THROTTLED" in codes:
                    raise TransientRemoteError("Shopify throttled (THROTTLED)", status_code=429)
                raise TerminalRemoteError(f"Shopify GraphQL 오류: {errors}")
            data = payload.get("data")
            if not isinstance(data, dict):
                raise TerminalRemoteError("Shopify 응답에 data가 없습니다", response_body=str(payload)[:500])
            return data

        return with_retry(
            _call, policy=self._retry_policy, is_retryable=is_retryable, operation=f"Shopify {operation}"
        )

    def find_by_sku(self, sku: str) -> StorefrontProduct | None:
        data = self.graphql("find_by_sku", FIND_BY_SKU_QUERY, {"query": f"sku:{sku}"})
        edges = ((data.get("productVariants") or {}).get("edges")) or []
        if not edges:
            return None
        node = edges[0].get("node") or {}
        product = node.get("product") or {}
        if not product.get("id"):
            return None
        return StorefrontProduct(
            id=product["id"],
            title=product.get("title"),
            status=product.get("status"),
            variant_id=node.get("id"),
            inventory_item_id=(node.get("inventoryItem") or {}).get("id"),
            sku=node.get("sku"),
            price=node.get("price"),
        )

    def create_product(self, product: CreateProductInput) -> CreatedProduct:
        """
        productSet으로 상품을 생성합니다. 가격/SKU/바코드는 기본 variant에 함께 들어갑니다.

        생성은 비멱등이므로 연결 실패와 throttle만 재전송합니다. 응답을 받지 못한 경우
        (읽기 타임아웃, 5xx)에는 SKU로 다시 조회해서 이미 생성된 상품이면 그대로 채택합니다.
        """
        variant: dict[str, Any] = {
            "optionValues": [{"optionName": "Title", "name": "Default Title"}],
            "price": f"{product.price:.2f}",
            "sku": product.sku,
            "inventoryItem": {"tracked": True},
        }
        if product.barcode:
            variant["barcode"] = product.barcode
        product_input: dict[str, Any] = {
            "title": product.title,
            "status": product.status,
            "productOptions": [{"name": "Title", "values": [{"name": "Default Title"}]}],
            "variants": [variant],
        }
        if product.vendor:
            product_input["vendor"] = product.vendor
        if product.product_type:
            product_input["productType"] = product.product_type
        if product.description_html:
            product_input["descriptionHtml"] = product.description_html
        if product.tags:
            product_input["tags"] = product.tags
        if product.images:
            product_input["files"] = [{"originalSource": url, "contentType": "IMAGE"} for url in product.images]

        try:
            data = self.graphql(
                "create_product",
                PRODUCT_SET_MUTATION,
                {"input": product_input, "synchronous": True},
                is_retryable=is_safe_to_resend,
            )
        except TransientRemoteError as e:
            existing = self.find_by_sku(product.sku)
            if existing is None:
                raise
            logger.warning(f"Shopify 상품 생성 응답 유실, 기존 상품 채택: {existing.id} (sku={product.sku}): {e}")
            return CreatedProduct(
                id=existing.id, variant_id=existing.variant_id, inventory_item_id=existing.inventory_item_id
            )

        result = data.get("productSet") or {}
        _raise_user_errors("productSet", result)
        created = result.get("product") or {}
        if not created.get("id"):
            raise TerminalRemoteError("Shopify productSet 응답에 product.id가 없습니다")

        variant_edges = ((created.get("variants") or {}).get("edges")) or []
        node = (variant_edges[0].get("node") if variant_edges else None) or {}

        logger.info(f"Shopify 상품 생성: {created['id']} (sku={product.sku})")
        return CreatedProduct(
            id=created["id"],
            variant_id=node.get("id"),
            inventory_item_id=(node.get("inventoryItem") or {}).get("id"),
        )

    def update_variant_price(self, variant_id: str, price: float, product_id: str | None = None) -> None:
        if not product_id:
            data = self.graphql("get_variant", VARIANT_PRODUCT_QUERY, {"id": _gid("ProductVariant", variant_id)})
            product_id = (((data.get("productVariant") or {}).get("product")) or {}).get("id")
            if not product_id:
                raise TerminalRemoteError(f"variant의 상품을 찾을 수 없습니다: {variant_id}")
        data = self.graphql(
            "update_variant",
            VARIANTS_BULK_UPDATE_MUTATION,
            {
                "productId": product_id,
                "variants": [{"id": _gid("ProductVariant", variant_id), "price": f"{price:.2f}"}],
            },
        )
        _raise_user_errors("productVariantsBulkUpdate", data.get("productVariantsBulkUpdate") or {})

    def set_inventory(self, inventory_item_id: str, location_id: str | None, quantity: int) -> None:
        """location_id가 None이면 설정된 기본 location을 사용합니다."""
        data = self.graphql(
            "set_inventory",
            INVENTORY_SET_MUTATION,
            {
                "input": {
                    "reason": "correction",
                    "setQuantities": [
                        {
                            "inventoryItemId": _gid("InventoryItem", inventory_item_id),
                            "locationId": _gid("Location", location_id) if location_id else self.location_id,
                            "quantity": max(0, int(quantity)),
                        }
                    ],
                }
            },
        )
        _raise_user_errors("inventorySetOnHandQuantities", data.get("inventorySetOnHandQuantities") or {})

    def set_metafields(self, owner_id: str, entries: list[MetafieldInput]) -> int:
        if not entries:
            return 0
        metafields = [dict(entry.to_graphql(), ownerId=owner_id) for entry in entries]
        data = self.graphql("set_metafields", METAFIELDS_SET_MUTATION, {"metafields": metafields})
        result = data.get("metafieldsSet") or {}
        _raise_user_errors("metafieldsSet", result)
        return len(result.get("metafields") or [])


def build_shopify_client(
    rate_limiter: CostRateLimiter, transport: httpx.BaseTransport | None = None
) -> ShopifyClient:
    from tiresync.settings import settings

    return ShopifyClient(
        shop_domain=settings.shopify_shop_domain,
        access_token=settings.shopify_access_token,
        location_id=settings.shopify_location_id,
        rate_limiter=rate_limiter,
        api_version=settings.shopify_api_version,
        retry_policy=RetryPolicy.from_settings(),
        timeout=settings.shopify_http_timeout,
        transport=transport,
    )
