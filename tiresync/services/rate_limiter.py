"""
스토어프론트 GraphQL 비용 기반 rate limiter.

Shopify는 leaky bucket 방식으로 쿼리 비용(point)을 차감하고 초당 restore_rate만큼 회복합니다.
프로세스 전체에서 하나의 인스턴스를 만들어 모든 ShopifyClient에 주입해야 실제 쿼터를 반영합니다.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable

logger = logging.getLogger(__name__)


# 작업별 예상 비용 (실제 비용은 응답의 extensions.cost로 보정)
ESTIMATED_COSTS: dict[str, int] = {
    "get_product": 10,
    "get_products": 50,
    "find_by_sku": 15,
    "get_variant": 10,
    "get_inventory_level": 5,
    "create_product": 20,
    "update_product": 15,
    "update_variant": 10,
    "set_inventory": 10,
    "set_metafields": 15,
}


@dataclass
class RateLimiterStatus:
    current_cost: float
    max_cost: int
    available_points: float
    restore_rate: float
    utilization_percent: int


class CostRateLimiter:
    def __init__(
        self,
        max_cost: int = 2000,
        restore_rate: float = 100.0,
        safety_margin: int = 100,
        max_wait_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.max_cost = max_cost
        self.restore_rate = restore_rate
        self.safety_margin = safety_margin
        self.max_wait_seconds = max_wait_seconds
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self.current_cost: float = 0.0
        self._last_restore = clock()

    def _restore(self) -> None:
        now = self._clock()
        elapsed = now - self._last_restore
        if elapsed > 0:
            self.current_cost = max(0.0, self.current_cost - elapsed * self.restore_rate)
        self._last_restore = now

    def wait_for_capacity(self, estimated_cost: int) -> float:
        """
        예상 비용만큼의 여유가 생길 때까지 대기합니다.

        호출을 거부하지 않고 지연시킵니다. 비용은 대기 전에 예약하므로 동시 호출자는
        앞선 예약만큼 더 오래 기다립니다. 반환값은 실제 대기한 초.
        """
        with self._lock:
            self._restore()
            available = self.max_cost - self.current_cost - self.safety_margin
            wait = 0.0
            if estimated_cost > available:
                wait = (estimated_cost - available) / self.restore_rate
                wait = min(wait, self.max_wait_seconds)
            self.current_cost += estimated_cost

        if wait > 0:
            logger.info(
                f"Rate limit 여유 부족: {estimated_cost} point 필요, {math.ceil(wait)}초 대기"
            )
            self._sleep(wait)
        return wait

    def update_from_response(self, cost_info: dict[str, Any] | None) -> None:
        """응답의 throttleStatus로 추정치를 보정합니다."""
        if not cost_info:
            return
        throttle = cost_info.get("throttleStatus") or {}
        currently_available = throttle.get("currentlyAvailable")
        if currently_available is None:
            return
        with self._lock:
            maximum = throttle.get("maximumAvailable")
            if maximum:
                self.max_cost = int(maximum)
            restore = throttle.get("restoreRate")
            if restore:
                self.restore_rate = float(restore)
            self.current_cost = max(0.0, self.max_cost - float(currently_available))
            self._last_restore = self._clock()

    def available_points(self) -> float:
        with self._lock:
            self._restore()
            return self.max_cost - self.current_cost

    def status(self) -> RateLimiterStatus:
        with self._lock:
            self._restore()
            return RateLimiterStatus(
                current_cost=self.current_cost,
                max_cost=self.max_cost,
                available_points=self.max_cost - self.current_cost,
                restore_rate=self.restore_rate,
                utilization_percent=round(self.current_cost / self.max_cost * 100) if self.max_cost else 0,
            )

    def reset(self) -> None:
        with self._lock:
            self.current_cost = 0.0
            self._last_restore = self._clock()


def parse_cost_from_response(payload: dict[str, Any] | None) -> dict[str, Any] | None:
    """GraphQL 응답에서 extensions.cost를 꺼냅니다."""
    if not isinstance(payload, dict):
        return None
    cost = (payload.get("extensions") or {}).get("cost")
    if not isinstance(cost, dict) or "throttleStatus" not in cost:
        return None
    return cost


def build_rate_limiter() -> CostRateLimiter:
    from tiresync.settings import settings

    return CostRateLimiter(
        max_cost=settings.rate_limit_max_cost,
        restore_rate=settings.rate_limit_restore_rate,
        safety_margin=settings.rate_limit_safety_margin,
        max_wait_seconds=settings.rate_limit_max_wait_seconds,
    )


_shared_lock = threading.Lock()
_shared_limiter: CostRateLimiter | None = None


def get_shared_rate_limiter() -> CostRateLimiter:
    """프로세스 공용 rate limiter. API/CLI/스케줄러가 같은 쿼터를 공유합니다."""
    global _shared_limiter
    with _shared_lock:
        if _shared_limiter is None:
            _shared_limiter = build_rate_limiter()
        return _shared_limiter
