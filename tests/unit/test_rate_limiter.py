"""비용 기반 rate limiter 테스트 (가짜 시계 사용)."""

import pytest

from tiresync.services.rate_limiter import CostRateLimiter, parse_cost_from_response


class FakeClock:
    def __init__(self):
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def limiter(clock):
    return CostRateLimiter(
        max_cost=1000, restore_rate=50, safety_margin=100, max_wait_seconds=10, clock=clock, sleep=clock.sleep
    )


@pytest.mark.unit
class TestCostRateLimiter:
    def test_no_wait_with_capacity(self, limiter, clock):
        assert limiter.wait_for_capacity(100) == 0
        assert clock.sleeps == []
        assert limiter.current_cost == 100

    def test_waits_for_missing_points(self, limiter, clock):
        limiter.current_cost = 850
        # 가용 = 1000 - 850 - 100 = 50, 부족분 50 / 50pt/s = 1초
        assert limiter.wait_for_capacity(100) == pytest.approx(1.0)
        assert clock.sleeps == [pytest.approx(1.0)]

    def test_wait_is_clamped(self, limiter, clock):
        limiter.current_cost = 1000
        assert limiter.wait_for_capacity(1000) == 10
        assert clock.sleeps == [10]

    def test_points_restore_over_time(self, limiter, clock):
        limiter.current_cost = 500
        clock.now += 4
        assert limiter.available_points() == pytest.approx(700)

    def test_concurrent_reservations_accumulate(self, limiter):
        limiter.wait_for_capacity(400)
        limiter.wait_for_capacity(400)
        # 두 번째 예약까지 반영되어 세 번째는 대기
        assert limiter.wait_for_capacity(400) > 0

    def test_update_from_response(self, limiter):
        limiter.update_from_response(
            {"throttleStatus": {"maximumAvailable": 2000, "currentlyAvailable": 1500, "restoreRate": 100}}
        )
        assert limiter.max_cost == 2000
        assert limiter.restore_rate == 100
        assert limiter.current_cost == 500

    def test_update_ignores_missing_info(self, limiter):
        limiter.current_cost = 300
        limiter.update_from_response(None)
        limiter.update_from_response({"requestedQueryCost": 10})
        assert limiter.current_cost == 300

    def test_status_and_reset(self, limiter):
        limiter.current_cost = 250
        status = limiter.status()
        assert status.utilization_percent == 25
        limiter.reset()
        assert limiter.status().current_cost == 0


@pytest.mark.unit
def test_parse_cost_from_response():
    payload = {"data": {}, "extensions": {"cost": {"requestedQueryCost": 12, "throttleStatus": {"currentlyAvailable": 990}}}}
    assert parse_cost_from_response(payload)["requestedQueryCost"] == 12
    assert parse_cost_from_response({"data": {}}) is None
