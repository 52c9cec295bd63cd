"""
원격 호출 재시도 실행기.

tenacity Retrying 위에 지수 백오프 + 비율 jitter 대기와 재시도 판정 predicate를 얹습니다.
기본 정책: 3회 재시도, 1초 시작, 30초 상한, 최대 50% jitter.
"""

from __future__ import annotations

import logging
import math
import random
import re
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Callable, TypeVar

import httpx
from tenacity import RetryCallState, Retrying, retry_if_exception, stop_after_attempt
from tenacity.wait import wait_base

from tiresync.exceptions import (
    ConfigurationError,
    RateLimited,
    TerminalRemoteError,
    TransientRemoteError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_PATTERNS = (
    "throttled",
    "rate limit",
    "too many requests",
    "timeout",
    "timed out",
    "econnreset",
    "econnrefused",
    "enotfound",
    "socket hang up",
    "network",
    "connection reset",
    "internal server error",
    "bad gateway",
    "service unavailable",
    "gateway timeout",
    "temporarily unavailable",
    "try again",
)

SERVER_ERROR_PATTERN = re.compile(r"\b50[0234]\b")

NETWORK_PATTERNS = (
    "econnreset",
    "econnrefused",
    "enotfound",
    "etimedout",
    "socket hang up",
    "network",
    "connection",
)


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    jitter_ratio: float = 0.5

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        from tiresync.settings import settings

        return cls(
            max_retries=settings.retry_max_retries,
            base_delay=settings.retry_base_delay,
            max_delay=settings.retry_max_delay,
        )


class wait_exponential_proportional_jitter(wait_base):
    """min(max_delay, base × 2^attempt)에 최대 jitter_ratio 비율의 무작위 지연을 더합니다."""

    def __init__(
        self,
        base_delay: float,
        max_delay: float,
        jitter_ratio: float = 0.5,
        rng: Callable[[], float] = random.random,
    ):
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter_ratio = jitter_ratio
        self.rng = rng

    def compute(self, attempt: int) -> float:
        delay = min(self.max_delay, self.base_delay * (2 ** attempt))
        jitter = delay * self.jitter_ratio * self.rng()
        return min(self.max_delay, delay + jitter)

    def __call__(self, retry_state: RetryCallState) -> float:
        # attempt_number는 1부터 시작. 첫 재시도는 attempt=0
        return self.compute(retry_state.attempt_number - 1)


def is_network_error(error: BaseException) -> bool:
    if isinstance(error, (httpx.TransportError, ConnectionError, TimeoutError)):
        return True
    message = str(error).lower()
    return any(pattern in message for pattern in NETWORK_PATTERNS)


def is_retryable_error(error: BaseException) -> bool:
    """재시도할 가치가 있는 오류인지 판정합니다."""
    # supplier rate limit은 job 레벨에서 일시정지로 처리
    if isinstance(error, RateLimited):
        return False
    if isinstance(error, TransientRemoteError):
        return True
    if isinstance(error, (TerminalRemoteError, ConfigurationError)):
        return False
    if isinstance(error, httpx.TimeoutException) or is_network_error(error):
        return True
    message = str(error).lower()
    if SERVER_ERROR_PATTERN.search(message):
        return True
    return any(pattern in message for pattern in RETRYABLE_PATTERNS)


# 요청이 서버에 도달하지 않았거나 실행 전에 거부된 경우만
NOT_SENT_ERRORS = (httpx.ConnectError, httpx.ConnectTimeout, httpx.PoolTimeout)


def is_safe_to_resend(error: BaseException) -> bool:
    """
    비멱등 mutation(상품 생성 등)을 다시 보내도 되는지 판정합니다.

    연결 단계 실패와 throttle(429)만 허용합니다. 읽기 타임아웃이나 5xx는 서버에서
    이미 실행되었을 수 있으므로 재전송하지 않습니다.
    """
    if isinstance(error, NOT_SENT_ERRORS):
        return True
    if isinstance(error, TransientRemoteError):
        if error.status_code == 429:
            return True
        return isinstance(error.__cause__, NOT_SENT_ERRORS)
    return False


def extract_retry_after(value: Any, default: int = 60) -> int:
    """Retry-After 값(초 또는 HTTP 날짜)을 초 단위로 변환합니다."""
    if value is None or value == "":
        return default
    if isinstance(value, (int, float)):
        return max(0, math.ceil(value))
    text = str(value).strip()
    try:
        return max(0, math.ceil(float(text)))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(text)
    except (TypeError, ValueError):
        return default
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    delta = (when - datetime.now(timezone.utc)).total_seconds()
    return max(0, math.ceil(delta))


def with_retry(
    fn: Callable[[], T],
    policy: RetryPolicy | None = None,
    is_retryable: Callable[[BaseException], bool] = is_retryable_error,
    operation: str = "remote call",
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    fn을 재시도 정책에 따라 실행합니다.

    재시도 불가 오류이거나 시도 횟수가 소진되면 마지막 예외를 그대로 다시 던집니다.
    """
    policy = policy or RetryPolicy()
    retrying = Retrying(
        stop=stop_after_attempt(policy.max_retries + 1),
        wait=wait_exponential_proportional_jitter(
            policy.base_delay, policy.max_delay, policy.jitter_ratio
        ),
        retry=retry_if_exception(is_retryable),
        reraise=True,
        sleep=sleep,
        before_sleep=lambda retry_state: logger.warning(
            f"{operation} 재시도 중... ({retry_state.attempt_number}회째): {retry_state.outcome.exception()}"
        ),
    )
    return retrying(fn)
