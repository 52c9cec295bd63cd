"""도메인 열거형과 FetchJob 상태 전이 테이블."""

from enum import Enum


class ProductCategory(str, Enum):
    TIRE = "tire"
    RIM = "rim"
    BATTERY = "battery"

    @classmethod
    def parse(cls, value: "str | ProductCategory") -> "ProductCategory":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValueError(f"알 수 없는 카테고리입니다: {value}") from None


ALL_CATEGORIES: list[ProductCategory] = [ProductCategory.TIRE, ProductCategory.RIM, ProductCategory.BATTERY]


class ValidationStatus(str, Enum):
    RAW = "raw"
    VALID = "valid"
    INVALID = "invalid"
    NEEDS_UPDATE = "needs_update"
    PUBLISHED = "published"
    INACTIVE = "inactive"


class ChangeType(str, Enum):
    NEW = "new"
    PRICE = "price"
    STOCK = "stock"
    BOTH = "both"


class FetchJobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    RATE_LIMITED = "rate_limited"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_active(self) -> bool:
        return self in ACTIVE_JOB_STATUSES

    @property
    def is_terminal(self) -> bool:
        return not FETCH_JOB_TRANSITIONS[self]


ACTIVE_JOB_STATUSES = frozenset(
    {FetchJobStatus.PENDING, FetchJobStatus.RUNNING, FetchJobStatus.RATE_LIMITED}
)

# 허용된 상태 전이. 값이 빈 집합이면 종료 상태.
FETCH_JOB_TRANSITIONS: dict[FetchJobStatus, frozenset[FetchJobStatus]] = {
    FetchJobStatus.PENDING: frozenset(
        {FetchJobStatus.RUNNING, FetchJobStatus.FAILED, FetchJobStatus.CANCELLED}
    ),
    FetchJobStatus.RUNNING: frozenset(
        {
            FetchJobStatus.RATE_LIMITED,
            FetchJobStatus.COMPLETED,
            FetchJobStatus.FAILED,
            FetchJobStatus.CANCELLED,
        }
    ),
    FetchJobStatus.RATE_LIMITED: frozenset(
        {FetchJobStatus.RUNNING, FetchJobStatus.FAILED, FetchJobStatus.CANCELLED}
    ),
    FetchJobStatus.COMPLETED: frozenset(),
    FetchJobStatus.FAILED: frozenset(),
    FetchJobStatus.CANCELLED: frozenset(),
}


def can_transition(current: FetchJobStatus, target: FetchJobStatus) -> bool:
    return target in FETCH_JOB_TRANSITIONS[current]


class TriggeredBy(str, Enum):
    MANUAL = "manual"
    SCHEDULED = "scheduled"
    RETRY = "retry"


class SyncMode(str, Enum):
    FULL = "full"
    INCREMENTAL = "incremental"
    VALIDATION_ONLY = "validation-only"


class SyncAction(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DEACTIVATE = "deactivate"


class CacheStatus(str, Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    ERROR = "error"
    RATE_LIMITED = "rate_limited"
