"""
TireSync Exception Classes

동기화 엔진 전반에서 사용하는 구조화된 예외 정의.
재시도 가능 여부(recoverable)는 Retry Executor와 Fetch Job 컨트롤러가 참조합니다.
"""
from typing import Optional, Dict, Any


class TireSyncError(Exception):
    """
    Base exception for all sync engine errors

    Attributes:
        message: 에러 메시지
        error_code: 에러 코드
        context: 추가 컨텍스트 정보
        recoverable: 복구 가능 여부
    """

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        recoverable: bool = False,
    ):
        self.message = message
        self.error_code = error_code or self.__class__.__name__
        self.context = context or {}
        self.recoverable = recoverable
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """에러 정보를 딕셔너리로 변환"""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "context": self.context,
            "recoverable": self.recoverable,
        }


class RateLimited(TireSyncError):
    """
    원격 API가 호출을 제한함 (HTTP 429 또는 명시적 throttle 마커)

    Fetch job은 이 예외를 실패가 아닌 일시정지(rate_limited)로 처리합니다.
    """

    def __init__(self, message: str = "Rate limited", wait_seconds: int = 60, **kwargs):
        context = {"wait_seconds": wait_seconds}
        context.update(kwargs)
        super().__init__(message=message, error_code="RATE_LIMITED", context=context, recoverable=True)
        self.wait_seconds = wait_seconds


class TransientRemoteError(TireSyncError):
    """네트워크 오류, 5xx, throttle 등 재시도로 회복 가능한 원격 오류"""

    def __init__(self, message: str, status_code: Optional[int] = None, **kwargs):
        context = {"status_code": status_code}
        context.update(kwargs)
        super().__init__(message=message, error_code="TRANSIENT_REMOTE_ERROR", context=context, recoverable=True)
        self.status_code = status_code


class TerminalRemoteError(TireSyncError):
    """
    429 이외의 4xx, 잘못된 응답 형식 등 재시도해도 의미 없는 원격 오류

    Attributes:
        status_code: HTTP 상태 코드
        response_body: 응답 본문 (일부)
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        response_body: Optional[str] = None,
        **kwargs,
    ):
        context = {"status_code": status_code, "response_body": response_body}
        context.update(kwargs)
        super().__init__(message=message, error_code="TERMINAL_REMOTE_ERROR", context=context, recoverable=False)
        self.status_code = status_code
        self.response_body = response_body


class ConfigurationError(TireSyncError):
    """필수 자격 증명/설정 누락. 원격 호출 전에 즉시 실패합니다."""

    def __init__(self, message: str, missing: Optional[list[str]] = None):
        super().__init__(
            message=message,
            error_code="CONFIGURATION_ERROR",
            context={"missing": missing or []},
            recoverable=False,
        )
        self.missing = missing or []


class ConcurrencyConflict(TireSyncError):
    """이미 활성 작업이 있는 상태에서 새 작업을 시도한 경우"""

    def __init__(self, message: str, active_job_id: Optional[int] = None):
        super().__init__(
            message=message,
            error_code="CONCURRENCY_CONFLICT",
            context={"active_job_id": active_job_id},
            recoverable=False,
        )
        self.active_job_id = active_job_id


DuplicateActiveJob = ConcurrencyConflict


class InvalidJobTransition(TireSyncError):
    """허용되지 않은 FetchJob 상태 전이 (예: completed → running)"""

    def __init__(self, current: str, target: str, job_id: Optional[int] = None):
        super().__init__(
            message=f"작업 상태를 '{current}'에서 '{target}'(으)로 변경할 수 없습니다.",
            error_code="INVALID_JOB_TRANSITION",
            context={"current": current, "target": target, "job_id": job_id},
            recoverable=False,
        )
        self.current = current
        self.target = target


class NotFoundError(TireSyncError):
    """요청한 레코드가 존재하지 않음"""

    def __init__(self, message: str, **kwargs):
        super().__init__(message=message, error_code="NOT_FOUND", context=kwargs, recoverable=False)
