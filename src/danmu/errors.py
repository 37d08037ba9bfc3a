"""
danmu 엔진 전체에서 공유하는 에러 계층입니다.

역할:
- 쓰기/읽기/모더레이션 경계에서 발생하는 실패를 타입으로 구분
- HTTP 상태 코드와 응답용 에러 코드를 에러 객체에 함께 보관
- API 계층은 DanmuError만 잡아서 {"success": false, "error", "code"} 응답으로 변환

재시도 정책:
- ValidationError, AuthRequired, Forbidden, NotFound: 재시도하지 않고 호출자에게 그대로 전달
- TransientStoreError: 읽기만 호출자가 backoff로 재시도, 쓰기는 재시도하지 않음
- SubscriptionDropped: 구독자가 재연결 후 커서 기반 catch-up으로 복구
"""

from __future__ import annotations

from typing import Any, Optional


class DanmuError(Exception):
    """danmu 엔진 에러의 기본 클래스입니다."""

    status_code: int = 500
    code: str = "INTERNAL_ERROR"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_payload(self) -> dict[str, Any]:
        """HTTP 에러 응답 본문을 만듭니다."""
        return {"success": False, "error": self.message, "code": self.code}


class ValidationError(DanmuError):
    """입력값이 쓰기 경계의 제약을 만족하지 않을 때 발생합니다."""

    status_code = 400
    code = "VALIDATION_ERROR"

    def __init__(self, message: str, field: Optional[str] = None) -> None:
        super().__init__(message)
        self.field = field

    def to_payload(self) -> dict[str, Any]:
        payload = super().to_payload()
        if self.field is not None:
            payload["field"] = self.field
        return payload


class AuthRequired(DanmuError):
    """인증 토큰이 없거나 검증에 실패했을 때 발생합니다."""

    status_code = 401
    code = "AUTH_REQUIRED"

    def __init__(self, message: str = "Authentication required") -> None:
        super().__init__(message)


class Forbidden(DanmuError):
    """인증은 되었지만 작업 권한이 없을 때 발생합니다."""

    status_code = 403
    code = "FORBIDDEN"

    def __init__(self, message: str = "Insufficient permissions") -> None:
        super().__init__(message)


class NotFound(DanmuError):
    """참조한 리소스(영상, 댓글)가 존재하지 않을 때 발생합니다."""

    status_code = 404
    code = "NOT_FOUND"

    def __init__(self, resource: str, resource_id: Optional[str] = None) -> None:
        super().__init__(f"{resource} not found")
        self.resource = resource
        self.resource_id = resource_id


class RateLimited(DanmuError):
    """사용자별 쓰기 요청 한도를 초과했을 때 발생합니다."""

    status_code = 429
    code = "RATE_LIMIT_EXCEEDED"

    def __init__(self, retry_after_sec: float) -> None:
        super().__init__("Too many requests, please try again later")
        self.retry_after_sec = retry_after_sec

    def to_payload(self) -> dict[str, Any]:
        payload = super().to_payload()
        payload["retryAfter"] = max(1, int(round(self.retry_after_sec)))
        return payload


class TransientStoreError(DanmuError):
    """외부 문서 저장소가 일시적으로 응답하지 않을 때 발생합니다."""

    status_code = 503
    code = "STORE_UNAVAILABLE"


class SubscriptionDropped(DanmuError):
    """실시간 전달 채널이 끊겼을 때 발생합니다. HTTP로 노출되지 않습니다."""

    code = "SUBSCRIPTION_DROPPED"
