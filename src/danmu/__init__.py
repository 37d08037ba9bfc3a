"""
danmu 데이터 모델 패키지

공통 데이터 타입:
- NewDanmuComment: 쓰기 경로로 들어오는 검증 전 입력
- DanmuComment: 저장소가 id와 created_at을 부여한 불변 댓글 레코드
- Actor: 요청을 보낸 인증된 사용자
- Video: 댓글이 묶이는 영상

공통 규칙:
- 댓글은 재생 시각 t에서 ts <= t < ts + window_seconds 일 때만 활성 상태
- 정렬 순서는 (video_timestamp_sec, created_at, id) 오름차순
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Optional

# 움직임 등급: scroll은 가로 이동, top/bottom은 고정 위치 페이드
MOTION_CLASSES = ("scroll", "top", "bottom")
# 크기 등급
SIZE_CLASSES = ("small", "medium", "large")

# 저장 상태
STATUS_ACTIVE = "active"
STATUS_HIDDEN = "hidden"
STATUS_DELETED = "deleted"

# 기본 표시 윈도우 (초)
DEFAULT_WINDOW_SECONDS = 8.0


def is_active_at(video_timestamp_sec: float, current_time_sec: float, window_seconds: float) -> bool:
    """시작은 포함, 끝은 제외하는 활성 구간 판정입니다."""
    return video_timestamp_sec <= current_time_sec < video_timestamp_sec + window_seconds


def format_timestamp(value: datetime) -> str:
    """created_at을 마이크로초 정밀도의 ISO-8601 UTC 문자열로 변환합니다. 커서 비교에 그대로 쓰입니다."""
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds").replace("+00:00", "Z")


def parse_timestamp(value: str) -> datetime:
    """ISO-8601 문자열(Z 접미사 허용)을 UTC datetime으로 변환합니다."""
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


@dataclass
class NewDanmuComment:
    """
    쓰기 경로로 들어온 검증 전 댓글입니다.

    필드:
        video_id: 대상 영상 ID
        text: 본문 (저장 시 앞뒤 공백 제거)
        video_timestamp_sec: 영상 내 표시 시작 시각 (초)
        motion_class: scroll | top | bottom
        color: #RRGGBB 색상 (유효하지 않으면 기본 색상으로 대체)
        size_class: small | medium | large
        speed_multiplier: scroll 속도 배율 (양수)
    """
    video_id: str
    text: str
    video_timestamp_sec: float
    motion_class: str = "scroll"
    color: str = "#FFFFFF"
    size_class: str = "medium"
    speed_multiplier: float = 1.0


@dataclass(frozen=True)
class DanmuComment:
    """
    저장소에 기록된 불변 댓글 레코드입니다.

    필드:
        id: 저장소가 부여한 고유 ID
        video_id: 대상 영상 ID
        author_id: 작성자 ID
        text: 본문 (1~200자)
        video_timestamp_sec: 영상 내 표시 시작 시각 (초)
        motion_class: scroll | top | bottom
        color: #RRGGBB 색상
        size_class: small | medium | large
        speed_multiplier: scroll 속도 배율
        created_at: 서버 생성 시각 (UTC)
        status: active | hidden | deleted
        hidden_reason: 숨김 사유 (모더레이션 시 기록)
    """
    id: str
    video_id: str
    author_id: str
    text: str
    video_timestamp_sec: float
    motion_class: str
    color: str
    size_class: str
    speed_multiplier: float
    created_at: datetime
    status: str = STATUS_ACTIVE
    hidden_reason: Optional[str] = None

    @property
    def hidden(self) -> bool:
        """읽기에서 제외되는 상태(숨김, 삭제)인지 여부입니다."""
        return self.status != STATUS_ACTIVE

    def sort_key(self) -> tuple[float, datetime, str]:
        return (self.video_timestamp_sec, self.created_at, self.id)

    def window_end(self, window_seconds: float = DEFAULT_WINDOW_SECONDS) -> float:
        """활성 구간의 끝 시각 (제외)을 반환합니다."""
        return self.video_timestamp_sec + window_seconds

    def is_active_at(self, current_time_sec: float, window_seconds: float = DEFAULT_WINDOW_SECONDS) -> bool:
        return is_active_at(self.video_timestamp_sec, current_time_sec, window_seconds)

    def with_status(self, status: str, reason: Optional[str] = None) -> "DanmuComment":
        return replace(self, status=status, hidden_reason=reason)

    def to_dict(self) -> dict[str, Any]:
        """HTTP/WebSocket 응답용 딕셔너리로 변환합니다."""
        data: dict[str, Any] = {
            "id": self.id,
            "videoId": self.video_id,
            "userId": self.author_id,
            "text": self.text,
            "timestamp": self.video_timestamp_sec,
            "position": self.motion_class,
            "color": self.color,
            "size": self.size_class,
            "speed": self.speed_multiplier,
            "createdAt": format_timestamp(self.created_at),
            "status": self.status,
        }
        if self.hidden_reason is not None:
            data["hiddenReason"] = self.hidden_reason
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DanmuComment":
        """to_dict() 형식(또는 저장소 문서)에서 레코드를 복원합니다."""
        created_at = data["createdAt"]
        if isinstance(created_at, str):
            created_at = parse_timestamp(created_at)
        return cls(
            id=data["id"],
            video_id=data["videoId"],
            author_id=data["userId"],
            text=data.get("text", data.get("content", "")),
            video_timestamp_sec=float(data["timestamp"]),
            motion_class=data.get("position", "scroll"),
            color=data.get("color", "#FFFFFF"),
            size_class=data.get("size", "medium"),
            speed_multiplier=float(data.get("speed", 1.0)),
            created_at=created_at,
            status=data.get("status", STATUS_ACTIVE),
            hidden_reason=data.get("hiddenReason"),
        )


@dataclass(frozen=True)
class Actor:
    """
    인증된 요청자입니다.

    필드:
        uid: 사용자 ID
        roles: 역할 목록 (user, moderator, admin)
    """
    uid: str
    roles: tuple[str, ...] = ("user",)

    @property
    def is_moderator(self) -> bool:
        return "moderator" in self.roles or "admin" in self.roles

    @property
    def is_admin(self) -> bool:
        return "admin" in self.roles


@dataclass
class Video:
    """
    댓글이 묶이는 영상입니다. duration_sec가 0이면 길이 제한을 적용하지 않습니다.
    """
    video_id: str
    duration_sec: float = 0.0
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.video_id, "duration": self.duration_sec, **self.metadata}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Video":
        extra = {key: value for key, value in data.items() if key not in ("id", "duration")}
        return cls(video_id=data["id"], duration_sec=float(data.get("duration", 0.0)), metadata=extra)
