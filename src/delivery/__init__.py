"""
실시간 전달 채널 패키지

공통 데이터 타입:
- DeliveryEvent: 구독자에게 전달되는 댓글 변경 이벤트
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from src.danmu import DanmuComment

# 이벤트 종류
EVENT_CREATED = "created"
EVENT_REMOVED = "removed"


@dataclass(frozen=True)
class DeliveryEvent:
    """
    구독자에게 전달되는 변경 이벤트입니다.

    필드:
        kind: "created" | "removed"
        comment: 대상 댓글 (removed이면 변경 후 상태)
        sequence: 백엔드가 부여한 단조 증가 번호 (catch-up 기준)
    """
    kind: str
    comment: DanmuComment
    sequence: int = 0

    def to_message(self) -> dict[str, Any]:
        """WebSocket 전송용 메시지로 변환합니다."""
        if self.kind == EVENT_REMOVED:
            return {"type": EVENT_REMOVED, "id": self.comment.id, "status": self.comment.status}
        return {"type": EVENT_CREATED, "danmu": self.comment.to_dict()}
