"""
재생 시각 기준 활성 댓글 필터 모듈입니다.

역할:
- 댓글이 재생 시각 t에서 활성인지 판정 (ts <= t < ts + window, 시작 포함 끝 제외)
- 시간 정렬 인덱스와 이진 탐색으로 전체 이력을 매번 스캔하지 않고 활성 집합 계산
- 정방향 재생은 직전 시각 이후 구간만 확인하는 증분 갱신
- 뒤로 이동(seek)하거나 윈도우보다 크게 앞으로 이동하면 전체 재계산
- 한 번의 advance() 호출에서 진입/이탈을 함께 계산하여 일관된 전이 제공

사용 예시:
    >>> window_filter = TemporalWindowFilter(window_seconds=8.0)
    >>> window_filter.insert(comment)
    >>> update = window_filter.advance(10.0)
    >>> [c.id for c in update.entered]
"""

from __future__ import annotations

import bisect
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Optional, Sequence

from src.danmu import DEFAULT_WINDOW_SECONDS, DanmuComment, is_active_at

logger = logging.getLogger(__name__)

# 부동소수점 경계 여유. 후보 범위만 넓히고 최종 판정은 is_active_at으로 정확히 수행
_BOUNDARY_SLACK = 1e-6


def filter_active(
    comments: Sequence[DanmuComment],
    current_time_sec: float,
    window_seconds: float = DEFAULT_WINDOW_SECONDS,
) -> list[DanmuComment]:
    """
    재생 시각에 활성인 댓글만 골라 정렬 순서대로 반환합니다.

    입력이 타임스탬프 오름차순이면 이진 탐색으로 후보 구간만 확인하고,
    정렬되어 있지 않으면 먼저 정렬합니다.

    파라미터:
        comments: 댓글 목록
        current_time_sec: 현재 재생 시각 (초)
        window_seconds: 표시 윈도우 길이 (초)

    반환값:
        list[DanmuComment]: ts <= t < ts + window 를 만족하는 댓글
    """
    ordered = list(comments)
    timestamps = [comment.video_timestamp_sec for comment in ordered]
    if any(later < earlier for earlier, later in zip(timestamps, timestamps[1:])):
        ordered.sort(key=DanmuComment.sort_key)
        timestamps = [comment.video_timestamp_sec for comment in ordered]

    low = bisect.bisect_left(timestamps, current_time_sec - window_seconds - _BOUNDARY_SLACK)
    high = bisect.bisect_right(timestamps, current_time_sec)
    return [
        comment
        for comment in ordered[low:high]
        if is_active_at(comment.video_timestamp_sec, current_time_sec, window_seconds)
    ]


@dataclass
class WindowUpdate:
    """
    advance() 한 번의 결과입니다.

    필드:
        current_time_sec: 평가한 재생 시각
        entered: 이번에 활성으로 바뀐 댓글 (정렬 순서)
        exited: 이번에 비활성으로 바뀐 댓글 (정렬 순서)
        active: 평가 후 활성 댓글 전체 (정렬 순서)
        recomputed: 전체 재계산 경로를 탔는지 여부
    """
    current_time_sec: float
    entered: list[DanmuComment] = field(default_factory=list)
    exited: list[DanmuComment] = field(default_factory=list)
    active: list[DanmuComment] = field(default_factory=list)
    recomputed: bool = False


class TemporalWindowFilter:
    """
    시간 정렬 인덱스를 유지하며 재생 시각 변화에 따른 활성 집합을 추적합니다.

    세션 하나가 소유하며 스레드 안전하지 않습니다 (세션 단위 단일 스레드 사용).
    """

    def __init__(self, window_seconds: float = DEFAULT_WINDOW_SECONDS) -> None:
        if window_seconds <= 0:
            raise ValueError(f"window_seconds는 0보다 커야 합니다: {window_seconds}")
        self._window = window_seconds
        # 정렬 키 목록과 같은 위치의 타임스탬프 목록 (이진 탐색용)
        self._keys: list[tuple[float, datetime, str]] = []
        self._timestamps: list[float] = []
        self._by_id: dict[str, DanmuComment] = {}
        self._active: dict[str, DanmuComment] = {}
        # 직전 평가 시각에 이미 윈도우 안이었지만 아직 진입 처리되지 않은 댓글
        self._pending: dict[str, DanmuComment] = {}
        self._last_time: Optional[float] = None

    # =========================================================================
    # 공개 인터페이스
    # =========================================================================

    @property
    def window_seconds(self) -> float:
        return self._window

    @property
    def last_time(self) -> Optional[float]:
        return self._last_time

    def __len__(self) -> int:
        return len(self._by_id)

    def __contains__(self, comment_id: object) -> bool:
        return comment_id in self._by_id

    def is_active(self, comment_id: str) -> bool:
        return comment_id in self._active

    def active(self) -> list[DanmuComment]:
        return self._sorted(self._active.values())

    def insert(self, comment: DanmuComment) -> bool:
        """
        댓글을 인덱스에 추가합니다. 같은 id가 이미 있으면 무시합니다.

        직전 평가 시각 기준으로 이미 윈도우 안인 댓글은 다음 advance()에서 진입하고,
        이미 윈도우가 끝난 댓글은 진입하지 않습니다.

        반환값:
            bool: 새로 추가되었으면 True
        """
        if comment.id in self._by_id:
            return False

        key = comment.sort_key()
        index = bisect.bisect_left(self._keys, key)
        self._keys.insert(index, key)
        self._timestamps.insert(index, comment.video_timestamp_sec)
        self._by_id[comment.id] = comment

        if self._last_time is not None and comment.is_active_at(self._last_time, self._window):
            self._pending[comment.id] = comment
        return True

    def extend(self, comments: Iterable[DanmuComment]) -> int:
        """여러 댓글을 추가하고 새로 추가된 수를 반환합니다."""
        return sum(1 for comment in comments if self.insert(comment))

    def remove(self, comment_id: str) -> bool:
        """
        댓글을 인덱스와 활성 집합에서 즉시 제거합니다.

        반환값:
            bool: 제거 직전에 활성 상태였으면 True
        """
        comment = self._by_id.pop(comment_id, None)
        if comment is None:
            return False

        key = comment.sort_key()
        index = bisect.bisect_left(self._keys, key)
        if index < len(self._keys) and self._keys[index] == key:
            del self._keys[index]
            del self._timestamps[index]

        self._pending.pop(comment_id, None)
        return self._active.pop(comment_id, None) is not None

    def advance(self, current_time_sec: float) -> WindowUpdate:
        """
        재생 시각을 갱신하고 진입/이탈 댓글을 한 번에 계산합니다.

        직전 시각보다 뒤로 가거나 윈도우 길이보다 크게 앞으로 가면 전체 재계산하고,
        그 외에는 (직전 시각, 현재 시각] 구간에 시작하는 댓글만 확인합니다.
        """
        previous = self._last_time
        recompute = (
            previous is None
            or current_time_sec < previous
            or current_time_sec - previous > self._window
        )

        if recompute:
            new_active = {comment.id: comment for comment in self._scan_window(current_time_sec)}
        else:
            new_active = {
                comment_id: comment
                for comment_id, comment in self._active.items()
                if comment.is_active_at(current_time_sec, self._window)
            }
            low = bisect.bisect_right(self._timestamps, previous)
            high = bisect.bisect_right(self._timestamps, current_time_sec)
            for key in self._keys[low:high]:
                comment = self._by_id[key[2]]
                if comment.is_active_at(current_time_sec, self._window):
                    new_active[comment.id] = comment
            for comment in self._pending.values():
                if comment.is_active_at(current_time_sec, self._window):
                    new_active[comment.id] = comment

        entered = [comment for comment_id, comment in new_active.items() if comment_id not in self._active]
        exited = [comment for comment_id, comment in self._active.items() if comment_id not in new_active]

        self._active = new_active
        self._pending.clear()
        self._last_time = current_time_sec

        if recompute and previous is not None:
            logger.debug(
                f"활성 집합 재계산: {previous:.3f}s -> {current_time_sec:.3f}s, "
                f"active={len(new_active)}, entered={len(entered)}, exited={len(exited)}"
            )

        return WindowUpdate(
            current_time_sec=current_time_sec,
            entered=self._sorted(entered),
            exited=self._sorted(exited),
            active=self._sorted(new_active.values()),
            recomputed=recompute,
        )

    def active_at(self, current_time_sec: float) -> list[DanmuComment]:
        """상태를 바꾸지 않고 특정 시각의 활성 댓글을 조회합니다."""
        return self._scan_window(current_time_sec)

    def reset(self) -> None:
        """평가 상태(활성 집합, 직전 시각)를 비웁니다. 인덱스는 유지합니다."""
        self._active.clear()
        self._pending.clear()
        self._last_time = None

    def clear(self) -> None:
        """인덱스까지 모두 비웁니다."""
        self.reset()
        self._keys.clear()
        self._timestamps.clear()
        self._by_id.clear()

    # =========================================================================
    # 내부 메서드
    # =========================================================================

    def _scan_window(self, current_time_sec: float) -> list[DanmuComment]:
        low = bisect.bisect_left(self._timestamps, current_time_sec - self._window - _BOUNDARY_SLACK)
        high = bisect.bisect_right(self._timestamps, current_time_sec)
        result = []
        for key in self._keys[low:high]:
            comment = self._by_id[key[2]]
            if comment.is_active_at(current_time_sec, self._window):
                result.append(comment)
        return result

    @staticmethod
    def _sorted(comments: Iterable[DanmuComment]) -> list[DanmuComment]:
        return sorted(comments, key=DanmuComment.sort_key)
