"""
화면 레인(줄) 배치 모듈입니다.

역할:
- 뷰포트 높이로 사용 가능한 줄 수(max_lines) 계산
- 움직임 등급별 구역 배정 (top: 위 1/3, scroll: 가운데 1/3, bottom: 아래 1/3)
- 구역 안 첫 빈 줄 → 전체 범위 첫 빈 줄 → 구역 안 랜덤 줄(겹침 허용) 순서로 배치
- 세션 단위 시드 난수로 랜덤 배치를 재현 가능하게 유지

사용 예시:
    >>> allocator = LaneAllocator(viewport_height=720, line_height=30, padding=8, seed=7)
    >>> assignment = allocator.allocate("c1", "top")
    >>> allocator.release("c1")
"""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from typing import Optional

from src.config.schema import LayoutConfig
from src.danmu import MOTION_CLASSES

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LaneAssignment:
    """
    배치 결과입니다.

    필드:
        comment_id: 댓글 ID
        line: 배정된 줄 번호 (0부터)
        degraded: 빈 줄이 없어 겹침을 허용하고 랜덤 배치했는지 여부
    """
    comment_id: str
    line: int
    degraded: bool = False


class LaneAllocator:
    """
    동시에 활성인 댓글들이 같은 줄을 쓰지 않도록 줄 번호를 배정합니다.

    빈 줄이 남아 있는 한 배정은 결정적이며, 먼저 들어온 댓글이 더 낮은 줄을 차지합니다.
    모든 줄이 차 있을 때만 겹침을 허용하는 랜덤 배치로 넘어갑니다.
    """

    def __init__(
        self,
        viewport_height: float,
        line_height: float = 30.0,
        padding: float = 8.0,
        seed: Optional[int] = None,
    ) -> None:
        if line_height <= 0:
            raise ValueError(f"line_height는 0보다 커야 합니다: {line_height}")
        self._line_height = line_height
        self._padding = padding
        self._random = random.Random(seed)
        self._line_of: dict[str, int] = {}
        self._occupants: dict[int, set[str]] = {}
        self._max_lines = self._compute_max_lines(viewport_height)

    @classmethod
    def from_config(cls, layout: LayoutConfig) -> "LaneAllocator":
        return cls(
            viewport_height=layout.viewport_height,
            line_height=layout.line_height,
            padding=layout.padding,
            seed=layout.random_seed,
        )

    @property
    def max_lines(self) -> int:
        return self._max_lines

    def zone(self, motion_class: str) -> range:
        """움직임 등급의 후보 줄 범위를 반환합니다 (정수 나눗셈 경계)."""
        lines = self._max_lines
        if motion_class == "top":
            return range(0, lines // 3)
        if motion_class == "bottom":
            return range(2 * lines // 3, lines)
        if motion_class == "scroll":
            return range(lines // 3, 2 * lines // 3)
        raise ValueError(f"알 수 없는 움직임 등급: {motion_class} (허용: {MOTION_CLASSES})")

    def allocate(self, comment_id: str, motion_class: str) -> LaneAssignment:
        """
        댓글에 줄을 배정합니다. 이미 배정된 id는 기존 줄을 그대로 반환합니다.

        처리 순서:
        1. 구역 안에서 오름차순으로 첫 빈 줄
        2. 전체 [0, max_lines) 범위에서 첫 빈 줄
        3. 구역 안 랜덤 줄 (구역이 비어 있으면 전체 범위), degraded=True
        """
        existing = self._line_of.get(comment_id)
        if existing is not None:
            return LaneAssignment(comment_id, existing)

        zone = self.zone(motion_class)
        line = self._first_free(zone)
        if line is None:
            line = self._first_free(range(self._max_lines))

        degraded = line is None
        if line is None:
            candidates = zone if len(zone) > 0 else range(self._max_lines)
            line = candidates[self._random.randrange(len(candidates))]
            logger.warning(
                f"빈 줄 없음, 겹침 배치: id={comment_id}, position={motion_class}, "
                f"line={line}, occupied={len(self._line_of)}"
            )

        self._line_of[comment_id] = line
        self._occupants.setdefault(line, set()).add(comment_id)
        return LaneAssignment(comment_id, line, degraded)

    def release(self, comment_id: str) -> Optional[int]:
        """배정을 해제하고 해제된 줄 번호를 반환합니다. 배정이 없으면 None."""
        line = self._line_of.pop(comment_id, None)
        if line is None:
            return None
        occupants = self._occupants.get(line)
        if occupants is not None:
            occupants.discard(comment_id)
            if not occupants:
                del self._occupants[line]
        return line

    def release_all(self) -> int:
        """모든 배정을 해제하고 해제한 수를 반환합니다."""
        released = len(self._line_of)
        self._line_of.clear()
        self._occupants.clear()
        return released

    def line_of(self, comment_id: str) -> Optional[int]:
        return self._line_of.get(comment_id)

    def occupancy(self) -> dict[int, int]:
        """줄 번호 → 점유 댓글 수."""
        return {line: len(ids) for line, ids in sorted(self._occupants.items())}

    def is_free(self, line: int) -> bool:
        return line not in self._occupants

    def line_top(self, line: int) -> float:
        """줄의 화면 상단 y 좌표 (px)."""
        return line * self._line_height + self._padding

    def resize(self, viewport_height: float) -> int:
        """
        뷰포트 높이 변경에 맞춰 max_lines를 다시 계산합니다.

        기존 배정은 유지되며, 새 범위 밖에 남은 배정은 해제될 때까지 그대로 둡니다.
        """
        previous = self._max_lines
        self._max_lines = self._compute_max_lines(viewport_height)
        if previous != self._max_lines:
            logger.info(f"줄 수 재계산: {previous} -> {self._max_lines} (height={viewport_height})")
        return self._max_lines

    def __len__(self) -> int:
        return len(self._line_of)

    # =========================================================================
    # 내부 메서드
    # =========================================================================

    def _compute_max_lines(self, viewport_height: float) -> int:
        usable = viewport_height - 2 * self._padding
        return max(1, int(usable // self._line_height))

    def _first_free(self, lines: range) -> Optional[int]:
        for line in lines:
            if line not in self._occupants:
                return line
        return None
