"""
댓글 애니메이션 계약 및 스케줄러 모듈입니다.

역할:
- 댓글별 애니메이션 명세 계산 (scroll: 선형 이동, top/bottom: 페이드 인/유지/페이드 아웃)
- scroll 표시 시간은 window_seconds / speed_multiplier, top/bottom은 window_seconds
- 크기 등급별 폰트 크기, 색상 파싱(실패 시 흰색), 화면 x 좌표 계산
- 영상 재생/일시정지에 맞춰 모든 애니메이션 타이머를 함께 멈추고 재개
- 세션 종료 시 대기 중인 완료 타이머를 모두 취소하여 종료 후 콜백이 실행되지 않도록 보장

사용 예시:
    >>> spec = AnimationSpec.for_comment(comment, config.render, window_seconds=8.0)
    >>> scheduler = AnimationScheduler(loop=asyncio.get_running_loop())
    >>> scheduler.spawn(comment.id, spec, on_complete=lambda cid: print(cid))
    >>> scheduler.pause_all()
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from dataclasses import dataclass
from typing import Callable, Optional

from src.config.schema import RenderConfig
from src.danmu import DEFAULT_WINDOW_SECONDS, DanmuComment

logger = logging.getLogger(__name__)

_HEX_COLOR_PATTERN = re.compile(r"^#?([0-9A-Fa-f]{6})$")
WHITE = (255, 255, 255)

# 텍스트 폭 추정: 글자당 폰트 크기 비율, 좌우 여백 (px)
_CHAR_WIDTH_RATIO = 0.6
_TEXT_HORIZONTAL_PADDING = 8.0
# 한 댓글이 차지할 수 있는 최대 폭 (뷰포트 폭 대비)
_MAX_TEXT_WIDTH_RATIO = 0.8

CompletionCallback = Callable[[str], None]


def parse_color(color: Optional[str]) -> tuple[int, int, int]:
    """#RRGGBB 문자열을 RGB 튜플로 변환합니다. 형식이 맞지 않으면 흰색을 반환합니다."""
    if not color:
        return WHITE
    match = _HEX_COLOR_PATTERN.match(color.strip())
    if match is None:
        return WHITE
    value = int(match.group(1), 16)
    return (value >> 16) & 0xFF, (value >> 8) & 0xFF, value & 0xFF


def estimate_text_width(text: str, font_size: float, viewport_width: Optional[float] = None) -> float:
    """글자 수와 폰트 크기로 텍스트 폭(px)을 추정합니다. 뷰포트 폭의 80%를 넘지 않습니다."""
    width = len(text) * font_size * _CHAR_WIDTH_RATIO + 2 * _TEXT_HORIZONTAL_PADDING
    if viewport_width is not None:
        width = min(width, viewport_width * _MAX_TEXT_WIDTH_RATIO)
    return width


@dataclass(frozen=True)
class AnimationSpec:
    """
    댓글 하나의 애니메이션 명세입니다.

    필드:
        comment_id: 댓글 ID
        motion_class: scroll | top | bottom
        duration_sec: 전체 표시 시간 (초)
        fade_in_ratio: 페이드 인 비율 (top/bottom)
        hold_ratio: 유지 비율 (top/bottom)
        fade_out_ratio: 페이드 아웃 비율 (top/bottom)
        font_size: 폰트 크기 (px)
        color_rgb: 표시 색상
        text_width: 추정 텍스트 폭 (px)
    """
    comment_id: str
    motion_class: str
    duration_sec: float
    fade_in_ratio: float = 0.1
    hold_ratio: float = 0.8
    fade_out_ratio: float = 0.1
    font_size: float = 14.0
    color_rgb: tuple[int, int, int] = WHITE
    text_width: float = 0.0

    @classmethod
    def for_comment(
        cls,
        comment: DanmuComment,
        render: RenderConfig,
        window_seconds: float = DEFAULT_WINDOW_SECONDS,
    ) -> "AnimationSpec":
        if comment.motion_class == "scroll":
            duration = window_seconds / comment.speed_multiplier
        else:
            duration = window_seconds
        font_size = getattr(render.font_sizes, comment.size_class, render.font_sizes.medium)
        return cls(
            comment_id=comment.id,
            motion_class=comment.motion_class,
            duration_sec=duration,
            fade_in_ratio=render.fade_in_ratio,
            hold_ratio=render.hold_ratio,
            fade_out_ratio=render.fade_out_ratio,
            font_size=font_size,
            color_rgb=parse_color(comment.color),
            text_width=estimate_text_width(comment.text, font_size),
        )

    @property
    def is_scroll(self) -> bool:
        return self.motion_class == "scroll"

    def is_finished(self, elapsed_sec: float) -> bool:
        return elapsed_sec >= self.duration_sec

    def scroll_progress_at(self, elapsed_sec: float) -> float:
        """scroll 진행률 (0.0 ~ 1.0). 고정 위치 댓글은 항상 0.0."""
        if not self.is_scroll or self.duration_sec <= 0:
            return 0.0
        return min(1.0, max(0.0, elapsed_sec / self.duration_sec))

    def opacity_at(self, elapsed_sec: float) -> float:
        """
        경과 시간에서의 불투명도를 반환합니다.

        scroll은 표시 중 1.0, top/bottom은 페이드 인 → 유지 → 페이드 아웃 구간을 선형 보간합니다.
        표시 시간 밖에서는 0.0입니다.
        """
        if elapsed_sec < 0 or elapsed_sec >= self.duration_sec:
            return 0.0
        if self.is_scroll:
            return 1.0

        ratio = elapsed_sec / self.duration_sec
        if self.fade_in_ratio > 0 and ratio < self.fade_in_ratio:
            return ratio / self.fade_in_ratio
        fade_out_start = self.fade_in_ratio + self.hold_ratio
        if self.fade_out_ratio > 0 and ratio >= fade_out_start:
            return max(0.0, (1.0 - ratio) / self.fade_out_ratio)
        return 1.0

    def x_position(self, elapsed_sec: float, viewport_width: float) -> float:
        """
        화면 x 좌표 (px)를 반환합니다.

        scroll은 오른쪽 끝에서 시작해 왼쪽 밖으로 나가고, top/bottom은 가운데 정렬입니다.
        """
        text_width = min(self.text_width, viewport_width * _MAX_TEXT_WIDTH_RATIO)
        if self.is_scroll:
            progress = self.scroll_progress_at(elapsed_sec)
            return viewport_width - progress * (viewport_width + text_width)
        return (viewport_width - text_width) / 2


class _ScheduledAnimation:
    """스케줄러 내부의 애니메이션 하나의 실행 상태입니다."""

    __slots__ = ("spec", "on_complete", "accumulated", "resumed_at", "handle")

    def __init__(self, spec: AnimationSpec, on_complete: Optional[CompletionCallback], accumulated: float) -> None:
        self.spec = spec
        self.on_complete = on_complete
        self.accumulated = accumulated
        self.resumed_at: Optional[float] = None
        self.handle: Optional[asyncio.TimerHandle] = None


class AnimationScheduler:
    """
    활성 댓글 애니메이션의 시계와 완료 타이머를 관리합니다.

    loop가 주어지면 완료 시점에 loop.call_later로 콜백을 예약하고,
    loop가 없으면 poll() 호출 시 완료된 애니메이션의 콜백을 실행합니다.
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ) -> None:
        self._clock = clock
        self._loop = loop
        self._animations: dict[str, _ScheduledAnimation] = {}
        self._paused = False
        self._closed = False

    # =========================================================================
    # 공개 인터페이스
    # =========================================================================

    @property
    def is_paused(self) -> bool:
        return self._paused

    def attach_loop(self, loop: Optional[asyncio.AbstractEventLoop]) -> None:
        """완료 타이머를 예약할 이벤트 루프를 지정하고 실행 중인 애니메이션을 다시 예약합니다."""
        for animation in self._animations.values():
            self._cancel_timer(animation)
        self._loop = loop
        if not self._paused:
            for instance_id, animation in self._animations.items():
                self._schedule_timer(instance_id, animation)

    def spawn(
        self,
        instance_id: str,
        spec: AnimationSpec,
        on_complete: Optional[CompletionCallback] = None,
        initial_elapsed: float = 0.0,
    ) -> bool:
        """
        애니메이션을 시작합니다. 같은 id가 이미 있으면 무시합니다.

        파라미터:
            instance_id: 애니메이션 ID (댓글 ID)
            spec: 애니메이션 명세
            on_complete: 표시 시간이 끝났을 때 호출할 콜백
            initial_elapsed: 이미 지난 것으로 간주할 시간 (seek 직후 중간부터 시작할 때)

        반환값:
            bool: 새로 시작했으면 True
        """
        if self._closed:
            logger.debug(f"종료된 스케줄러에 spawn 무시: id={instance_id}")
            return False
        if instance_id in self._animations:
            return False

        animation = _ScheduledAnimation(spec, on_complete, max(0.0, initial_elapsed))
        self._animations[instance_id] = animation
        if not self._paused:
            animation.resumed_at = self._clock()
            self._schedule_timer(instance_id, animation)
        return True

    def pause_all(self) -> None:
        """모든 애니메이션의 시계를 멈추고 완료 타이머를 취소합니다."""
        if self._paused:
            return
        now = self._clock()
        for animation in self._animations.values():
            if animation.resumed_at is not None:
                animation.accumulated += now - animation.resumed_at
                animation.resumed_at = None
            self._cancel_timer(animation)
        self._paused = True
        logger.debug(f"애니메이션 일시정지: count={len(self._animations)}")

    def resume_all(self) -> None:
        """멈춘 시계를 다시 시작하고 남은 시간만큼 완료 타이머를 예약합니다."""
        if not self._paused or self._closed:
            return
        now = self._clock()
        self._paused = False
        for instance_id, animation in self._animations.items():
            animation.resumed_at = now
            self._schedule_timer(instance_id, animation)
        logger.debug(f"애니메이션 재개: count={len(self._animations)}")

    def elapsed(self, instance_id: str) -> Optional[float]:
        """애니메이션 경과 시간 (초). 일시정지 구간은 포함하지 않습니다."""
        animation = self._animations.get(instance_id)
        if animation is None:
            return None
        return self._elapsed(animation)

    def set_elapsed(self, instance_id: str, elapsed_sec: float) -> bool:
        """
        실행 중인 애니메이션의 경과 시간을 다시 맞추고 완료 타이머를 재예약합니다.

        재생 위치가 불연속으로 바뀌었을 때 윈도우에 남아 있는 인스턴스를 새 위치에 맞추는 데 사용합니다.

        반환값:
            bool: 해당 애니메이션이 있으면 True
        """
        animation = self._animations.get(instance_id)
        if animation is None:
            return False
        self._cancel_timer(animation)
        animation.accumulated = max(0.0, elapsed_sec)
        if not self._paused:
            animation.resumed_at = self._clock()
            self._schedule_timer(instance_id, animation)
        return True

    def spec(self, instance_id: str) -> Optional[AnimationSpec]:
        animation = self._animations.get(instance_id)
        return animation.spec if animation is not None else None

    def cancel(self, instance_id: str) -> bool:
        """애니메이션 하나를 취소합니다. 완료 콜백은 호출되지 않습니다."""
        animation = self._animations.pop(instance_id, None)
        if animation is None:
            return False
        self._cancel_timer(animation)
        return True

    def cancel_all(self) -> int:
        """모든 애니메이션과 대기 중인 완료 타이머를 취소하고 취소한 수를 반환합니다."""
        count = len(self._animations)
        for animation in self._animations.values():
            self._cancel_timer(animation)
        self._animations.clear()
        return count

    def close(self) -> None:
        """모든 타이머를 취소하고 이후 spawn을 거부합니다."""
        cancelled = self.cancel_all()
        self._closed = True
        logger.debug(f"애니메이션 스케줄러 종료: cancelled={cancelled}")

    def poll(self) -> list[str]:
        """
        표시 시간이 끝난 애니메이션을 정리하고 완료 콜백을 실행합니다.

        반환값:
            list[str]: 완료 처리된 ID 목록
        """
        finished = [
            instance_id
            for instance_id, animation in self._animations.items()
            if animation.spec.is_finished(self._elapsed(animation))
        ]
        for instance_id in finished:
            self._complete(instance_id)
        return finished

    def pending_timers(self) -> int:
        """예약되어 있는 완료 타이머 수."""
        return sum(1 for animation in self._animations.values() if animation.handle is not None)

    def __contains__(self, instance_id: object) -> bool:
        return instance_id in self._animations

    def __len__(self) -> int:
        return len(self._animations)

    # =========================================================================
    # 내부 메서드
    # =========================================================================

    def _elapsed(self, animation: _ScheduledAnimation) -> float:
        if animation.resumed_at is None:
            return animation.accumulated
        return animation.accumulated + (self._clock() - animation.resumed_at)

    def _schedule_timer(self, instance_id: str, animation: _ScheduledAnimation) -> None:
        if self._loop is None:
            return
        remaining = max(0.0, animation.spec.duration_sec - self._elapsed(animation))
        animation.handle = self._loop.call_later(remaining, self._complete, instance_id)

    @staticmethod
    def _cancel_timer(animation: _ScheduledAnimation) -> None:
        if animation.handle is not None:
            animation.handle.cancel()
            animation.handle = None

    def _complete(self, instance_id: str) -> None:
        animation = self._animations.pop(instance_id, None)
        if animation is None:
            return
        self._cancel_timer(animation)
        if animation.on_complete is None:
            return
        try:
            animation.on_complete(instance_id)
        except Exception as callback_error:
            logger.error(f"애니메이션 완료 콜백 에러: id={instance_id}, error={callback_error}", exc_info=True)
