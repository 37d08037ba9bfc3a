"""
시청 세션 모듈입니다.

역할:
- 세션 하나가 소유하는 활성 필터, 레인 배치기, 애니메이션 스케줄러, 구독을 조합
- 재생 시각 tick마다 한 번의 일관된 처리: 윈도우 갱신 → 이탈 댓글 해제 → 진입 댓글 배치 → 애니메이션 시작
- 같은 댓글이 여러 번 들어와도 ActiveDisplayInstance는 하나만 유지
- 삭제/숨김 이벤트 수신 시 레인과 타이머를 즉시 해제
- 세션 종료 시 구독 해제, 대기 타이머 취소, 레인 전체 해제

사용 예시:
    >>> session = ViewingSession("v1", config, backend=backend)
    >>> await session.start()
    >>> session.tick(10.0)
    >>> [instance.line for instance in session.active_instances()]
    >>> await session.close()
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

from src.config.schema import AppConfig
from src.danmu import DanmuComment
from src.danmu.errors import SubscriptionDropped
from src.delivery import EVENT_CREATED, EVENT_REMOVED
from src.delivery.backend import RealtimeBackend
from src.delivery.subscription import DanmuSubscription
from src.layout.lane_allocator import LaneAllocator
from src.logging import log_context
from src.metrics.latency_tracker import DeliveryLatencyTracker
from src.metrics.metrics_store import MetricsStore
from src.render.animation import AnimationScheduler, AnimationSpec
from src.timeline.window_filter import TemporalWindowFilter, WindowUpdate

logger = logging.getLogger(__name__)


@dataclass
class ActiveDisplayInstance:
    """
    화면에 표시 중인 댓글 하나입니다. 세션만 소유하며 저장되지 않습니다.

    필드:
        comment: 원본 댓글
        line: 배정된 줄 번호
        start_time_sec: 활성으로 바뀐 재생 시각
        animation: 애니메이션 명세
        degraded: 겹침을 허용한 랜덤 배치 여부
    """
    comment: DanmuComment
    line: int
    start_time_sec: float
    animation: AnimationSpec
    degraded: bool = False

    @property
    def id(self) -> str:
        return self.comment.id

    @property
    def display_duration_sec(self) -> float:
        return self.animation.duration_sec


class ViewingSession:
    """
    영상 하나를 시청하는 세션의 오버레이 상태입니다.

    tick/seek/pause/resume은 동기 메서드이며 이벤트 루프 스레드에서 호출합니다.
    비동기 경계는 start()의 스냅샷 조회와 run()의 구독 이벤트 수신뿐입니다.
    """

    def __init__(
        self,
        video_id: str,
        config: AppConfig,
        backend: Optional[RealtimeBackend] = None,
        metrics_store: Optional[MetricsStore] = None,
        latency_tracker: Optional[DeliveryLatencyTracker] = None,
        clock: Callable[[], float] = time.monotonic,
        seed: Optional[int] = None,
    ) -> None:
        self._video_id = video_id
        self._config = config
        self._backend = backend
        self._metrics = metrics_store
        self._latency = latency_tracker
        self._window = config.danmu.window_seconds
        self._seek_threshold = config.render.seek_threshold_sec

        self._filter = TemporalWindowFilter(self._window)
        self._allocator = LaneAllocator(
            viewport_height=config.layout.viewport_height,
            line_height=config.layout.line_height,
            padding=config.layout.padding,
            seed=seed if seed is not None else config.layout.random_seed,
        )
        self._scheduler = AnimationScheduler(clock=clock)
        self._viewport_width = config.layout.viewport_width

        # 댓글 id → 표시 인스턴스
        self._instances: dict[str, ActiveDisplayInstance] = {}
        self._subscription: Optional[DanmuSubscription] = None
        self._current_time: Optional[float] = None
        self._closed = False

    # =========================================================================
    # 상태 조회
    # =========================================================================

    @property
    def video_id(self) -> str:
        return self._video_id

    @property
    def current_time(self) -> Optional[float]:
        return self._current_time

    @property
    def is_paused(self) -> bool:
        return self._scheduler.is_paused

    @property
    def is_closed(self) -> bool:
        return self._closed

    @property
    def allocator(self) -> LaneAllocator:
        return self._allocator

    @property
    def scheduler(self) -> AnimationScheduler:
        return self._scheduler

    @property
    def subscription(self) -> Optional[DanmuSubscription]:
        return self._subscription

    def active_instances(self) -> list[ActiveDisplayInstance]:
        """표시 중인 인스턴스를 줄 번호, 정렬 키 순서로 반환합니다."""
        return sorted(
            self._instances.values(),
            key=lambda instance: (instance.line, instance.comment.sort_key()),
        )

    def visible_ids(self) -> set[str]:
        return set(self._instances)

    def instance(self, comment_id: str) -> Optional[ActiveDisplayInstance]:
        return self._instances.get(comment_id)

    def known_count(self) -> int:
        """세션이 알고 있는 (인덱스에 들어간) 댓글 수."""
        return len(self._filter)

    # =========================================================================
    # 댓글 입력
    # =========================================================================

    def ingest(self, comment: DanmuComment) -> bool:
        """
        댓글을 세션 인덱스에 추가합니다. 같은 id는 한 번만 들어갑니다.

        숨김/삭제 상태의 레코드가 들어오면 제거로 처리합니다.
        화면 반영은 다음 tick()에서 이루어집니다.

        반환값:
            bool: 새로 추가되었으면 True
        """
        if self._closed:
            return False
        if comment.video_id != self._video_id:
            logger.warning(f"다른 영상의 댓글 무시: id={comment.id}, video_id={comment.video_id}")
            return False
        if comment.hidden:
            self.remove(comment.id)
            return False
        return self._filter.insert(comment)

    def remove(self, comment_id: str) -> bool:
        """
        댓글을 세션에서 즉시 제거하고 레인과 타이머를 해제합니다.

        반환값:
            bool: 화면에 표시 중이었으면 True
        """
        self._filter.remove(comment_id)
        instance = self._instances.pop(comment_id, None)
        if instance is None:
            return False
        self._release(instance)
        logger.info(f"표시 중인 댓글 제거: id={comment_id}, line={instance.line}")
        return True

    # =========================================================================
    # 재생 동기화
    # =========================================================================

    def tick(self, current_time_sec: float) -> WindowUpdate:
        """
        재생 시각을 반영합니다.

        처리 순서:
        1. 활성 윈도우 갱신 (진입/이탈을 한 번에 계산)
        2. 이탈한 댓글의 레인, 타이머 해제
        3. 진입한 댓글을 정렬 순서대로 레인 배치 후 애니메이션 시작

        직전 시각보다 뒤로 가거나 seek 임계값보다 크게 바뀌면 seek로 간주하며,
        이때도 같은 순서로 처리되어 윈도우 밖 인스턴스는 해제되고 새로 들어온 댓글이 배치됩니다.
        """
        if self._closed:
            raise RuntimeError("종료된 세션입니다")

        previous = self._current_time
        discontinuous = previous is not None and (
            current_time_sec < previous or current_time_sec - previous > self._seek_threshold
        )
        if discontinuous:
            logger.debug(f"재생 위치 불연속: {previous:.3f}s -> {current_time_sec:.3f}s")

        update = self._filter.advance(current_time_sec)
        self._current_time = current_time_sec

        for comment in update.exited:
            instance = self._instances.pop(comment.id, None)
            if instance is not None:
                self._release(instance)

        if discontinuous:
            # 윈도우에 남은 인스턴스도 새 위치 기준 경과 시간으로 맞춤
            for instance in self._instances.values():
                self._resync(instance, current_time_sec)

        for comment in update.entered:
            if comment.id in self._instances:
                continue
            self._spawn(comment, current_time_sec)

        self._scheduler.poll()
        return update

    def seek(self, current_time_sec: float) -> WindowUpdate:
        """재생 위치를 옮깁니다. 활성 집합을 새 위치 기준으로 다시 맞춥니다."""
        logger.info(f"seek: video_id={self._video_id}, {self._current_time} -> {current_time_sec}")
        return self.tick(current_time_sec)

    def pause(self) -> None:
        """영상 일시정지에 맞춰 모든 애니메이션 시계를 멈춥니다."""
        self._scheduler.pause_all()

    def resume(self) -> None:
        """영상 재생 재개에 맞춰 모든 애니메이션 시계를 다시 시작합니다."""
        self._scheduler.resume_all()

    def set_viewport(self, width: float, height: float) -> int:
        """뷰포트 크기를 바꾸고 새 max_lines를 반환합니다. 기존 배치는 유지됩니다."""
        self._viewport_width = width
        return self._allocator.resize(height)

    def frame(self) -> list[dict[str, Any]]:
        """
        현재 프레임에 그릴 댓글 목록을 반환합니다.

        반환값:
            list[dict]: id, text, line, x, y, opacity, fontSize, color
        """
        rendered = []
        for instance in self.active_instances():
            elapsed = self._scheduler.elapsed(instance.id)
            if elapsed is None:
                continue
            spec = instance.animation
            rendered.append(
                {
                    "id": instance.id,
                    "text": instance.comment.text,
                    "line": instance.line,
                    "x": spec.x_position(elapsed, self._viewport_width),
                    "y": self._allocator.line_top(instance.line),
                    "opacity": spec.opacity_at(elapsed),
                    "fontSize": spec.font_size,
                    "color": spec.color_rgb,
                }
            )
        return rendered

    # =========================================================================
    # 구독 수명 주기
    # =========================================================================

    async def start(self) -> int:
        """
        구독을 열고 초기 스냅샷을 세션에 넣습니다.

        반환값:
            int: 스냅샷에서 새로 추가된 댓글 수
        """
        if self._backend is None:
            raise RuntimeError("실시간 백엔드가 지정되지 않았습니다")
        if self._subscription is not None:
            raise RuntimeError("이미 시작된 세션입니다")

        self._scheduler.attach_loop(asyncio.get_running_loop())
        self._subscription = DanmuSubscription(
            self._backend,
            self._video_id,
            self._config,
            metrics_store=self._metrics,
            latency_tracker=self._latency,
        )
        with log_context(video_id=self._video_id):
            snapshot = await self._subscription.open()
            added = sum(1 for comment in snapshot if self.ingest(comment))
            logger.info(f"세션 시작: snapshot={len(snapshot)}, added={added}")
        self._refresh()
        return added

    async def run(self) -> None:
        """구독 이벤트를 받아 세션에 반영합니다. 구독이 닫히면 반환합니다."""
        if self._subscription is None:
            raise RuntimeError("start()를 먼저 호출하세요")

        with log_context(video_id=self._video_id):
            try:
                async for event in self._subscription:
                    if self._closed:
                        break
                    if event.kind == EVENT_CREATED:
                        if self.ingest(event.comment):
                            self._refresh()
                    elif event.kind == EVENT_REMOVED:
                        self.remove(event.comment.id)
            except SubscriptionDropped as dropped:
                logger.error(f"구독 복구 실패, 세션 이벤트 수신 중단: {dropped}")
                raise

    async def close(self) -> None:
        """
        세션을 종료합니다. 여러 번 호출해도 안전합니다.

        레인 해제와 타이머 취소는 구독 해제를 기다리기 전에 동기적으로 끝납니다.
        """
        if self._closed:
            return
        self._closed = True

        cancelled = len(self._scheduler)
        self._scheduler.close()
        released = self._allocator.release_all()
        self._instances.clear()
        self._filter.clear()

        if self._subscription is not None:
            await self._subscription.unsubscribe()
        logger.info(
            f"세션 종료: video_id={self._video_id}, released_lanes={released}, "
            f"cancelled_timers={cancelled}"
        )

    # =========================================================================
    # 내부 메서드
    # =========================================================================

    def _spawn(self, comment: DanmuComment, current_time_sec: float) -> None:
        assignment = self._allocator.allocate(comment.id, comment.motion_class)
        spec = AnimationSpec.for_comment(comment, self._config.render, self._window)
        instance = ActiveDisplayInstance(
            comment=comment,
            line=assignment.line,
            start_time_sec=current_time_sec,
            animation=spec,
            degraded=assignment.degraded,
        )
        self._instances[comment.id] = instance
        # seek 직후 윈도우 중간에 들어오면 그만큼 진행된 위치에서 시작
        self._scheduler.spawn(
            comment.id,
            spec,
            on_complete=self._on_animation_complete,
            initial_elapsed=current_time_sec - comment.video_timestamp_sec,
        )
        if self._metrics is not None:
            self._metrics.record_allocation(assignment.degraded)
        logger.debug(
            f"댓글 배치: id={comment.id}, line={assignment.line}, "
            f"position={comment.motion_class}, degraded={assignment.degraded}"
        )

    def _resync(self, instance: ActiveDisplayInstance, current_time_sec: float) -> None:
        elapsed = current_time_sec - instance.comment.video_timestamp_sec
        if not self._scheduler.set_elapsed(instance.id, elapsed):
            # 이미 끝난 애니메이션은 다시 시작
            self._scheduler.spawn(
                instance.id,
                instance.animation,
                on_complete=self._on_animation_complete,
                initial_elapsed=elapsed,
            )

    def _release(self, instance: ActiveDisplayInstance) -> None:
        self._allocator.release(instance.id)
        self._scheduler.cancel(instance.id)

    def _refresh(self) -> None:
        """마지막 재생 시각 기준으로 다시 평가하여 새로 들어온 댓글을 반영합니다."""
        if self._current_time is not None and not self._closed:
            self.tick(self._current_time)

    def _on_animation_complete(self, comment_id: str) -> None:
        # 애니메이션이 끝나도 레인은 윈도우가 끝날 때까지 유지
        logger.debug(f"애니메이션 완료: id={comment_id}")
