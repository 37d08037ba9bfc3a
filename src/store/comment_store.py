"""
댓글 저장소 어댑터 모듈입니다.

역할:
- 쓰기 경계에서 댓글 입력 검증 (텍스트 길이, 타임스탬프, 움직임/크기 등급, 속도, 색상)
- 서버 id와 단조 증가하는 created_at 부여
- 영상 단위 조회 (정렬: 타임스탬프 → created_at → id, 커서 이후 증분 조회 지원)
- 숨김/삭제 모더레이션 및 변경 리스너 통보 (실시간 전달 채널 연동)
- 영상별 통계 집계 (분당 밀도, 상위 5개 구간, 색상 분포)

사용 예시:
    >>> store = CommentStore(InMemoryDocumentStore(), config)
    >>> comment = store.create(NewDanmuComment("v1", "hi", 10.0), Actor("u1"))
    >>> store.list_for_video("v1")
"""

from __future__ import annotations

import logging
import math
import re
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional, TypeVar

from src.config.schema import AppConfig
from src.danmu import (
    MOTION_CLASSES,
    SIZE_CLASSES,
    STATUS_ACTIVE,
    STATUS_DELETED,
    STATUS_HIDDEN,
    Actor,
    DanmuComment,
    NewDanmuComment,
    Video,
    format_timestamp,
)
from src.danmu.errors import (
    AuthRequired,
    DanmuError,
    Forbidden,
    NotFound,
    TransientStoreError,
    ValidationError,
)
from src.metrics.metrics_store import MetricsStore
from src.store.document_store import DANMU_COLLECTION, VIDEOS_COLLECTION, DocumentStore

logger = logging.getLogger(__name__)

# 변경 리스너 타입: (이벤트 종류 "created" | "removed", 댓글) -> None
CommentListener = Callable[[str, DanmuComment], None]

EVENT_CREATED = "created"
EVENT_REMOVED = "removed"

DEFAULT_HIDE_REASON = "Content violation"

_HEX_COLOR_PATTERN = re.compile(r"^#[0-9A-Fa-f]{6}$")
_CREATED_AT_STEP = timedelta(microseconds=1)

T = TypeVar("T")


@dataclass
class DanmuStats:
    """
    영상별 댓글 통계입니다.

    필드:
        video_id: 영상 ID
        total_danmu: 활성 댓글 수
        unique_users: 작성자 수
        average_per_minute: 분당 평균 댓글 수 (영상 길이 기준)
        density_map: 분 → 댓글 수
        peak_moments: 댓글이 많은 상위 5개 분
        color_distribution: 색상 → 댓글 수
    """
    video_id: str
    total_danmu: int
    unique_users: int
    average_per_minute: float
    density_map: dict[int, int] = field(default_factory=dict)
    peak_moments: list[dict[str, int]] = field(default_factory=list)
    color_distribution: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "videoId": self.video_id,
            "totalDanmu": self.total_danmu,
            "uniqueUsers": self.unique_users,
            "averageDanmuPerMinute": self.average_per_minute,
            "densityMap": {str(minute): count for minute, count in self.density_map.items()},
            "peakMoments": list(self.peak_moments),
            "colorDistribution": dict(self.color_distribution),
        }


def retry_read(
    read_fn: Callable[[], T],
    attempts: int = 3,
    backoff_sec: float = 0.2,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    읽기 호출을 TransientStoreError에 대해서만 exponential backoff로 재시도합니다.

    쓰기에는 사용하지 않습니다 (중복 댓글 위험).

    파라미터:
        read_fn: 인자 없는 읽기 함수
        attempts: 최대 시도 횟수 (1 이상)
        backoff_sec: 첫 재시도 대기 시간. 이후 2배씩 증가
        sleep: 대기 함수 (테스트에서 교체)

    에러:
        TransientStoreError: 모든 시도가 실패한 경우 마지막 에러
    """
    attempts = max(1, attempts)
    attempt = 0
    while True:
        try:
            return read_fn()
        except TransientStoreError as store_error:
            attempt += 1
            if attempt >= attempts:
                logger.error(f"읽기 재시도 소진: attempts={attempts}, error={store_error}")
                raise
            wait_sec = backoff_sec * (2 ** (attempt - 1))
            logger.warning(
                f"읽기 실패, {wait_sec:.2f}초 후 재시도 ({attempt}/{attempts}): {store_error}"
            )
            sleep(wait_sec)


class CommentStore:
    """
    문서 저장소 위에서 danmu 댓글 규칙을 적용하는 어댑터입니다.

    쓰기는 재시도하지 않으며 저장소 장애는 TransientStoreError로 그대로 전파합니다.
    변경 리스너는 쓰기를 수행한 스레드에서 동기적으로 호출됩니다.
    """

    def __init__(
        self,
        document_store: DocumentStore,
        config: AppConfig,
        metrics_store: Optional[MetricsStore] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._documents = document_store
        self._danmu_config = config.danmu
        self._moderator_ids = frozenset(config.store.moderator_ids)
        self._metrics = metrics_store
        self._clock = clock
        self._listeners: list[CommentListener] = []
        self._lock = threading.RLock()
        # 쓰기와 리스너 통보를 한 단위로 직렬화
        self._publish_lock = threading.RLock()
        self._last_created_at: Optional[datetime] = None

    @property
    def window_seconds(self) -> float:
        return self._danmu_config.window_seconds

    # =========================================================================
    # 영상
    # =========================================================================

    def register_video(self, video: Video) -> None:
        """영상 문서를 등록합니다. 개발용 시드 및 테스트에서 사용합니다."""
        self._documents.set(VIDEOS_COLLECTION, video.video_id, video.to_dict())
        logger.info(f"영상 등록: video_id={video.video_id}, duration={video.duration_sec}")

    def get_video(self, video_id: str) -> Video:
        document = self._documents.get(VIDEOS_COLLECTION, video_id)
        if document is None:
            raise NotFound("Video", video_id)
        return Video.from_dict(document)

    # =========================================================================
    # 쓰기 경로
    # =========================================================================

    def create(self, new_comment: NewDanmuComment, actor: Optional[Actor]) -> DanmuComment:
        """
        댓글을 검증하고 저장합니다.

        파라미터:
            new_comment: 검증 전 입력
            actor: 인증된 작성자. None이면 AuthRequired

        반환값:
            DanmuComment: id와 created_at이 부여된 저장 레코드

        에러:
            AuthRequired: 미인증 요청
            ValidationError: 입력 제약 위반
            NotFound: 영상이 존재하지 않음
            TransientStoreError: 저장소 장애 (재시도하지 않음)
        """
        # created_at 부여부터 통보까지 한 단위로 처리
        with self._publish_lock:
            try:
                comment = self._create(new_comment, actor)
            except DanmuError as write_error:
                if self._metrics is not None:
                    self._metrics.record_rejected(write_error.code)
                raise

            if self._metrics is not None:
                self._metrics.record_created()
            logger.info(
                f"댓글 생성: id={comment.id}, video_id={comment.video_id}, "
                f"ts={comment.video_timestamp_sec}, position={comment.motion_class}"
            )
            self._notify(EVENT_CREATED, comment)
        return comment

    def hide(self, comment_id: str, actor: Optional[Actor], reason: Optional[str] = None) -> DanmuComment:
        """
        댓글을 숨깁니다. 작성자 또는 모더레이터만 가능하며 멱등적입니다.

        이미 숨겨진 댓글에 대한 호출은 에러 없이 현재 상태를 반환하고,
        리스너 통보는 최초 전이 시에만 발생합니다.

        에러:
            AuthRequired: 미인증 요청
            NotFound: 댓글이 없거나 삭제됨
            Forbidden: 작성자도 모더레이터도 아님
        """
        if actor is None:
            raise AuthRequired()

        comment = self._load_comment(comment_id)
        if comment.status == STATUS_DELETED:
            raise NotFound("Danmu", comment_id)
        if comment.author_id != actor.uid and not self._is_moderator(actor):
            logger.warning(f"숨김 권한 없음: id={comment_id}, actor={actor.uid}")
            raise Forbidden("Only the author or a moderator can hide this danmu")

        if comment.status == STATUS_HIDDEN:
            logger.debug(f"이미 숨겨진 댓글: id={comment_id}")
            return comment

        hidden_reason = reason or DEFAULT_HIDE_REASON
        with self._publish_lock:
            self._documents.update(
                DANMU_COLLECTION,
                comment_id,
                {
                    "status": STATUS_HIDDEN,
                    "hiddenReason": hidden_reason,
                    "hiddenBy": actor.uid,
                    "hiddenAt": format_timestamp(self._clock()),
                },
            )
            hidden = comment.with_status(STATUS_HIDDEN, hidden_reason)
            if self._metrics is not None:
                self._metrics.record_hidden()
            logger.info(f"댓글 숨김: id={comment_id}, actor={actor.uid}, reason={hidden_reason}")
            self._notify(EVENT_REMOVED, hidden)
        return hidden

    def delete(self, comment_id: str, actor: Optional[Actor]) -> DanmuComment:
        """
        댓글을 소프트 삭제합니다. 작성자 또는 모더레이터만 가능합니다.

        삭제된 댓글은 모든 읽기와 현재 구독자 화면에서 즉시 제거됩니다.
        """
        if actor is None:
            raise AuthRequired()

        comment = self._load_comment(comment_id)
        if comment.author_id != actor.uid and not self._is_moderator(actor):
            logger.warning(f"삭제 권한 없음: id={comment_id}, actor={actor.uid}")
            raise Forbidden("Only the author or a moderator can delete this danmu")

        if comment.status == STATUS_DELETED:
            return comment

        with self._publish_lock:
            self._documents.update(
                DANMU_COLLECTION,
                comment_id,
                {"status": STATUS_DELETED, "deletedBy": actor.uid, "deletedAt": format_timestamp(self._clock())},
            )
            deleted = comment.with_status(STATUS_DELETED, comment.hidden_reason)
            if self._metrics is not None:
                self._metrics.record_deleted()
            logger.info(f"댓글 삭제: id={comment_id}, actor={actor.uid}")
            # 숨김 상태였다면 구독자에게서 이미 제거됨
            if comment.status == STATUS_ACTIVE:
                self._notify(EVENT_REMOVED, deleted)
        return deleted

    # =========================================================================
    # 읽기 경로
    # =========================================================================

    def get(self, comment_id: str) -> DanmuComment:
        """상태와 무관하게 댓글 하나를 조회합니다."""
        return self._load_comment(comment_id)

    def list_for_video(
        self,
        video_id: str,
        since_created_at: Optional[datetime] = None,
    ) -> list[DanmuComment]:
        """
        영상의 활성 댓글 전체를 정렬하여 반환합니다.

        파라미터:
            video_id: 영상 ID
            since_created_at: 지정하면 이 시각보다 나중에 생성된 댓글만 반환 (제외 커서)

        반환값:
            list[DanmuComment]: (타임스탬프, created_at, id) 오름차순

        에러:
            NotFound: 영상이 존재하지 않음
        """
        self.get_video(video_id)
        comments = self._query_active(video_id)
        if since_created_at is not None:
            comments = [comment for comment in comments if comment.created_at > since_created_at]
        comments.sort(key=DanmuComment.sort_key)
        return comments

    def list_window(
        self,
        video_id: str,
        timestamp: Optional[float] = None,
        duration: float = 10.0,
    ) -> list[DanmuComment]:
        """
        재생 위치 주변 구간의 댓글을 반환합니다.

        timestamp가 None이면 전체 목록을, 아니면 [timestamp - duration/2, timestamp + duration/2]
        구간의 댓글을 반환합니다.
        """
        comments = self.list_for_video(video_id)
        if timestamp is None:
            return comments
        if duration <= 0:
            raise ValidationError("Duration must be positive", field="duration")
        half = duration / 2
        low, high = timestamp - half, timestamp + half
        return [comment for comment in comments if low <= comment.video_timestamp_sec <= high]

    def stats(self, video_id: str) -> DanmuStats:
        """
        영상의 활성 댓글 통계를 집계합니다.

        분당 밀도 버킷 수는 ceil(영상 길이 / 60)이며,
        영상 길이를 모르면 가장 늦은 댓글 위치까지 버킷을 만듭니다.
        """
        video = self.get_video(video_id)
        comments = self._query_active(video_id)

        duration = video.duration_sec
        if duration > 0:
            bucket_count = math.ceil(duration / 60)
        elif comments:
            bucket_count = int(max(c.video_timestamp_sec for c in comments) // 60) + 1
        else:
            bucket_count = 0

        density_map = {minute: 0 for minute in range(bucket_count)}
        color_distribution: dict[str, int] = {}
        for comment in comments:
            minute = int(comment.video_timestamp_sec // 60)
            if minute in density_map:
                density_map[minute] += 1
            color_distribution[comment.color] = color_distribution.get(comment.color, 0) + 1

        # 동률이면 앞선 분이 먼저 (안정 정렬)
        peaks = sorted(density_map.items(), key=lambda item: -item[1])[:5]

        return DanmuStats(
            video_id=video_id,
            total_danmu=len(comments),
            unique_users=len({comment.author_id for comment in comments}),
            average_per_minute=len(comments) / (duration / 60) if duration > 0 else 0.0,
            density_map=density_map,
            peak_moments=[{"minute": minute, "count": count} for minute, count in peaks],
            color_distribution=color_distribution,
        )

    # =========================================================================
    # 변경 리스너
    # =========================================================================

    def add_listener(self, listener: CommentListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def remove_listener(self, listener: CommentListener) -> None:
        with self._lock:
            try:
                self._listeners.remove(listener)
            except ValueError:
                logger.debug("제거할 리스너를 찾을 수 없습니다")

    # =========================================================================
    # 내부 메서드
    # =========================================================================

    def _create(self, new_comment: NewDanmuComment, actor: Optional[Actor]) -> DanmuComment:
        if actor is None:
            raise AuthRequired()

        text = self._validate_text(new_comment.text)
        timestamp = self._validate_timestamp(new_comment.video_timestamp_sec)
        if new_comment.motion_class not in MOTION_CLASSES:
            raise ValidationError(
                f"Position must be one of {', '.join(MOTION_CLASSES)}", field="position"
            )
        if new_comment.size_class not in SIZE_CLASSES:
            raise ValidationError(f"Size must be one of {', '.join(SIZE_CLASSES)}", field="size")
        speed = self._validate_speed(new_comment.speed_multiplier)
        color = self._normalize_color(new_comment.color)

        video = self.get_video(new_comment.video_id)
        if (
            self._danmu_config.enforce_video_duration
            and video.duration_sec > 0
            and timestamp > video.duration_sec
        ):
            raise ValidationError("Timestamp exceeds video duration", field="timestamp")

        comment = DanmuComment(
            id=str(uuid.uuid4()),
            video_id=new_comment.video_id,
            author_id=actor.uid,
            text=text,
            video_timestamp_sec=timestamp,
            motion_class=new_comment.motion_class,
            color=color,
            size_class=new_comment.size_class,
            speed_multiplier=speed,
            created_at=self._next_created_at(),
        )
        self._documents.set(DANMU_COLLECTION, comment.id, comment.to_dict())
        return comment

    def _validate_text(self, text: Any) -> str:
        if not isinstance(text, str):
            raise ValidationError("Text is required", field="text")
        stripped = text.strip()
        low, high = self._danmu_config.text_min_length, self._danmu_config.text_max_length
        if not low <= len(stripped) <= high:
            raise ValidationError(f"Text must be {low}-{high} characters", field="text")
        return stripped

    def _validate_timestamp(self, value: Any) -> float:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValidationError("Timestamp must be a number", field="timestamp")
        if not math.isfinite(value) or value < 0:
            raise ValidationError("Timestamp must be a non-negative number", field="timestamp")
        return float(value)

    def _validate_speed(self, value: Any) -> float:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValidationError("Speed must be a number", field="speed")
        if not math.isfinite(value) or value <= 0:
            raise ValidationError("Speed must be a positive number", field="speed")
        return float(value)

    def _normalize_color(self, color: Any) -> str:
        if isinstance(color, str) and _HEX_COLOR_PATTERN.match(color):
            return color.upper()
        logger.warning(f"유효하지 않은 색상, 기본값으로 대체: color={color!r}")
        return self._danmu_config.default_color

    def _next_created_at(self) -> datetime:
        """저장소 전체에서 엄격하게 증가하는 생성 시각을 만듭니다."""
        with self._lock:
            now = self._clock()
            if self._last_created_at is not None and now <= self._last_created_at:
                now = self._last_created_at + _CREATED_AT_STEP
            self._last_created_at = now
            return now

    def _load_comment(self, comment_id: str) -> DanmuComment:
        document = self._documents.get(DANMU_COLLECTION, comment_id)
        if document is None:
            raise NotFound("Danmu", comment_id)
        return DanmuComment.from_dict(document)

    def _query_active(self, video_id: str) -> list[DanmuComment]:
        documents = self._documents.query(
            DANMU_COLLECTION, {"videoId": video_id, "status": STATUS_ACTIVE}
        )
        return [DanmuComment.from_dict(document) for document in documents]

    def _is_moderator(self, actor: Actor) -> bool:
        return actor.is_moderator or actor.uid in self._moderator_ids

    def _notify(self, kind: str, comment: DanmuComment) -> None:
        """
        등록된 리스너에게 변경을 통보합니다.

        개별 리스너 에러는 기록만 하고 다른 리스너 통보와 쓰기 결과에 영향을 주지 않습니다.
        """
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(kind, comment)
            except Exception as listener_error:
                logger.error(
                    f"리스너 통보 중 에러: kind={kind}, id={comment.id}, error={listener_error}",
                    exc_info=True,
                )
