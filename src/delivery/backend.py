"""
실시간 전달 백엔드 모듈입니다.

역할:
- 영상 단위 구독 스트림을 여는 백엔드 계약(RealtimeBackend) 정의
- CommentStore 변경 이벤트를 영상별 구독자 버퍼로 fan-out 하는 인프로세스 구현
- 다른 스레드에서 발생한 쓰기 이벤트를 loop.call_soon_threadsafe로 이벤트 루프에 전달
- 구독자 버퍼가 넘치면 해당 스트림을 끊고(SubscriptionDropped) 구독자가 catch-up으로 복구

사용 예시:
    >>> backend = InProcessRealtimeBackend(comment_store, config)
    >>> stream = await backend.open("v1")
    >>> event = await stream.get()
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import threading
from abc import ABC, abstractmethod
from collections import deque
from datetime import datetime
from typing import Optional

from src.config.schema import AppConfig
from src.danmu import DanmuComment
from src.danmu.errors import SubscriptionDropped
from src.delivery import EVENT_CREATED, EVENT_REMOVED, DeliveryEvent
from src.metrics.metrics_store import MetricsStore
from src.store.comment_store import CommentStore

logger = logging.getLogger(__name__)

# 영상별로 보관하는 제거 이벤트 수 (catch-up용)
_REMOVAL_LOG_SIZE = 1024


class BackendStream(ABC):
    """백엔드가 연 영상 하나의 라이브 이벤트 스트림입니다."""

    video_id: str

    @abstractmethod
    async def get(self) -> Optional[DeliveryEvent]:
        """
        다음 이벤트를 기다립니다.

        반환값:
            Optional[DeliveryEvent]: 이벤트. 스트림이 정상 종료되면 None

        에러:
            SubscriptionDropped: 연결이 끊긴 경우 (버퍼에 남은 이벤트를 모두 꺼낸 뒤)
        """

    @abstractmethod
    def close(self) -> None:
        """스트림을 닫습니다. 여러 번 호출해도 안전해야 합니다."""

    @property
    @abstractmethod
    def last_sequence(self) -> int:
        """이 스트림이 받은 마지막 이벤트 번호."""


class RealtimeBackend(ABC):
    """
    실시간 전달 플랫폼 계약입니다.

    채널은 시간 필터링을 하지 않으며, 영상의 숨겨지지 않은 댓글을
    생성 순서와 일치하는 순서로 최소 한 번 전달하는 것만 보장합니다.
    """

    @abstractmethod
    async def open(self, video_id: str) -> BackendStream:
        """영상의 라이브 스트림을 엽니다."""

    @abstractmethod
    async def snapshot(self, video_id: str) -> list[DanmuComment]:
        """영상의 숨겨지지 않은 댓글 전체를 반환합니다."""

    @abstractmethod
    async def catch_up(
        self,
        video_id: str,
        since_created_at: Optional[datetime],
        after_sequence: int = 0,
    ) -> list[DeliveryEvent]:
        """
        커서 이후 생성된 댓글과 after_sequence 이후 제거된 댓글을 이벤트로 반환합니다.
        """

    async def close(self) -> None:
        """백엔드 자원을 해제합니다."""


class _BufferedStream(BackendStream):
    """크기가 제한된 버퍼를 가진 인프로세스 스트림입니다. 이벤트 루프 스레드에서만 접근합니다."""

    def __init__(
        self,
        backend: "InProcessRealtimeBackend",
        video_id: str,
        loop: asyncio.AbstractEventLoop,
        max_size: int,
    ) -> None:
        self.video_id = video_id
        self.loop = loop
        self._backend = backend
        self._max_size = max_size
        self._buffer: deque[DeliveryEvent] = deque()
        self._wakeup = asyncio.Event()
        self._dropped = False
        self._closed = False
        self._last_sequence = 0

    @property
    def last_sequence(self) -> int:
        return self._last_sequence

    @property
    def dropped(self) -> bool:
        return self._dropped

    @property
    def closed(self) -> bool:
        return self._closed

    async def get(self) -> Optional[DeliveryEvent]:
        while True:
            if self._buffer:
                return self._buffer.popleft()
            if self._dropped:
                raise SubscriptionDropped(f"Realtime stream dropped for video {self.video_id}")
            if self._closed:
                return None
            self._wakeup.clear()
            await self._wakeup.wait()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._backend._detach(self)
        self._wakeup.set()

    def drop(self) -> None:
        """연결 끊김을 흉내 냅니다. 버퍼에 남은 이벤트는 계속 꺼낼 수 있습니다."""
        if self._dropped or self._closed:
            return
        self._dropped = True
        self._backend._detach(self)
        self._wakeup.set()

    def deliver(self, event: DeliveryEvent) -> None:
        if self._closed or self._dropped:
            return
        if len(self._buffer) >= self._max_size:
            logger.warning(
                f"구독자 버퍼 초과, 스트림 끊김: video_id={self.video_id}, size={self._max_size}"
            )
            self._backend._record_drop()
            self.drop()
            return
        self._buffer.append(event)
        self._last_sequence = event.sequence
        self._wakeup.set()


class InProcessRealtimeBackend(RealtimeBackend):
    """
    CommentStore 리스너로 동작하는 인프로세스 fan-out 백엔드입니다.

    쓰기는 어느 스레드에서든 발생할 수 있으므로 스트림 목록은 락으로 보호하고,
    이벤트 전달은 각 스트림의 이벤트 루프로 넘겨서 처리합니다.
    """

    def __init__(
        self,
        store: CommentStore,
        config: AppConfig,
        metrics_store: Optional[MetricsStore] = None,
    ) -> None:
        self._store = store
        self._queue_size = config.delivery.subscriber_queue_size
        self._metrics = metrics_store
        self._lock = threading.Lock()
        self._streams: dict[str, set[_BufferedStream]] = {}
        self._removals: dict[str, deque[DeliveryEvent]] = {}
        self._sequence = itertools.count(1)
        self._closed = False
        store.add_listener(self._on_store_event)

    # =========================================================================
    # 공개 인터페이스
    # =========================================================================

    async def open(self, video_id: str) -> BackendStream:
        loop = asyncio.get_running_loop()
        stream = _BufferedStream(self, video_id, loop, self._queue_size)
        with self._lock:
            if self._closed:
                raise SubscriptionDropped("Realtime backend is closed")
            self._streams.setdefault(video_id, set()).add(stream)
            count = len(self._streams[video_id])
        logger.info(f"실시간 스트림 열림: video_id={video_id}, streams={count}")
        return stream

    async def snapshot(self, video_id: str) -> list[DanmuComment]:
        return await asyncio.to_thread(self._store.list_for_video, video_id)

    async def catch_up(
        self,
        video_id: str,
        since_created_at: Optional[datetime],
        after_sequence: int = 0,
    ) -> list[DeliveryEvent]:
        created = await asyncio.to_thread(self._store.list_for_video, video_id, since_created_at)
        created.sort(key=lambda comment: (comment.created_at, comment.id))
        events = [DeliveryEvent(EVENT_CREATED, comment) for comment in created]
        with self._lock:
            removals = [
                event for event in self._removals.get(video_id, ()) if event.sequence > after_sequence
            ]
        events.extend(removals)
        logger.info(
            f"catch-up 조회: video_id={video_id}, created={len(created)}, removed={len(removals)}"
        )
        return events

    def stream_count(self, video_id: Optional[str] = None) -> int:
        with self._lock:
            if video_id is not None:
                return len(self._streams.get(video_id, ()))
            return sum(len(streams) for streams in self._streams.values())

    def drop_all(self, video_id: Optional[str] = None) -> int:
        """열린 스트림을 끊습니다 (네트워크 단절 상황 재현용). 이벤트 루프 스레드에서 호출합니다."""
        with self._lock:
            if video_id is None:
                streams = [stream for group in self._streams.values() for stream in group]
            else:
                streams = list(self._streams.get(video_id, ()))
        for stream in streams:
            stream.drop()
        return len(streams)

    async def close(self) -> None:
        self._store.remove_listener(self._on_store_event)
        with self._lock:
            self._closed = True
            streams = [stream for group in self._streams.values() for stream in group]
        for stream in streams:
            stream.close()
        logger.info(f"실시간 백엔드 종료: closed_streams={len(streams)}")

    # =========================================================================
    # 내부 메서드
    # =========================================================================

    def _on_store_event(self, kind: str, comment: DanmuComment) -> None:
        """CommentStore 변경 리스너. 쓰기를 수행한 스레드에서 호출됩니다."""
        with self._lock:
            event = DeliveryEvent(kind, comment, next(self._sequence))
            if kind == EVENT_REMOVED:
                log = self._removals.setdefault(comment.video_id, deque(maxlen=_REMOVAL_LOG_SIZE))
                log.append(event)
            streams = list(self._streams.get(comment.video_id, ()))

        for stream in streams:
            try:
                stream.loop.call_soon_threadsafe(stream.deliver, event)
            except RuntimeError:
                # 이벤트 루프가 이미 닫힌 스트림
                logger.debug(f"닫힌 루프의 스트림 제거: video_id={comment.video_id}")
                self._detach(stream)

    def _detach(self, stream: _BufferedStream) -> None:
        with self._lock:
            streams = self._streams.get(stream.video_id)
            if streams is None:
                return
            streams.discard(stream)
            if not streams:
                del self._streams[stream.video_id]

    def _record_drop(self) -> None:
        if self._metrics is not None:
            self._metrics.record_subscription_dropped()
