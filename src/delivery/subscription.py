"""
영상 단위 댓글 구독 모듈입니다.

역할:
- 라이브 스트림을 먼저 열고 초기 스냅샷을 조회 (스냅샷과 스트림 사이 누락 방지)
- 이벤트를 생성 순서대로 비동기 반복자로 제공
- 스트림이 끊기면 exponential backoff로 재연결하고, 전체 재동기화 대신
  created_at 커서 이후 댓글만 catch-up으로 받아 이어서 전달
- unsubscribe()는 여러 번 호출해도 안전하며 세션 종료 시 자동 호출

사용 예시:
    >>> subscription = DanmuSubscription(backend, "v1", config)
    >>> snapshot = await subscription.open()
    >>> async for event in subscription:
    ...     print(event.kind, event.comment.id)
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from datetime import datetime
from typing import Awaitable, Callable, Optional, TypeVar

from src.config.schema import AppConfig
from src.danmu import DanmuComment
from src.danmu.errors import SubscriptionDropped, TransientStoreError
from src.delivery import EVENT_CREATED, DeliveryEvent
from src.delivery.backend import BackendStream, RealtimeBackend
from src.metrics.latency_tracker import DeliveryLatencyTracker
from src.metrics.metrics_store import MetricsStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


class DanmuSubscription:
    """
    영상 하나에 대한 구독입니다. 세션 하나가 소유합니다.

    전달 보장은 최소 한 번이며, 재연결 직후에는 중복 전달이 있을 수 있습니다.
    소비자는 댓글 id로 중복을 제거해야 합니다.
    """

    def __init__(
        self,
        backend: RealtimeBackend,
        video_id: str,
        config: AppConfig,
        metrics_store: Optional[MetricsStore] = None,
        latency_tracker: Optional[DeliveryLatencyTracker] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._backend = backend
        self._video_id = video_id
        self._delivery_cfg = config.delivery
        self._store_cfg = config.store
        self._metrics = metrics_store
        self._latency = latency_tracker
        self._sleep = sleep

        self._stream: Optional[BackendStream] = None
        self._backlog: deque[DeliveryEvent] = deque()
        self._cursor: Optional[datetime] = None
        self._opened = False
        self._closed = False
        self._reconnect_count = 0

    # =========================================================================
    # 공개 인터페이스
    # =========================================================================

    @property
    def video_id(self) -> str:
        return self._video_id

    @property
    def cursor(self) -> Optional[datetime]:
        """지금까지 본 댓글 중 가장 늦은 created_at."""
        return self._cursor

    @property
    def is_open(self) -> bool:
        return self._opened and not self._closed

    @property
    def reconnect_count(self) -> int:
        return self._reconnect_count

    async def open(self, since_created_at: Optional[datetime] = None) -> list[DanmuComment]:
        """
        라이브 스트림을 열고 초기 스냅샷을 반환합니다.

        파라미터:
            since_created_at: 지정하면 전체 스냅샷 대신 이 커서 이후 댓글만 반환

        반환값:
            list[DanmuComment]: 정렬된 스냅샷

        에러:
            NotFound: 영상이 존재하지 않음
            TransientStoreError: 스냅샷 조회 재시도 소진
        """
        if self._opened:
            raise RuntimeError("이미 열린 구독입니다")
        self._opened = True

        self._stream = await self._backend.open(self._video_id)
        started = time.perf_counter()
        try:
            if since_created_at is None:
                snapshot = await self._read_with_retry(lambda: self._backend.snapshot(self._video_id))
            else:
                self._cursor = since_created_at
                events = await self._read_with_retry(
                    lambda: self._backend.catch_up(self._video_id, since_created_at)
                )
                snapshot = sorted(
                    (event.comment for event in events if event.kind == EVENT_CREATED),
                    key=DanmuComment.sort_key,
                )
        except Exception:
            self._stream.close()
            self._closed = True
            raise

        if self._latency is not None:
            self._latency.record_snapshot_fetch((time.perf_counter() - started) * 1000)
        for comment in snapshot:
            self._advance_cursor(comment)
        if self._metrics is not None:
            self._metrics.subscription_opened()

        logger.info(f"구독 시작: video_id={self._video_id}, snapshot={len(snapshot)}")
        return snapshot

    def __aiter__(self) -> "DanmuSubscription":
        return self

    async def __anext__(self) -> DeliveryEvent:
        event = await self.next_event()
        if event is None:
            raise StopAsyncIteration
        return event

    async def next_event(self) -> Optional[DeliveryEvent]:
        """
        다음 이벤트를 기다립니다. 구독이 닫히면 None을 반환합니다.

        에러:
            SubscriptionDropped: 재연결 시도를 모두 소진한 경우
        """
        while not self._closed:
            if self._backlog:
                return self._accept(self._backlog.popleft())
            if self._stream is None:
                raise RuntimeError("open()을 먼저 호출하세요")
            try:
                event = await self._stream.get()
            except SubscriptionDropped as dropped:
                if self._closed:
                    return None
                logger.warning(f"구독 끊김 감지: video_id={self._video_id}, reason={dropped}")
                await self._reconnect_with_backoff()
                continue
            if event is None:
                return None
            return self._accept(event)
        return None

    async def unsubscribe(self) -> None:
        """구독을 해제합니다. 여러 번 호출해도 안전합니다."""
        if self._closed:
            return
        self._closed = True
        self._backlog.clear()
        if self._stream is not None:
            self._stream.close()
        if self._opened and self._metrics is not None:
            self._metrics.subscription_closed()
        logger.info(f"구독 해제: video_id={self._video_id}")

    async def __aenter__(self) -> "DanmuSubscription":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.unsubscribe()

    # =========================================================================
    # 내부 메서드
    # =========================================================================

    def _accept(self, event: DeliveryEvent) -> DeliveryEvent:
        if event.kind == EVENT_CREATED:
            self._advance_cursor(event.comment)
            if self._latency is not None:
                self._latency.record_delivery(event.comment.created_at)
        if self._metrics is not None:
            self._metrics.record_delivery()
        return event

    def _advance_cursor(self, comment: DanmuComment) -> None:
        if self._cursor is None or comment.created_at > self._cursor:
            self._cursor = comment.created_at

    async def _reconnect_with_backoff(self) -> None:
        """
        Exponential backoff를 적용하여 스트림을 다시 열고 커서 이후 이벤트를 catch-up 합니다.

        재연결 대기 시간: base_sec × 2^attempts (최대 max_sec)
        최대 max_reconnect_attempts회 시도 후 구독을 닫고 SubscriptionDropped를 발생시킵니다.
        """
        base_sec = self._delivery_cfg.reconnect_backoff_base_sec
        max_sec = self._delivery_cfg.reconnect_backoff_max_sec
        max_attempts = self._delivery_cfg.max_reconnect_attempts
        after_sequence = self._stream.last_sequence if self._stream is not None else 0

        for attempt in range(max_attempts):
            wait_sec = min(base_sec * (2 ** attempt), max_sec)
            logger.warning(
                f"구독 재연결 시도 {attempt + 1}/{max_attempts}: {wait_sec}초 대기 "
                f"(video_id={self._video_id})"
            )
            await self._sleep(wait_sec)
            if self._closed:
                return

            stream: Optional[BackendStream] = None
            try:
                stream = await self._backend.open(self._video_id)
                events = await self._backend.catch_up(self._video_id, self._cursor, after_sequence)
            except (SubscriptionDropped, TransientStoreError) as reconnect_error:
                if stream is not None:
                    stream.close()
                logger.error(f"재연결 시도 {attempt + 1} 실패: {reconnect_error}")
                continue

            if self._stream is not None:
                self._stream.close()
            self._stream = stream
            self._backlog.extend(events)
            self._reconnect_count += 1
            if self._metrics is not None:
                self._metrics.record_reconnect()
            logger.info(
                f"구독 재연결 성공: video_id={self._video_id}, attempt={attempt + 1}, "
                f"catch_up={len(events)}"
            )
            return

        logger.error(f"구독 재연결 {max_attempts}회 모두 실패: video_id={self._video_id}")
        await self.unsubscribe()
        raise SubscriptionDropped(f"Could not reconnect to video {self._video_id}")

    async def _read_with_retry(self, read_fn: Callable[[], Awaitable[T]]) -> T:
        """읽기 호출을 TransientStoreError에 대해서만 exponential backoff로 재시도합니다."""
        attempts = max(1, self._store_cfg.read_retry_attempts)
        backoff_sec = self._store_cfg.read_retry_backoff_sec
        attempt = 0
        while True:
            try:
                return await read_fn()
            except TransientStoreError as store_error:
                attempt += 1
                if attempt >= attempts:
                    logger.error(f"스냅샷 조회 재시도 소진: attempts={attempts}, error={store_error}")
                    raise
                wait_sec = backoff_sec * (2 ** (attempt - 1))
                logger.warning(f"스냅샷 조회 실패, {wait_sec:.2f}초 후 재시도: {store_error}")
                await self._sleep(wait_sec)
