"""
공유 메트릭 저장소 모듈입니다.

역할:
- 저장소 어댑터, 전달 채널, 시청 세션, API가 함께 쓰는 thread-safe 카운터 저장소
- 쓰기 성공/거부, 모더레이션, 전달, 레인 배치 현황을 중앙 관리
- /api/metrics 엔드포인트가 스냅샷을 읽어 응답

사용 예시:
    >>> store = MetricsStore()
    >>> store.record_created()
    >>> store.get_counters().comments_created
    1
"""

from __future__ import annotations

import copy
import threading
import time
from typing import Optional

from src.metrics import DanmuCounters, LatencyStats


class MetricsStore:
    """
    danmu 엔진 메트릭을 중앙에서 관리하는 thread-safe 저장소입니다.

    모든 공개 메서드는 RLock으로 보호되며, 조회 메서드는 사본을 반환합니다.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._counters = DanmuCounters()
        # 지연시간 통계 (stage 이름 → LatencyStats)
        self._latency_stats: dict[str, LatencyStats] = {}
        self._started_at = time.time()

    # =========================================================================
    # 쓰기 경로
    # =========================================================================

    def record_created(self) -> None:
        with self._lock:
            self._counters.comments_created += 1

    def record_rejected(self, code: str) -> None:
        """쓰기 거부를 에러 코드별로 기록합니다."""
        with self._lock:
            self._counters.comments_rejected += 1
            by_code = self._counters.rejected_by_code
            by_code[code] = by_code.get(code, 0) + 1

    def record_hidden(self) -> None:
        with self._lock:
            self._counters.comments_hidden += 1

    def record_deleted(self) -> None:
        with self._lock:
            self._counters.comments_deleted += 1

    # =========================================================================
    # 전달 채널
    # =========================================================================

    def record_delivery(self, count: int = 1) -> None:
        with self._lock:
            self._counters.deliveries += count

    def subscription_opened(self) -> None:
        with self._lock:
            self._counters.active_subscriptions += 1

    def subscription_closed(self) -> None:
        with self._lock:
            self._counters.active_subscriptions = max(0, self._counters.active_subscriptions - 1)

    def record_subscription_dropped(self) -> None:
        with self._lock:
            self._counters.subscriptions_dropped += 1

    def record_reconnect(self) -> None:
        with self._lock:
            self._counters.reconnects += 1

    # =========================================================================
    # 레인 배치
    # =========================================================================

    def record_allocation(self, degraded: bool) -> None:
        with self._lock:
            self._counters.lane_allocations += 1
            if degraded:
                self._counters.degraded_allocations += 1

    # =========================================================================
    # 지연시간 통계
    # =========================================================================

    def update_latency_stats(self, stage: str, stats: LatencyStats) -> None:
        """특정 단계의 지연시간 통계를 업데이트합니다."""
        with self._lock:
            self._latency_stats[stage] = stats

    def get_latency_stats(self, stage: Optional[str] = None) -> dict[str, LatencyStats]:
        """지연시간 통계를 반환합니다. stage를 지정하면 해당 단계만 담아 반환합니다."""
        with self._lock:
            if stage is not None:
                stats = self._latency_stats.get(stage)
                return {stage: stats} if stats is not None else {}
            return dict(self._latency_stats)

    # =========================================================================
    # 스냅샷
    # =========================================================================

    def get_counters(self) -> DanmuCounters:
        """현재 카운터의 사본을 반환합니다."""
        with self._lock:
            return copy.deepcopy(self._counters)

    def snapshot(self) -> dict:
        """카운터, 지연 통계, 가동 시간을 하나의 딕셔너리로 반환합니다."""
        with self._lock:
            return {
                "ts": time.time(),
                "uptime_sec": time.time() - self._started_at,
                "counters": self._counters.to_dict(),
                "latency": {stage: stats.to_dict() for stage, stats in self._latency_stats.items()},
            }
