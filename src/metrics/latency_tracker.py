"""
전달 지연시간 추적 모듈입니다.

역할:
- 댓글 생성 시각(created_at)부터 구독자에게 전달된 시각까지의 지연을 기록
- 초기 스냅샷 조회 소요 시간을 기록
- 슬라이딩 윈도우 기반 P95/P99 통계 계산 (numpy)
- 계산된 통계를 MetricsStore에 반영

사용 예시:
    >>> tracker = DeliveryLatencyTracker(config, metrics_store)
    >>> tracker.record_delivery(comment.created_at)
    >>> stats = tracker.compute_stats()
"""

from __future__ import annotations

import logging
import threading
import time
from collections import defaultdict, deque
from datetime import datetime
from typing import Callable, Optional

import numpy as np

from src.config.schema import AppConfig
from src.metrics import LatencyStats
from src.metrics.metrics_store import MetricsStore

logger = logging.getLogger(__name__)


class DeliveryLatencyTracker:
    """
    전달 경로의 지연시간을 추적하고 통계를 계산하는 클래스입니다.

    측정 단계:
    1. create_to_deliver: 서버 생성 시각 → 구독자 큐에서 꺼낸 시각
    2. snapshot_fetch: 초기 스냅샷 조회 소요 시간

    통계 계산:
    - 설정된 latency_window_sec 이내의 측정값만 사용
    - numpy.percentile로 P95/P99 계산
    """

    STAGE_CREATE_TO_DELIVER = "create_to_deliver"
    STAGE_SNAPSHOT_FETCH = "snapshot_fetch"

    # 단계별 보관 최대 샘플 수
    _MAX_SAMPLES = 10_000

    def __init__(
        self,
        config: AppConfig,
        metrics_store: Optional[MetricsStore] = None,
        clock_ns: Callable[[], int] = time.time_ns,
    ) -> None:
        self._window_sec = config.metrics.latency_window_sec
        self._metrics_store = metrics_store
        self._clock_ns = clock_ns
        self._lock = threading.RLock()
        # stage → deque[(측정 시각 ns, 지연 ms)]
        self._measurements: dict[str, deque[tuple[int, float]]] = defaultdict(
            lambda: deque(maxlen=self._MAX_SAMPLES)
        )

        logger.info(f"DeliveryLatencyTracker 초기화: window={self._window_sec}초")

    # =========================================================================
    # 기록 메서드
    # =========================================================================

    def record_delivery(self, created_at: datetime, delivered_at_ns: Optional[int] = None) -> float:
        """
        생성 → 전달 지연을 기록합니다.

        파라미터:
            created_at: 댓글의 서버 생성 시각 (timezone-aware)
            delivered_at_ns: 전달 시각 (epoch ns). None이면 현재 시각

        반환값:
            float: 기록된 지연 (ms). 시계 차이로 음수가 나오면 0으로 보정
        """
        now_ns = delivered_at_ns if delivered_at_ns is not None else self._clock_ns()
        created_ns = int(created_at.timestamp() * 1_000_000_000)
        latency_ms = max(0.0, (now_ns - created_ns) / 1_000_000)
        self._add_measurement(self.STAGE_CREATE_TO_DELIVER, now_ns, latency_ms)
        return latency_ms

    def record_snapshot_fetch(self, duration_ms: float) -> None:
        """초기 스냅샷 조회 소요 시간을 기록합니다."""
        self._add_measurement(self.STAGE_SNAPSHOT_FETCH, self._clock_ns(), duration_ms)

    # =========================================================================
    # 통계 계산
    # =========================================================================

    def compute_stats(self, window_sec: Optional[int] = None) -> dict[str, LatencyStats]:
        """
        슬라이딩 윈도우 내 지연시간 통계를 계산하고 MetricsStore에 반영합니다.

        파라미터:
            window_sec: 윈도우 크기 (초). None이면 config 기본값 사용

        반환값:
            dict[str, LatencyStats]: 단계별 통계 (샘플이 없는 단계는 제외)
        """
        window = window_sec or self._window_sec
        cutoff_ns = self._clock_ns() - int(window * 1_000_000_000)

        stats: dict[str, LatencyStats] = {}
        with self._lock:
            for stage, measurements in self._measurements.items():
                recent = [ms for ts, ms in measurements if ts >= cutoff_ns]
                if not recent:
                    continue

                arr = np.array(recent, dtype=np.float64)
                stats[stage] = LatencyStats(
                    stage=stage,
                    count=len(arr),
                    mean_ms=float(np.mean(arr)),
                    min_ms=float(np.min(arr)),
                    max_ms=float(np.max(arr)),
                    p95_ms=float(np.percentile(arr, 95)),
                    p99_ms=float(np.percentile(arr, 99)),
                )

        if self._metrics_store is not None:
            for stage, stage_stats in stats.items():
                self._metrics_store.update_latency_stats(stage, stage_stats)

        if stats:
            logger.debug(
                f"전달 지연 통계 ({window}초 윈도우): "
                + ", ".join(
                    f"{s}=avg{v.mean_ms:.0f}ms/P95={v.p95_ms:.0f}ms"
                    for s, v in stats.items()
                )
            )
        return stats

    def sample_count(self, stage: str) -> int:
        with self._lock:
            return len(self._measurements.get(stage, ()))

    # =========================================================================
    # 내부 헬퍼
    # =========================================================================

    def _add_measurement(self, stage: str, timestamp_ns: int, latency_ms: float) -> None:
        """측정값을 버퍼에 추가하고, 윈도우 2배보다 오래된 데이터를 정리합니다."""
        cutoff_ns = timestamp_ns - int(self._window_sec * 2 * 1_000_000_000)
        with self._lock:
            bucket = self._measurements[stage]
            bucket.append((timestamp_ns, latency_ms))
            while bucket and bucket[0][0] < cutoff_ns:
                bucket.popleft()
