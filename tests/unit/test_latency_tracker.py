"""
DeliveryLatencyTracker / MetricsStore 단위 테스트

검증 조건:
- mock 데이터 100개 투입 시 P95 계산 오차 1ms 이하
- 생성 → 전달 지연 계산 (시계 차이로 음수면 0으로 보정)
- 윈도우 밖 측정값은 통계에서 제외
- compute_stats() 결과가 MetricsStore에 반영
- MetricsStore 카운터 증감 및 스냅샷 사본 반환
"""

from __future__ import annotations

from datetime import datetime, timezone

import numpy as np
import pytest

from src.config.schema import AppConfig
from src.metrics import LatencyStats
from src.metrics.latency_tracker import DeliveryLatencyTracker
from src.metrics.metrics_store import MetricsStore

_BASE_NS = 1_700_000_000 * 1_000_000_000


class _FakeClock:
    def __init__(self, now_ns: int = _BASE_NS) -> None:
        self.now_ns = now_ns

    def __call__(self) -> int:
        return self.now_ns

    def advance_sec(self, seconds: float) -> None:
        self.now_ns += int(seconds * 1_000_000_000)


# =========================================================================
# 공통 픽스처
# =========================================================================

@pytest.fixture
def config():
    cfg = AppConfig()
    cfg.metrics.latency_window_sec = 60
    return cfg


@pytest.fixture
def clock():
    return _FakeClock()


@pytest.fixture
def metrics():
    return MetricsStore()


@pytest.fixture
def tracker(config, metrics, clock):
    return DeliveryLatencyTracker(config, metrics_store=metrics, clock_ns=clock)


def _created_ms_ago(clock: _FakeClock, latency_ms: float) -> datetime:
    return datetime.fromtimestamp((clock.now_ns / 1_000_000_000) - latency_ms / 1000, tz=timezone.utc)


# =========================================================================
# 기록 테스트
# =========================================================================

class TestRecord:
    def test_record_delivery_returns_latency(self, tracker, clock):
        latency = tracker.record_delivery(_created_ms_ago(clock, 250.0))
        assert latency == pytest.approx(250.0, abs=0.01)
        assert tracker.sample_count(DeliveryLatencyTracker.STAGE_CREATE_TO_DELIVER) == 1

    def test_negative_latency_clamped_to_zero(self, tracker, clock):
        future = _created_ms_ago(clock, -500.0)
        assert tracker.record_delivery(future) == 0.0

    def test_explicit_delivery_time(self, tracker, clock):
        created = _created_ms_ago(clock, 0.0)
        latency = tracker.record_delivery(created, delivered_at_ns=clock.now_ns + 40_000_000)
        assert latency == pytest.approx(40.0, abs=0.01)

    def test_snapshot_fetch_stage(self, tracker):
        tracker.record_snapshot_fetch(12.5)
        assert tracker.sample_count(DeliveryLatencyTracker.STAGE_SNAPSHOT_FETCH) == 1

    def test_old_samples_pruned_beyond_twice_window(self, tracker, clock):
        tracker.record_snapshot_fetch(1.0)
        clock.advance_sec(121)
        tracker.record_snapshot_fetch(2.0)
        assert tracker.sample_count(DeliveryLatencyTracker.STAGE_SNAPSHOT_FETCH) == 1


# =========================================================================
# P95 정확도 테스트 (핵심 검증 조건: 오차 1ms 이하)
# =========================================================================

class TestStats:
    def test_p95_accuracy_100_samples(self, tracker, clock):
        """1~100ms 균등 분포 100개 투입 시 P95 오차 1ms 이하."""
        latencies_ms = [float(i) for i in range(1, 101)]
        for latency in latencies_ms:
            tracker.record_delivery(_created_ms_ago(clock, latency))

        stats = tracker.compute_stats()[DeliveryLatencyTracker.STAGE_CREATE_TO_DELIVER]
        expected_p95 = float(np.percentile(latencies_ms, 95))
        assert abs(stats.p95_ms - expected_p95) <= 1.0
        assert stats.count == 100
        assert stats.min_ms == pytest.approx(1.0, abs=0.01)
        assert stats.max_ms == pytest.approx(100.0, abs=0.01)

    def test_empty_returns_empty(self, tracker):
        assert tracker.compute_stats() == {}

    def test_window_filters_old_samples(self, tracker, clock):
        tracker.record_snapshot_fetch(100.0)
        clock.advance_sec(90)
        tracker.record_snapshot_fetch(10.0)

        stats = tracker.compute_stats()[DeliveryLatencyTracker.STAGE_SNAPSHOT_FETCH]
        assert stats.count == 1
        assert stats.mean_ms == pytest.approx(10.0)

    def test_custom_window(self, tracker, clock):
        tracker.record_snapshot_fetch(100.0)
        clock.advance_sec(30)
        tracker.record_snapshot_fetch(10.0)
        assert tracker.compute_stats(window_sec=10)[DeliveryLatencyTracker.STAGE_SNAPSHOT_FETCH].count == 1
        assert tracker.compute_stats(window_sec=60)[DeliveryLatencyTracker.STAGE_SNAPSHOT_FETCH].count == 2

    def test_stats_pushed_to_metrics_store(self, tracker, metrics):
        tracker.record_snapshot_fetch(5.0)
        tracker.compute_stats()
        stored = metrics.get_latency_stats(DeliveryLatencyTracker.STAGE_SNAPSHOT_FETCH)
        assert isinstance(stored[DeliveryLatencyTracker.STAGE_SNAPSHOT_FETCH], LatencyStats)
        assert metrics.snapshot()["latency"][DeliveryLatencyTracker.STAGE_SNAPSHOT_FETCH]["count"] == 1


# =========================================================================
# MetricsStore 테스트
# =========================================================================

class TestMetricsStore:
    def test_write_counters(self, metrics):
        metrics.record_created()
        metrics.record_rejected("VALIDATION_ERROR")
        metrics.record_rejected("VALIDATION_ERROR")
        metrics.record_rejected("AUTH_REQUIRED")
        metrics.record_hidden()
        metrics.record_deleted()

        counters = metrics.get_counters()
        assert counters.comments_created == 1
        assert counters.comments_rejected == 3
        assert counters.rejected_by_code == {"VALIDATION_ERROR": 2, "AUTH_REQUIRED": 1}
        assert counters.comments_hidden == 1
        assert counters.comments_deleted == 1

    def test_subscription_gauge_never_negative(self, metrics):
        metrics.subscription_opened()
        metrics.subscription_closed()
        metrics.subscription_closed()
        assert metrics.get_counters().active_subscriptions == 0

    def test_allocation_counters(self, metrics):
        metrics.record_allocation(degraded=False)
        metrics.record_allocation(degraded=True)
        counters = metrics.get_counters()
        assert counters.lane_allocations == 2
        assert counters.degraded_allocations == 1

    def test_get_counters_returns_copy(self, metrics):
        counters = metrics.get_counters()
        counters.rejected_by_code["X"] = 99
        counters.deliveries = 42
        assert metrics.get_counters().rejected_by_code == {}
        assert metrics.get_counters().deliveries == 0

    def test_snapshot_keys(self, metrics):
        metrics.record_delivery(3)
        snapshot = metrics.snapshot()
        for key in ("ts", "uptime_sec", "counters", "latency"):
            assert key in snapshot
        assert snapshot["counters"]["deliveries"] == 3
        assert metrics.get_latency_stats("missing") == {}
