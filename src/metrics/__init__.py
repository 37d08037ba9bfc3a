"""
메트릭 모듈 패키지

공통 데이터 타입:
- LatencyStats: 전달 지연 통계 컨테이너
- DanmuCounters: 쓰기/모더레이션/전달/배치 카운터 스냅샷
"""

from dataclasses import asdict, dataclass, field


@dataclass
class LatencyStats:
    """
    단계별 지연시간 통계입니다.

    필드:
        stage: 측정 단계 이름
        count: 측정 샘플 수
        mean_ms: 평균 지연시간 (밀리초)
        min_ms: 최소 지연시간 (밀리초)
        max_ms: 최대 지연시간 (밀리초)
        p95_ms: 95th percentile 지연시간 (밀리초)
        p99_ms: 99th percentile 지연시간 (밀리초)
    """
    stage: str
    count: int
    mean_ms: float
    min_ms: float
    max_ms: float
    p95_ms: float
    p99_ms: float

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class DanmuCounters:
    """
    엔진 전체 누적 카운터입니다.

    필드:
        comments_created: 생성 성공 수
        comments_rejected: 쓰기 거부 수 (에러 코드별 합계)
        comments_hidden: 숨김 전이 수
        comments_deleted: 삭제 전이 수
        deliveries: 구독자에게 전달된 이벤트 수
        active_subscriptions: 현재 열린 구독 수
        subscriptions_dropped: 큐 초과 등으로 끊긴 구독 수
        reconnects: 구독 재연결 성공 수
        lane_allocations: 레인 배치 수
        degraded_allocations: 빈 레인이 없어 랜덤 배치된 수
        rejected_by_code: 에러 코드별 거부 수
    """
    comments_created: int = 0
    comments_rejected: int = 0
    comments_hidden: int = 0
    comments_deleted: int = 0
    deliveries: int = 0
    active_subscriptions: int = 0
    subscriptions_dropped: int = 0
    reconnects: int = 0
    lane_allocations: int = 0
    degraded_allocations: int = 0
    rejected_by_code: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return asdict(self)
