"""
쓰기 경로 rate limit 모듈입니다.

역할:
- 사용자(인증 전이면 클라이언트 IP)별 슬라이딩 윈도우 요청 수 제한
- 한도 초과 시 다음 요청 가능 시각까지의 대기 시간을 담아 RateLimited 발생
- 윈도우 안 기록이 없는 키는 제거하여 키 수가 활성 클라이언트 수를 넘지 않도록 유지

사용 예시:
    >>> limiter = RateLimiter(window_sec=60, max_requests=30)
    >>> limiter.check("user:u1")
"""

from __future__ import annotations

import threading
import time
from collections import deque
from typing import Callable, Optional

from src.danmu.errors import RateLimited


class RateLimiter:
    """키별 요청 시각을 보관하는 thread-safe 슬라이딩 윈도우 limiter입니다."""

    def __init__(
        self,
        window_sec: float,
        max_requests: int,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._window = window_sec
        self._max = max_requests
        self._clock = clock
        self._lock = threading.Lock()
        self._hits: dict[str, deque[float]] = {}
        self._last_sweep: Optional[float] = None

    def check(self, key: str) -> None:
        """
        요청 하나를 기록합니다.

        에러:
            RateLimited: 윈도우 안 요청 수가 한도에 도달한 경우 (이 요청은 기록하지 않음)
        """
        now = self._clock()
        with self._lock:
            self._sweep(now)
            hits = self._prune(key, now)
            if hits is not None and len(hits) >= self._max:
                raise RateLimited(retry_after_sec=hits[0] + self._window - now)
            if hits is None:
                hits = self._hits[key] = deque()
            hits.append(now)

    def remaining(self, key: str) -> int:
        now = self._clock()
        with self._lock:
            hits = self._prune(key, now)
            return max(0, self._max - (len(hits) if hits is not None else 0))

    def tracked_keys(self) -> int:
        """기록을 보관 중인 키 수."""
        with self._lock:
            return len(self._hits)

    def update_limits(self, window_sec: float, max_requests: int) -> None:
        """핫스왑 시 한도를 바꿉니다. 기존 기록은 유지합니다."""
        with self._lock:
            self._window = window_sec
            self._max = max_requests

    def reset(self) -> None:
        with self._lock:
            self._hits.clear()
            self._last_sweep = None

    # =========================================================================
    # 내부 메서드 (호출 측에서 _lock 보유)
    # =========================================================================

    def _prune(self, key: str, now: float) -> Optional[deque[float]]:
        """윈도우를 벗어난 기록을 버리고, 남은 기록이 없으면 키를 제거합니다."""
        hits = self._hits.get(key)
        if hits is None:
            return None
        while hits and hits[0] <= now - self._window:
            hits.popleft()
        if not hits:
            del self._hits[key]
            return None
        return hits

    def _sweep(self, now: float) -> None:
        # 윈도우마다 한 번, 다시 요청하지 않는 키도 정리
        if self._last_sweep is not None and now - self._last_sweep < self._window:
            return
        self._last_sweep = now
        for key in list(self._hits):
            self._prune(key, now)
