"""
외부 문서 저장소 인터페이스 모듈입니다.

역할:
- get/set/update/query 네 가지 호출만 사용하는 최소 문서 저장소 계약 정의
- 개발 및 테스트용 thread-safe 인메모리 구현 제공
- fail_next()로 일시적 장애(TransientStoreError)를 주입하여 재시도 경로 검증

사용 예시:
    >>> store = InMemoryDocumentStore()
    >>> store.set("videos", "v1", {"id": "v1", "duration": 120.0})
    >>> store.query("danmu", {"videoId": "v1", "status": "active"})
"""

from __future__ import annotations

import copy
import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, Optional

from src.danmu.errors import TransientStoreError

logger = logging.getLogger(__name__)

# 저장소 컬렉션 이름
VIDEOS_COLLECTION = "videos"
DANMU_COLLECTION = "danmu"


class DocumentStore(ABC):
    """
    외부 문서 저장소 계약입니다.

    구현체는 일시적 장애 시 TransientStoreError를 발생시켜야 하며,
    반환하는 문서는 호출자가 수정해도 저장소에 영향이 없어야 합니다.
    """

    @abstractmethod
    def get(self, collection: str, doc_id: str) -> Optional[dict[str, Any]]:
        """문서를 조회합니다. 없으면 None을 반환합니다."""

    @abstractmethod
    def set(self, collection: str, doc_id: str, data: dict[str, Any]) -> None:
        """문서를 생성하거나 덮어씁니다."""

    @abstractmethod
    def update(self, collection: str, doc_id: str, fields: dict[str, Any]) -> Optional[dict[str, Any]]:
        """문서의 일부 필드를 갱신하고 갱신된 문서를 반환합니다. 없으면 None을 반환합니다."""

    @abstractmethod
    def query(self, collection: str, filters: Optional[dict[str, Any]] = None) -> list[dict[str, Any]]:
        """모든 필터 값이 일치하는 문서 목록을 반환합니다. 순서는 보장하지 않습니다."""


class InMemoryDocumentStore(DocumentStore):
    """
    RLock으로 보호되는 인메모리 문서 저장소입니다.

    fail_next(n)을 호출하면 이후 n번의 호출이 TransientStoreError로 실패합니다.
    operations를 지정하면 해당 연산("get", "set", "update", "query")만 실패합니다.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._collections: dict[str, dict[str, dict[str, Any]]] = {}
        self._pending_failures = 0
        self._failing_operations: Optional[frozenset[str]] = None
        # 연산별 호출 횟수 (테스트 검증용)
        self.call_counts: dict[str, int] = {"get": 0, "set": 0, "update": 0, "query": 0}

    def fail_next(self, count: int = 1, operations: Optional[tuple[str, ...]] = None) -> None:
        """다음 count번의 호출을 일시적 장애로 만듭니다."""
        with self._lock:
            self._pending_failures = count
            self._failing_operations = frozenset(operations) if operations else None
        logger.debug(f"장애 주입: count={count}, operations={operations or 'all'}")

    def get(self, collection: str, doc_id: str) -> Optional[dict[str, Any]]:
        with self._lock:
            self._before_call("get")
            document = self._collections.get(collection, {}).get(doc_id)
            return copy.deepcopy(document) if document is not None else None

    def set(self, collection: str, doc_id: str, data: dict[str, Any]) -> None:
        with self._lock:
            self._before_call("set")
            self._collections.setdefault(collection, {})[doc_id] = copy.deepcopy(data)

    def update(self, collection: str, doc_id: str, fields: dict[str, Any]) -> Optional[dict[str, Any]]:
        with self._lock:
            self._before_call("update")
            document = self._collections.get(collection, {}).get(doc_id)
            if document is None:
                return None
            document.update(copy.deepcopy(fields))
            return copy.deepcopy(document)

    def query(self, collection: str, filters: Optional[dict[str, Any]] = None) -> list[dict[str, Any]]:
        with self._lock:
            self._before_call("query")
            filters = filters or {}
            return [
                copy.deepcopy(document)
                for document in self._collections.get(collection, {}).values()
                if all(document.get(key) == value for key, value in filters.items())
            ]

    def count(self, collection: str) -> int:
        with self._lock:
            return len(self._collections.get(collection, {}))

    # =========================================================================
    # 내부 메서드
    # =========================================================================

    def _before_call(self, operation: str) -> None:
        self.call_counts[operation] += 1
        if self._pending_failures <= 0:
            return
        if self._failing_operations is not None and operation not in self._failing_operations:
            return
        self._pending_failures -= 1
        logger.warning(f"문서 저장소 일시 장애 발생: operation={operation}")
        raise TransientStoreError(f"Document store unavailable during {operation}")
