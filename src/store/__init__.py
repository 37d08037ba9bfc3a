"""
댓글 저장소 패키지

외부 문서 저장소 계약(DocumentStore)과 그 위의 danmu 규칙 어댑터(CommentStore)를 제공합니다.
"""

from src.store.comment_store import (
    EVENT_CREATED,
    EVENT_REMOVED,
    CommentStore,
    DanmuStats,
    retry_read,
)
from src.store.document_store import DocumentStore, InMemoryDocumentStore

__all__ = [
    "EVENT_CREATED",
    "EVENT_REMOVED",
    "CommentStore",
    "DanmuStats",
    "DocumentStore",
    "InMemoryDocumentStore",
    "retry_read",
]
