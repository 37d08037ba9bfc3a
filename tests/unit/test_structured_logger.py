"""
구조화 로깅 단위 테스트

검증 조건:
- setup_logging() 이후 app.log에 session_id, level, module과 문맥 필드(video_id, comment_id)가 함께 기록
- text 포맷은 session_id 앞 8자 접두어와 "| key=value" 문맥 꼬리를 붙임
- uvicorn 로거는 자체 핸들러를 버리고 root 핸들러로 전달되어 같은 포맷으로 기록
- API 요청마다 request_id가 부여되어 요청 처리 중 남긴 로그(저장소, 에러 핸들러)에 포함
- 생성 요청은 video_id, 숨김/삭제 요청은 comment_id 문맥을 추가
- 시청 세션 시작 로그에 video_id 포함
- 문맥은 중첩 시 병합되고 블록/요청이 끝나면 복원
"""

from __future__ import annotations

import json
import logging
from io import StringIO

import pytest
from fastapi.testclient import TestClient

from src.api.server import DanmuApiServer
from src.config.schema import AppConfig, TokenEntryConfig
from src.danmu import Actor, NewDanmuComment, Video
from src.delivery.backend import InProcessRealtimeBackend
from src.logging.structured_logger import (
    StructuredLogger,
    _ContextFilter,
    _JsonFormatter,
    current_log_context,
    log_context,
    setup_logging,
)
from src.session.viewing_session import ViewingSession
from src.store.comment_store import CommentStore
from src.store.document_store import InMemoryDocumentStore

USER = {"Authorization": "Bearer user-token"}
_UVICORN_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access")


# =========================================================================
# 픽스처
# =========================================================================

@pytest.fixture(autouse=True)
def reset_root_logger():
    root = logging.getLogger()
    level = root.level
    yield
    for handler in root.handlers[:]:
        root.removeHandler(handler)
        handler.close()
    root.setLevel(level)


def _make_config(tmp_path, log_format: str = "json", session_id: str = "sess-1234-abcd") -> AppConfig:
    cfg = AppConfig()
    cfg.system.log_level = "DEBUG"
    cfg.system.log_format = log_format
    cfg.system.log_dir = str(tmp_path / "logs")
    cfg.system.session_id = session_id
    cfg.api.tokens = {"user-token": TokenEntryConfig(uid="user-1")}
    return cfg


def _last_line(tmp_path) -> str:
    lines = (tmp_path / "logs" / "app.log").read_text(encoding="utf-8").strip().splitlines()
    return lines[-1]


class _RecordCollector(logging.Handler):
    """문맥 필터를 거친 레코드를 모아 두는 테스트용 핸들러."""

    def __init__(self) -> None:
        super().__init__(level=logging.DEBUG)
        self.records: list[logging.LogRecord] = []
        self.addFilter(_ContextFilter())

    def emit(self, record: logging.LogRecord) -> None:
        self.records.append(record)

    def find(self, prefix: str) -> list[logging.LogRecord]:
        return [record for record in self.records if record.getMessage().startswith(prefix)]


@pytest.fixture
def collector():
    handler = _RecordCollector()
    package_logger = logging.getLogger("src")
    previous_level = package_logger.level
    package_logger.addHandler(handler)
    package_logger.setLevel(logging.DEBUG)
    yield handler
    package_logger.removeHandler(handler)
    package_logger.setLevel(previous_level)


# =========================================================================
# setup_logging 출력 테스트
# =========================================================================

class TestSetupLogging:
    def test_json_line_carries_session_and_context(self, tmp_path):
        setup_logging(_make_config(tmp_path))
        with log_context(video_id="v1", comment_id="c-42"):
            logging.getLogger("src.store.comment_store").info("댓글 생성")

        data = json.loads(_last_line(tmp_path))
        assert data["message"] == "댓글 생성"
        assert data["session_id"] == "sess-1234-abcd"
        assert data["module"] == "src.store.comment_store"
        assert data["level"] == "INFO"
        assert data["video_id"] == "v1"
        assert data["comment_id"] == "c-42"
        assert "context_keys" not in data

    def test_text_line_has_prefix_and_context_tail(self, tmp_path):
        setup_logging(_make_config(tmp_path, log_format="text"))
        with log_context(video_id="v1", comment_id="c-42"):
            logging.getLogger("src.layout.lane_allocator").warning("빈 줄 없음")

        line = _last_line(tmp_path)
        assert "[sess-123]" in line
        assert "WARNING" in line
        assert line.endswith("빈 줄 없음 | video_id=v1 comment_id=c-42")

    def test_session_id_generated_when_not_configured(self, tmp_path):
        session_id = setup_logging(_make_config(tmp_path, session_id=""))
        assert len(session_id) == 36
        assert StructuredLogger.get_session_id() == session_id

    def test_explicit_session_id_wins(self, tmp_path):
        assert setup_logging(_make_config(tmp_path), session_id="override") == "override"

    def test_reinitialising_replaces_handlers(self, tmp_path):
        config = _make_config(tmp_path)
        setup_logging(config)
        first = list(logging.getLogger().handlers)
        setup_logging(config)
        handlers = logging.getLogger().handlers
        assert len(handlers) == len(first)
        assert not set(map(id, handlers)) & set(map(id, first))

    def test_uvicorn_loggers_routed_through_root(self, tmp_path):
        access = logging.getLogger("uvicorn.access")
        stray = logging.StreamHandler(StringIO())
        access.addHandler(stray)
        access.propagate = False

        setup_logging(_make_config(tmp_path))
        for name in _UVICORN_LOGGERS:
            assert logging.getLogger(name).handlers == []
            assert logging.getLogger(name).propagate is True

        with log_context(request_id="abcd1234"):
            access.info("GET /videos/v1/danmu 200")

        data = json.loads(_last_line(tmp_path))
        assert data["module"] == "uvicorn.access"
        assert data["request_id"] == "abcd1234"
        assert data["session_id"] == "sess-1234-abcd"
        assert stray.stream.getvalue() == ""


# =========================================================================
# API 요청 문맥 테스트
# =========================================================================

class _ApiEnv:
    def __init__(self, tmp_path) -> None:
        self.config = _make_config(tmp_path)
        self.store = CommentStore(InMemoryDocumentStore(), self.config)
        self.store.register_video(Video("v1", duration_sec=600.0))
        self.backend = InProcessRealtimeBackend(self.store, self.config)
        self.client = TestClient(DanmuApiServer(self.config, self.store, self.backend).app)

    def post(self, text: str = "hello", headers=USER):
        return self.client.post("/videos/v1/danmu", json={"text": text, "timestamp": 1.0}, headers=headers)


class TestRequestContext:
    def test_store_log_inside_request_has_request_and_video_id(self, tmp_path, collector):
        env = _ApiEnv(tmp_path)
        assert env.post().status_code == 201

        [record] = collector.find("댓글 생성")
        assert len(record.request_id) == 8
        assert set(record.request_id) <= set("0123456789abcdef")
        assert record.video_id == "v1"

    def test_each_request_gets_its_own_request_id(self, tmp_path, collector):
        env = _ApiEnv(tmp_path)
        env.post("a")
        env.post("b")

        request_ids = {record.request_id for record in collector.find("댓글 생성")}
        assert len(request_ids) == 2

    def test_error_handler_log_has_request_id(self, tmp_path, collector):
        env = _ApiEnv(tmp_path)
        assert env.post(headers={}).status_code == 401

        [record] = collector.find("요청 실패")
        assert record.name == "src.api.server"
        assert len(record.request_id) == 8

    def test_hide_log_has_comment_id(self, tmp_path, collector):
        env = _ApiEnv(tmp_path)
        comment = env.store.create(NewDanmuComment("v1", "spam", 2.0), Actor("user-1"))

        response = env.client.post(f"/danmu/{comment.id}/hide", json={"reason": "spam"}, headers=USER)
        assert response.status_code == 200

        [record] = collector.find("댓글 숨김")
        assert record.comment_id == comment.id
        assert len(record.request_id) == 8

    def test_delete_log_has_comment_id(self, tmp_path, collector):
        env = _ApiEnv(tmp_path)
        comment = env.store.create(NewDanmuComment("v1", "bye", 2.0), Actor("user-1"))

        assert env.client.delete(f"/danmu/{comment.id}", headers=USER).status_code == 200
        [record] = collector.find("댓글 삭제")
        assert record.comment_id == comment.id

    def test_context_cleared_after_request(self, tmp_path):
        env = _ApiEnv(tmp_path)
        env.post()
        assert current_log_context() == {}


# =========================================================================
# 시청 세션 문맥 테스트
# =========================================================================

class TestSessionContext:
    @pytest.mark.asyncio
    async def test_session_start_log_has_video_id(self, tmp_path, collector):
        config = _make_config(tmp_path)
        store = CommentStore(InMemoryDocumentStore(), config)
        store.register_video(Video("v1", duration_sec=600.0))
        session = ViewingSession("v1", config, backend=InProcessRealtimeBackend(store, config))

        await session.start()
        await session.close()

        [record] = collector.find("세션 시작")
        assert record.video_id == "v1"
        assert "video_id" not in current_log_context()


# =========================================================================
# log_context 동작 테스트
# =========================================================================

class TestLogContext:
    def test_nested_context_merges_and_restores(self):
        with log_context(video_id="v1"):
            with log_context(request_id="r1"):
                assert current_log_context() == {"video_id": "v1", "request_id": "r1"}
            assert current_log_context() == {"video_id": "v1"}
        assert current_log_context() == {}

    def test_explicit_extra_wins_over_context(self):
        stream = StringIO()
        handler = logging.StreamHandler(stream)
        handler.addFilter(_ContextFilter())
        handler.setFormatter(_JsonFormatter(session_id="sid"))
        logger = logging.getLogger("ctx.extra")
        logger.addHandler(handler)
        logger.setLevel(logging.DEBUG)
        with log_context(video_id="from-context"):
            logger.info("extra 우선", extra={"video_id": "from-extra"})
        logger.removeHandler(handler)

        assert json.loads(stream.getvalue().strip())["video_id"] == "from-extra"
