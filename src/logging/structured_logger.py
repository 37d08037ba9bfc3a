"""
구조화 JSON 로깅 모듈입니다.

역할:
- python-json-logger를 사용한 JSON 포맷 로그 출력
- RotatingFileHandler로 로그 파일 자동 순환 (10MB, 5개 보존)
- session_id, module, level 공통 필드 자동 추가
- log_context()로 묶인 video_id, comment_id 등 문맥 필드를 모든 로그 레코드에 주입

사용 예시:
    >>> setup_logging(config)
    >>> logger = StructuredLogger.get(__name__)
    >>> with log_context(video_id="v1"):
    ...     logger.info("댓글 생성")
"""

from __future__ import annotations

import contextlib
import contextvars
import logging
import logging.handlers
import uuid
from pathlib import Path
from typing import Any, Iterator, Optional

from pythonjsonlogger import jsonlogger

from src.config.schema import AppConfig

_SESSION_ID: str = ""

# 현재 실행 문맥(요청, 구독 태스크)에 묶인 로그 필드
_LOG_CONTEXT: contextvars.ContextVar[dict[str, Any]] = contextvars.ContextVar(
    "danmu_log_context", default={}
)

_LOG_FILE_MAX_BYTES = 10 * 1024 * 1024
_LOG_FILE_BACKUP_COUNT = 5


def setup_logging(config: AppConfig, session_id: Optional[str] = None) -> str:
    """
    애플리케이션 전체 로깅 설정을 초기화합니다.

    파라미터:
        config: AppConfig 인스턴스
        session_id: 세션 식별자. None이면 config.system.session_id 또는 UUID 사용

    반환값:
        str: 적용된 세션 ID
    """
    global _SESSION_ID

    _SESSION_ID = session_id or config.system.session_id or str(uuid.uuid4())

    log_level = getattr(logging, config.system.log_level, logging.INFO)
    log_dir = Path(config.system.log_dir)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    # 기존 핸들러 제거 (중복 방지)
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
        handler.close()

    handlers: list[logging.Handler] = [logging.StreamHandler()]

    try:
        log_dir.mkdir(parents=True, exist_ok=True)
        handlers.append(
            logging.handlers.RotatingFileHandler(
                filename=log_dir / "app.log",
                maxBytes=_LOG_FILE_MAX_BYTES,
                backupCount=_LOG_FILE_BACKUP_COUNT,
                encoding="utf-8",
            )
        )
    except OSError as exc:
        logging.warning(f"로그 파일 핸들러 생성 실패: {exc}")

    context_filter = _ContextFilter()
    for handler in handlers:
        handler.setLevel(log_level)
        handler.addFilter(context_filter)
        handler.setFormatter(_build_formatter(config.system.log_format, _SESSION_ID))
        root_logger.addHandler(handler)

    # uvicorn 로거는 자체 핸들러 대신 root 핸들러를 사용
    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        uvicorn_logger = logging.getLogger(name)
        uvicorn_logger.handlers = []
        uvicorn_logger.propagate = True

    logging.getLogger(__name__).info(
        f"로깅 초기화: level={config.system.log_level}, "
        f"format={config.system.log_format}, session={_SESSION_ID}"
    )
    return _SESSION_ID


@contextlib.contextmanager
def log_context(**fields: Any) -> Iterator[dict[str, Any]]:
    """
    블록 안에서 발생하는 모든 로그에 문맥 필드를 붙입니다.

    중첩 호출 시 바깥 필드에 안쪽 필드가 덧붙여지며,
    블록을 벗어나면 이전 문맥으로 복원됩니다.

    파라미터:
        **fields: 로그 레코드에 추가할 키-값 (예: video_id="v1")
    """
    merged = {**_LOG_CONTEXT.get(), **fields}
    token = _LOG_CONTEXT.set(merged)
    try:
        yield merged
    finally:
        _LOG_CONTEXT.reset(token)


def current_log_context() -> dict[str, Any]:
    """현재 문맥 필드의 사본을 반환합니다."""
    return dict(_LOG_CONTEXT.get())


def _build_formatter(log_format: str, session_id: str) -> logging.Formatter:
    if log_format == "json":
        return _JsonFormatter(session_id=session_id)
    return _TextFormatter(session_id=session_id)


class _ContextFilter(logging.Filter):
    """log_context() 필드를 레코드 속성으로 복사합니다. 명시적 extra가 우선합니다."""

    def filter(self, record: logging.LogRecord) -> bool:
        context = _LOG_CONTEXT.get()
        for key, value in context.items():
            if not hasattr(record, key):
                setattr(record, key, value)
        record.context_keys = tuple(context)
        return True


class _JsonFormatter(jsonlogger.JsonFormatter):
    """
    session_id, module, level 필드를 자동 추가하는 JSON 포맷터입니다.
    """

    def __init__(self, session_id: str = "") -> None:
        super().__init__(
            fmt="%(asctime)s %(levelname)s %(name)s %(message)s",
            datefmt="%Y-%m-%dT%H:%M:%S",
        )
        self._session_id = session_id

    def add_fields(
        self,
        log_record: dict,
        record: logging.LogRecord,
        message_dict: dict,
    ) -> None:
        super().add_fields(log_record, record, message_dict)
        log_record.pop("context_keys", None)
        log_record["session_id"] = self._session_id
        log_record["module"] = record.name
        log_record["level"] = record.levelname


class _TextFormatter(logging.Formatter):
    """
    session_id 앞 8자를 접두어로 붙이고 문맥 필드를 key=value로 덧붙이는 텍스트 포맷터입니다.
    """

    def __init__(self, session_id: str = "") -> None:
        super().__init__(
            fmt=f"%(asctime)s [{session_id[:8] if session_id else 'no-sid'}] "
                f"%(levelname)-8s %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    def format(self, record: logging.LogRecord) -> str:
        text = super().format(record)
        keys = getattr(record, "context_keys", ())
        if keys:
            pairs = " ".join(f"{key}={getattr(record, key, '')}" for key in keys)
            text = f"{text} | {pairs}"
        return text


class StructuredLogger:
    """
    모듈별 로거를 반환하는 팩토리 클래스입니다.

    표준 logging.Logger를 그대로 반환하므로 기존 logging API와 호환됩니다.
    """

    @staticmethod
    def get(name: str) -> logging.Logger:
        return logging.getLogger(name)

    @staticmethod
    def get_session_id() -> str:
        """현재 세션 ID를 반환합니다."""
        return _SESSION_ID
