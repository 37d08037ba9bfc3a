"""
구조화 로깅 패키지

setup_logging, log_context, StructuredLogger를 외부에서 임포트하기 위한 패키지 초기화입니다.
"""

from src.logging.structured_logger import (
    StructuredLogger,
    current_log_context,
    log_context,
    setup_logging,
)

__all__ = ["StructuredLogger", "current_log_context", "log_context", "setup_logging"]
