"""
Danmu Overlay Engine 서버 진입점

역할:
- 설정 로드 후 구조화 로깅, 메트릭, 저장소, 실시간 백엔드, API 서버를 조립
- 설정 파일 핫스왑 감시 등록
- SIGINT/SIGTERM 핸들러로 graceful shutdown

실행 예시:
    기본 설정으로 실행:
        python main.py

    설정 파일과 포트 지정:
        python main.py --config config.yaml --port 9000

    환경 변수로 설정 오버라이드:
        DMU_DANMU_WINDOW_SECONDS=6 python main.py
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal

from src.api.server import DanmuApiServer
from src.config.config_manager import ConfigManager
from src.config.schema import AppConfig
from src.danmu import Video
from src.delivery.backend import InProcessRealtimeBackend
from src.logging import setup_logging
from src.metrics.latency_tracker import DeliveryLatencyTracker
from src.metrics.metrics_store import MetricsStore
from src.store.comment_store import CommentStore
from src.store.document_store import InMemoryDocumentStore

logger = logging.getLogger(__name__)


# =============================================================================
# 진입점
# =============================================================================

def _parse_args() -> argparse.Namespace:
    """커맨드라인 인자를 파싱합니다."""
    parser = argparse.ArgumentParser(
        description="Danmu Overlay Engine: 영상 시점 동기화 댓글 오버레이 서버"
    )
    parser.add_argument(
        "--config", default="config.yaml", help="설정 파일 경로 (기본: config.yaml)"
    )
    parser.add_argument("--host", help="바인드 호스트 (config.yaml 오버라이드)")
    parser.add_argument("--port", type=int, help="서버 포트 (config.yaml 오버라이드)")
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="로그 레벨 (config.yaml 오버라이드)",
    )
    parser.add_argument(
        "--no-watch", action="store_true", help="설정 파일 핫스왑 감시 비활성화"
    )
    return parser.parse_args()


def _apply_cli_overrides(config: AppConfig, args: argparse.Namespace) -> AppConfig:
    """커맨드라인 인자를 설정에 반영합니다. Pydantic 모델은 재생성합니다."""
    config_dict = config.model_dump()
    if args.host:
        config_dict["api"]["host"] = args.host
    if args.port:
        config_dict["api"]["port"] = args.port
    if args.log_level:
        config_dict["system"]["log_level"] = args.log_level
    return AppConfig(**config_dict)


def _build_server(config: AppConfig) -> DanmuApiServer:
    """저장소, 실시간 백엔드, 메트릭을 조립하여 API 서버를 만듭니다."""
    metrics_store = MetricsStore()
    comment_store = CommentStore(InMemoryDocumentStore(), config, metrics_store=metrics_store)
    for seed in config.store.seed_videos:
        comment_store.register_video(Video(video_id=seed.video_id, duration_sec=seed.duration_sec))

    backend = InProcessRealtimeBackend(comment_store, config, metrics_store=metrics_store)
    latency_tracker = DeliveryLatencyTracker(config, metrics_store=metrics_store)
    return DanmuApiServer(
        config,
        comment_store,
        backend,
        metrics_store=metrics_store,
        latency_tracker=latency_tracker,
    )


async def _main() -> None:
    """비동기 메인 함수입니다."""
    args = _parse_args()

    # 설정 로드
    manager = ConfigManager()
    config = _apply_cli_overrides(manager.load(args.config), args)

    # 로깅 설정
    session_id = setup_logging(config)
    logger.info(
        f"Danmu Overlay Engine 시작: session_id={session_id}, "
        f"window={config.danmu.window_seconds}s, port={config.api.port}"
    )

    server = _build_server(config)

    # 핫스왑 설정 감시 등록
    if not args.no_watch:
        manager.subscribe(server.apply_config)
        manager.watch()

    # SIGINT/SIGTERM 핸들러 등록 (asyncio-safe 방식)
    loop = asyncio.get_running_loop()

    def _signal_handler():
        logger.info("종료 시그널 수신")
        server.request_shutdown()

    loop.add_signal_handler(signal.SIGINT, _signal_handler)
    loop.add_signal_handler(signal.SIGTERM, _signal_handler)

    await server.start()
    try:
        await server.wait_closed()
    finally:
        await server.stop()
        manager.stop_watch()

    logger.info("Danmu Overlay Engine 종료")


if __name__ == "__main__":
    asyncio.run(_main())
