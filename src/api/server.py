"""
danmu HTTP/WebSocket API 서버 모듈입니다.

역할:
- FastAPI 기반 쓰기/읽기/모더레이션 REST 엔드포인트
- WebSocket으로 영상별 스냅샷 + 실시간 생성/제거 이벤트 푸시
- DanmuError를 {"success": false, "error", "code"} 응답과 HTTP 상태 코드로 변환
- uvicorn.Server를 asyncio 태스크로 실행하고 종료 요청 시 정리

엔드포인트:
    POST   /videos/{video_id}/danmu         댓글 생성 (인증, rate limit)
    GET    /videos/{video_id}/danmu         댓글 목록 (?timestamp=&duration= 선택)
    GET    /videos/{video_id}/danmu/stats   영상별 통계
    POST   /danmu/{danmu_id}/hide           숨김 (작성자 또는 모더레이터)
    DELETE /danmu/{danmu_id}                삭제 (작성자 또는 모더레이터)
    WS     /ws/videos/{video_id}/danmu      실시간 구독 (?since=ISO-8601 선택)
    GET    /api/health                      헬스체크
    GET    /api/metrics                     카운터 및 전달 지연 통계
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from typing import Optional

import uvicorn
from fastapi import FastAPI, Header, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from src.api.auth import StaticTokenVerifier, TokenVerifier
from src.api.rate_limiter import RateLimiter
from src.config.schema import AppConfig
from src.danmu import Actor, NewDanmuComment, parse_timestamp
from src.danmu.errors import DanmuError, RateLimited, SubscriptionDropped, ValidationError
from src.delivery.backend import RealtimeBackend
from src.delivery.subscription import DanmuSubscription
from src.logging import log_context
from src.metrics.latency_tracker import DeliveryLatencyTracker
from src.metrics.metrics_store import MetricsStore
from src.store.comment_store import CommentStore, retry_read

logger = logging.getLogger(__name__)


# =========================================================================
# 요청 본문 모델
# =========================================================================

class CreateDanmuRequest(BaseModel):
    """댓글 생성 요청 본문입니다. text 대신 content도 받습니다."""
    model_config = ConfigDict(extra="ignore")

    text: Optional[str] = None
    content: Optional[str] = None
    timestamp: Optional[float] = None
    color: Optional[str] = None
    size: Optional[str] = None
    position: Optional[str] = None
    speed: Optional[float] = None


class HideDanmuRequest(BaseModel):
    """숨김 요청 본문입니다."""
    reason: Optional[str] = Field(default=None, max_length=500)


def _success(data, status_code: int = 200) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": True, "data": data})


# =========================================================================
# DanmuApiServer 클래스
# =========================================================================

class DanmuApiServer:
    """
    danmu 엔진의 외부 인터페이스를 제공하는 FastAPI 서버입니다.

    쓰기/읽기 라우트는 동기 함수로 선언되어 스레드 풀에서 실행되며,
    저장소 변경 이벤트는 실시간 백엔드를 통해 WebSocket 구독자에게 전달됩니다.
    """

    def __init__(
        self,
        config: AppConfig,
        comment_store: CommentStore,
        backend: RealtimeBackend,
        metrics_store: Optional[MetricsStore] = None,
        latency_tracker: Optional[DeliveryLatencyTracker] = None,
        verifier: Optional[TokenVerifier] = None,
        rate_limiter: Optional[RateLimiter] = None,
    ) -> None:
        self._config = config
        self._store = comment_store
        self._backend = backend
        self._metrics = metrics_store or MetricsStore()
        self._latency = latency_tracker or DeliveryLatencyTracker(config, self._metrics)
        self._verifier = verifier or StaticTokenVerifier.from_config(config.api, config.store.moderator_ids)
        self._rate_limiter = rate_limiter or RateLimiter(
            window_sec=config.api.rate_limit_window_sec,
            max_requests=config.api.rate_limit_max,
        )
        self._server: Optional[uvicorn.Server] = None
        self._server_task: Optional[asyncio.Task] = None
        self._started_at = time.time()

        self._app = self._build_app()

    @property
    def app(self) -> FastAPI:
        return self._app

    # =========================================================================
    # 서버 수명 주기
    # =========================================================================

    async def start(self) -> None:
        """uvicorn 서버를 백그라운드 태스크로 시작합니다."""
        uvicorn_config = uvicorn.Config(
            app=self._app,
            host=self._config.api.host,
            port=self._config.api.port,
            log_level=self._config.system.log_level.lower(),
            log_config=None,
            access_log=False,
        )
        self._server = uvicorn.Server(uvicorn_config)
        self._server_task = asyncio.create_task(self._server.serve())
        logger.info(
            f"API 서버 시작: http://"
            f"{'localhost' if self._config.api.host == '0.0.0.0' else self._config.api.host}:"
            f"{self._config.api.port}"
        )

    async def wait_closed(self) -> None:
        """서버 태스크가 끝날 때까지 기다립니다."""
        if self._server_task is not None:
            await self._server_task

    def request_shutdown(self) -> None:
        """서버에 종료를 요청합니다 (시그널 핸들러에서 호출)."""
        if self._server is not None:
            self._server.should_exit = True
        logger.info("API 서버 종료 요청 수신")

    async def stop(self) -> None:
        """서버를 종료하고 실시간 백엔드를 닫습니다."""
        self.request_shutdown()
        if self._server_task is not None:
            try:
                await asyncio.wait_for(self._server_task, timeout=5.0)
            except asyncio.TimeoutError:
                self._server_task.cancel()
                try:
                    await self._server_task
                except asyncio.CancelledError:
                    pass
            self._server_task = None
        await self._backend.close()
        logger.info("API 서버 종료")

    def apply_config(self, old_config: AppConfig, new_config: AppConfig) -> None:
        """
        설정 변경을 서버에 적용합니다 (핫스왑).

        ConfigManager.subscribe()에 콜백으로 등록됩니다.
        rate limit 한도와 댓글 기본값이 즉시 반영되며, 호스트/포트는 재시작이 필요합니다.
        """
        self._config = new_config
        self._rate_limiter.update_limits(
            new_config.api.rate_limit_window_sec,
            new_config.api.rate_limit_max,
        )
        if (old_config.api.host, old_config.api.port) != (new_config.api.host, new_config.api.port):
            logger.warning("api.host/api.port 변경은 서버 재시작 후 적용됩니다")
        logger.info("API 서버 설정 핫스왑 완료")

    # =========================================================================
    # 라우트 구성
    # =========================================================================

    def _build_app(self) -> FastAPI:
        """FastAPI 앱과 라우트를 구성합니다."""
        app = FastAPI(title="Danmu Overlay Engine", docs_url=None, redoc_url=None)
        app.add_middleware(
            CORSMiddleware,
            allow_origins=self._config.api.cors_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

        @app.middleware("http")
        async def request_context(request: Request, call_next):
            with log_context(request_id=uuid.uuid4().hex[:8]):
                return await call_next(request)

        @app.exception_handler(DanmuError)
        async def handle_danmu_error(request: Request, exc: DanmuError):
            headers = None
            if isinstance(exc, RateLimited):
                headers = {"Retry-After": str(exc.to_payload()["retryAfter"])}
            logger.info(f"요청 실패: {request.method} {request.url.path} -> {exc.status_code} {exc.code}")
            return JSONResponse(status_code=exc.status_code, content=exc.to_payload(), headers=headers)

        @app.exception_handler(RequestValidationError)
        async def handle_request_validation(request: Request, exc: RequestValidationError):
            return JSONResponse(
                status_code=400,
                content={
                    "success": False,
                    "error": "Invalid request",
                    "code": ValidationError.code,
                    "details": jsonable_encoder(exc.errors()),
                },
            )

        @app.post("/videos/{video_id}/danmu")
        def create_danmu(
            video_id: str,
            body: CreateDanmuRequest,
            request: Request,
            authorization: Optional[str] = Header(default=None),
        ):
            with log_context(video_id=video_id):
                actor = self._verifier.actor_from_header(authorization)
                self._rate_limiter.check(self._rate_limit_key(actor, request))
                comment = self._store.create(self._to_new_comment(video_id, body), actor)
            return _success(comment.to_dict(), status_code=201)

        @app.get("/videos/{video_id}/danmu")
        def list_danmu(
            video_id: str,
            timestamp: Optional[float] = Query(default=None, ge=0),
            duration: float = Query(default=10.0, gt=0),
        ):
            comments = self._read(lambda: self._store.list_window(video_id, timestamp, duration))
            return _success(
                {
                    "danmu": [comment.to_dict() for comment in comments],
                    "total": len(comments),
                    "videoId": video_id,
                }
            )

        @app.get("/videos/{video_id}/danmu/stats")
        def danmu_stats(video_id: str):
            stats = self._read(lambda: self._store.stats(video_id))
            return _success(stats.to_dict())

        @app.post("/danmu/{danmu_id}/hide")
        def hide_danmu(
            danmu_id: str,
            body: Optional[HideDanmuRequest] = None,
            authorization: Optional[str] = Header(default=None),
        ):
            actor = self._verifier.actor_from_header(authorization)
            reason = body.reason if body is not None else None
            with log_context(comment_id=danmu_id):
                comment = self._store.hide(danmu_id, actor, reason)
            return _success(comment.to_dict())

        @app.delete("/danmu/{danmu_id}")
        def delete_danmu(
            danmu_id: str,
            authorization: Optional[str] = Header(default=None),
        ):
            actor = self._verifier.actor_from_header(authorization)
            with log_context(comment_id=danmu_id):
                comment = self._store.delete(danmu_id, actor)
            return _success({"id": comment.id, "status": comment.status})

        @app.websocket("/ws/videos/{video_id}/danmu")
        async def danmu_stream(websocket: WebSocket, video_id: str):
            await websocket.accept()
            with log_context(video_id=video_id, channel="ws"):
                await self._serve_subscription(websocket, video_id, websocket.query_params.get("since"))

        @app.get("/api/health")
        async def health():
            return JSONResponse(
                content={
                    "status": "ok",
                    "ts": time.time(),
                    "uptime_sec": time.time() - self._started_at,
                }
            )

        @app.get("/api/metrics")
        async def metrics():
            self._latency.compute_stats()
            return JSONResponse(content=self._metrics.snapshot())

        return app

    # =========================================================================
    # 내부 메서드
    # =========================================================================

    def _to_new_comment(self, video_id: str, body: CreateDanmuRequest) -> NewDanmuComment:
        danmu_cfg = self._config.danmu
        return NewDanmuComment(
            video_id=video_id,
            text=body.text if body.text is not None else body.content,
            video_timestamp_sec=body.timestamp,
            motion_class=body.position or danmu_cfg.default_position,
            color=body.color or danmu_cfg.default_color,
            size_class=body.size or danmu_cfg.default_size,
            speed_multiplier=body.speed if body.speed is not None else danmu_cfg.default_speed,
        )

    @staticmethod
    def _rate_limit_key(actor: Optional[Actor], request: Request) -> str:
        if actor is not None:
            return f"user:{actor.uid}"
        client_host = request.client.host if request.client is not None else "unknown"
        return f"ip:{client_host}"

    def _read(self, read_fn):
        store_cfg = self._config.store
        return retry_read(read_fn, store_cfg.read_retry_attempts, store_cfg.read_retry_backoff_sec)

    async def _serve_subscription(self, websocket: WebSocket, video_id: str, since: Optional[str]) -> None:
        """
        WebSocket 연결 하나에 구독을 열고 이벤트를 전달합니다.

        첫 메시지는 snapshot이며, 이후 created/removed 메시지를 보냅니다.
        클라이언트가 끊기거나 구독이 닫히면 구독을 해제합니다.
        """
        subscription = DanmuSubscription(
            self._backend,
            video_id,
            self._config,
            metrics_store=self._metrics,
            latency_tracker=self._latency,
        )
        try:
            since_created_at = parse_timestamp(since) if since else None
            snapshot = await subscription.open(since_created_at)
        except ValueError:
            await self._send_error(websocket, ValidationError("Invalid since cursor", field="since"))
            return
        except DanmuError as open_error:
            await self._send_error(websocket, open_error)
            return

        receiver: Optional[asyncio.Task] = None
        try:
            await websocket.send_json(
                {
                    "type": "snapshot",
                    "videoId": video_id,
                    "danmu": [comment.to_dict() for comment in snapshot],
                    "total": len(snapshot),
                }
            )
            receiver = asyncio.create_task(self._wait_disconnect(websocket))
            while True:
                forward = asyncio.create_task(subscription.next_event())
                done, _ = await asyncio.wait({forward, receiver}, return_when=asyncio.FIRST_COMPLETED)
                if forward not in done:
                    forward.cancel()
                    break
                event = forward.result()
                if event is None:
                    await websocket.close()
                    break
                await websocket.send_json(event.to_message())
        except SubscriptionDropped as dropped:
            logger.error(f"WebSocket 구독 복구 실패: {dropped}")
            await self._send_error(websocket, dropped)
        except WebSocketDisconnect:
            logger.debug("WebSocket 클라이언트 연결 종료")
        finally:
            if receiver is not None:
                receiver.cancel()
            await subscription.unsubscribe()

    @staticmethod
    async def _wait_disconnect(websocket: WebSocket) -> None:
        """클라이언트 메시지는 무시하고 연결이 끊길 때까지 기다립니다."""
        try:
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            return

    @staticmethod
    async def _send_error(websocket: WebSocket, error: DanmuError) -> None:
        try:
            await websocket.send_json({"type": "error", **error.to_payload()})
            await websocket.close(code=1008)
        except (WebSocketDisconnect, RuntimeError):
            logger.debug("에러 전송 전 WebSocket 연결이 이미 종료됨")


def create_app(
    config: AppConfig,
    comment_store: CommentStore,
    backend: RealtimeBackend,
    metrics_store: Optional[MetricsStore] = None,
    verifier: Optional[TokenVerifier] = None,
    rate_limiter: Optional[RateLimiter] = None,
) -> FastAPI:
    """설정과 협력 객체로 FastAPI 앱을 만듭니다."""
    server = DanmuApiServer(
        config,
        comment_store,
        backend,
        metrics_store=metrics_store,
        verifier=verifier,
        rate_limiter=rate_limiter,
    )
    return server.app
