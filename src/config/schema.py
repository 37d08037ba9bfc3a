"""
Danmu 오버레이 엔진 설정 스키마 정의 모듈입니다.

역할:
- Pydantic v2 BaseModel 기반으로 config.yaml의 전체 구조를 타입 안전하게 정의
- 각 섹션(system, danmu, layout, render, delivery, store, api, metrics)을
  독립적인 중첩 모델로 분리하여 유지보수성 확보
- 필드별 기본값, 허용 범위, 유효성 검증(validator)을 포함

사용 예시:
    >>> from src.config.schema import AppConfig
    >>> config = AppConfig(**yaml_data)
    >>> print(config.danmu.window_seconds)
"""

from __future__ import annotations

import logging
import re
from typing import Optional

from pydantic import BaseModel, Field, field_validator, model_validator

# 모듈 로거 설정
logger = logging.getLogger(__name__)

_HEX_COLOR_PATTERN = re.compile(r"^#[0-9A-Fa-f]{6}$")


# =============================================================================
# system 섹션: 시스템 전역 설정
# =============================================================================

class SystemConfig(BaseModel):
    """
    시스템 전역 설정을 정의하는 모델입니다.

    역할:
    - 로깅 레벨 및 포맷 지정
    - 세션 식별자 관리
    """
    # 로그 출력 레벨
    log_level: str = Field(default="INFO", description="로그 레벨 (DEBUG | INFO | WARNING | ERROR)")
    # 로그 출력 포맷
    log_format: str = Field(default="json", description="로그 포맷 (json | text)")
    # 로그 파일 저장 디렉토리 경로
    log_dir: str = Field(default="output/logs", description="로그 저장 디렉토리")
    # 세션 고유 식별자 (빈 문자열이면 UUID로 자동 생성)
    session_id: str = Field(default="", description="세션 ID (비어있으면 UUID 자동생성)")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, value: str) -> str:
        """로그 레벨이 유효한 Python 로깅 레벨인지 검증합니다."""
        allowed_levels = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
        # 대소문자 구분 없이 비교 후 대문자로 정규화
        upper_value = value.upper()
        if upper_value not in allowed_levels:
            error_message = f"log_level은 {allowed_levels} 중 하나여야 합니다. 입력값: '{value}'"
            raise ValueError(error_message)
        return upper_value

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, value: str) -> str:
        """로그 포맷이 지원되는 형식인지 검증합니다."""
        allowed_formats = ("json", "text")
        if value not in allowed_formats:
            error_message = f"log_format은 {allowed_formats} 중 하나여야 합니다. 입력값: '{value}'"
            raise ValueError(error_message)
        return value


# =============================================================================
# danmu 섹션: 댓글 검증 및 표시 윈도우 설정
# =============================================================================

class DanmuConfig(BaseModel):
    """
    danmu 댓글의 쓰기 검증 규칙과 표시 윈도우를 정의하는 모델입니다.

    역할:
    - 표시 윈도우 길이(초) 지정
    - 텍스트 길이 제한 및 필드 기본값 지정
    - 영상 길이를 넘는 타임스탬프 거부 여부 결정
    """
    # 댓글 하나가 화면에 노출될 수 있는 시간 (초)
    window_seconds: float = Field(default=8.0, description="표시 윈도우 길이 (초)")
    # 텍스트 최소 길이 (문자 수)
    text_min_length: int = Field(default=1, description="텍스트 최소 길이")
    # 텍스트 최대 길이 (문자 수)
    text_max_length: int = Field(default=200, description="텍스트 최대 길이")
    # 색상이 유효하지 않을 때 사용할 기본 색상
    default_color: str = Field(default="#FFFFFF", description="기본 색상 (HEX)")
    # 기본 크기 등급
    default_size: str = Field(default="medium", description="기본 크기 (small | medium | large)")
    # 기본 움직임 등급
    default_position: str = Field(default="scroll", description="기본 위치 (scroll | top | bottom)")
    # 기본 속도 배율
    default_speed: float = Field(default=1.0, description="기본 속도 배율")
    # 영상 길이를 초과하는 타임스탬프 거부 여부
    enforce_video_duration: bool = Field(default=True, description="영상 길이 초과 타임스탬프 거부")

    @field_validator("window_seconds", "default_speed")
    @classmethod
    def validate_positive(cls, value: float) -> float:
        """양수여야 하는 값을 검증합니다."""
        if value <= 0:
            raise ValueError(f"0보다 커야 합니다. 입력값: {value}")
        return value

    @field_validator("default_color")
    @classmethod
    def validate_default_color(cls, value: str) -> str:
        """기본 색상이 #RRGGBB 형식인지 검증합니다."""
        if not _HEX_COLOR_PATTERN.match(value):
            raise ValueError(f"default_color는 #RRGGBB 형식이어야 합니다. 입력값: '{value}'")
        return value.upper()

    @field_validator("default_size")
    @classmethod
    def validate_default_size(cls, value: str) -> str:
        allowed = ("small", "medium", "large")
        if value not in allowed:
            raise ValueError(f"default_size는 {allowed} 중 하나여야 합니다. 입력값: '{value}'")
        return value

    @field_validator("default_position")
    @classmethod
    def validate_default_position(cls, value: str) -> str:
        allowed = ("scroll", "top", "bottom")
        if value not in allowed:
            raise ValueError(f"default_position은 {allowed} 중 하나여야 합니다. 입력값: '{value}'")
        return value

    @model_validator(mode="after")
    def validate_text_range(self) -> "DanmuConfig":
        """텍스트 길이 범위가 올바른지 검증합니다."""
        if not 1 <= self.text_min_length <= self.text_max_length:
            raise ValueError(
                f"텍스트 길이 범위가 잘못되었습니다: "
                f"min={self.text_min_length}, max={self.text_max_length}"
            )
        return self


# =============================================================================
# layout 섹션: 레인 배치 설정
# =============================================================================

class LayoutConfig(BaseModel):
    """
    화면 레인(line) 배치 계산에 쓰이는 뷰포트 설정입니다.

    역할:
    - 뷰포트 크기와 줄 높이로 max_lines 계산
    - 폴백 랜덤 배치에 쓰일 시드 지정 (재현 가능한 테스트용)
    """
    # 뷰포트 가로 픽셀 수 (scroll 이동 거리 계산용)
    viewport_width: float = Field(default=1280.0, description="뷰포트 가로 (px)")
    # 뷰포트 세로 픽셀 수
    viewport_height: float = Field(default=720.0, description="뷰포트 세로 (px)")
    # 한 줄 높이 (px)
    line_height: float = Field(default=30.0, description="줄 높이 (px)")
    # 상하 여백 (px)
    padding: float = Field(default=8.0, description="상하 여백 (px)")
    # 세션 난수 시드 (None이면 비결정적)
    random_seed: Optional[int] = Field(default=None, description="폴백 배치 난수 시드")

    @field_validator("viewport_width", "viewport_height", "line_height")
    @classmethod
    def validate_positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError(f"0보다 커야 합니다. 입력값: {value}")
        return value

    @field_validator("padding")
    @classmethod
    def validate_padding(cls, value: float) -> float:
        if value < 0:
            raise ValueError(f"padding은 음수일 수 없습니다. 입력값: {value}")
        return value


# =============================================================================
# render 섹션: 애니메이션 계약 설정
# =============================================================================

class FontSizeConfig(BaseModel):
    """크기 등급별 폰트 크기 (px) 입니다."""
    small: float = Field(default=12.0, description="small 폰트 크기")
    medium: float = Field(default=14.0, description="medium 폰트 크기")
    large: float = Field(default=18.0, description="large 폰트 크기")


class RenderConfig(BaseModel):
    """
    렌더/애니메이션 스케줄러가 지켜야 할 계약 설정입니다.

    역할:
    - top/bottom 고정 댓글의 페이드 인/유지/페이드 아웃 비율 지정
    - 크기 등급별 폰트 크기 지정
    - 재생 위치 불연속(seek) 판단 임계값 지정
    """
    # 페이드 인 비율
    fade_in_ratio: float = Field(default=0.1, description="페이드 인 비율")
    # 유지 비율
    hold_ratio: float = Field(default=0.8, description="유지 비율")
    # 페이드 아웃 비율
    fade_out_ratio: float = Field(default=0.1, description="페이드 아웃 비율")
    # 크기 등급별 폰트 크기
    font_sizes: FontSizeConfig = Field(default_factory=FontSizeConfig, description="폰트 크기")
    # 이 값보다 크게 재생 위치가 바뀌면 seek로 간주 (초)
    seek_threshold_sec: float = Field(default=0.5, description="seek 판단 임계값 (초)")

    @model_validator(mode="after")
    def validate_envelope(self) -> "RenderConfig":
        """페이드 비율 합이 1.0인지 검증합니다."""
        ratios = (self.fade_in_ratio, self.hold_ratio, self.fade_out_ratio)
        if any(ratio < 0 for ratio in ratios):
            raise ValueError(f"페이드 비율은 음수일 수 없습니다: {ratios}")
        if abs(sum(ratios) - 1.0) > 1e-6:
            raise ValueError(f"페이드 비율의 합은 1.0이어야 합니다: {ratios}")
        return self


# =============================================================================
# delivery 섹션: 실시간 전달 채널 설정
# =============================================================================

class DeliveryConfig(BaseModel):
    """
    실시간 전달 채널의 큐 크기 및 재연결 전략 설정입니다.

    역할:
    - 구독자별 이벤트 큐 크기 제한
    - 연결 끊김 시 exponential backoff 재연결 파라미터
    """
    # 구독자별 이벤트 큐 최대 크기 (초과 시 구독 끊김 처리)
    subscriber_queue_size: int = Field(default=256, description="구독자 큐 크기")
    # 최대 재연결 시도 횟수
    max_reconnect_attempts: int = Field(default=5, description="최대 재연결 시도 횟수")
    # 재연결 backoff 기본 대기 시간 (초)
    reconnect_backoff_base_sec: float = Field(default=1.0, description="재연결 backoff 기본값 (초)")
    # 재연결 backoff 최대 대기 시간 (초)
    reconnect_backoff_max_sec: float = Field(default=16.0, description="재연결 backoff 최대값 (초)")


# =============================================================================
# store 섹션: 문서 저장소 설정
# =============================================================================

class SeedVideoConfig(BaseModel):
    """개발용 인메모리 저장소에 미리 등록할 영상입니다."""
    video_id: str = Field(description="영상 ID")
    duration_sec: float = Field(default=0.0, description="영상 길이 (초)")


class StoreConfig(BaseModel):
    """
    외부 문서 저장소 접근 설정입니다.

    역할:
    - 읽기 재시도 횟수 및 backoff 지정 (쓰기는 재시도하지 않음)
    - 개발용 시드 영상 및 모더레이터 목록 지정
    """
    # 읽기 재시도 횟수
    read_retry_attempts: int = Field(default=3, description="읽기 재시도 횟수")
    # 읽기 재시도 기본 대기 시간 (초)
    read_retry_backoff_sec: float = Field(default=0.2, description="읽기 재시도 backoff (초)")
    # 시드 영상 목록
    seed_videos: list[SeedVideoConfig] = Field(default_factory=list, description="시드 영상 목록")
    # 모더레이터 권한을 가진 사용자 ID 목록
    moderator_ids: list[str] = Field(default_factory=list, description="모더레이터 사용자 ID")


# =============================================================================
# api 섹션: HTTP/WebSocket 서버 설정
# =============================================================================

class TokenEntryConfig(BaseModel):
    """개발용 정적 토큰이 가리키는 사용자입니다."""
    uid: str = Field(description="사용자 ID")
    roles: list[str] = Field(default_factory=lambda: ["user"], description="역할 목록")


class ApiConfig(BaseModel):
    """
    HTTP API 서버 설정입니다.

    역할:
    - 바인드 주소 및 포트 지정
    - 쓰기 경로 rate limit 지정
    - 개발용 정적 토큰 테이블 지정 (실서비스는 외부 ID 공급자 사용)
    """
    # 서버 바인드 호스트 주소
    host: str = Field(default="0.0.0.0", description="서버 호스트")
    # 서버 포트
    port: int = Field(default=8080, description="서버 포트")
    # rate limit 윈도우 (초)
    rate_limit_window_sec: float = Field(default=60.0, description="rate limit 윈도우 (초)")
    # 윈도우당 사용자별 최대 쓰기 요청 수
    rate_limit_max: int = Field(default=30, description="윈도우당 최대 쓰기 요청 수")
    # 토큰 → 사용자 매핑
    tokens: dict[str, TokenEntryConfig] = Field(default_factory=dict, description="정적 토큰 테이블")
    # CORS 허용 출처
    cors_origins: list[str] = Field(default_factory=lambda: ["http://localhost:3000"], description="CORS 허용 출처")

    @field_validator("port")
    @classmethod
    def validate_port(cls, value: int) -> int:
        if not 0 < value < 65536:
            raise ValueError(f"port는 1~65535 범위여야 합니다. 입력값: {value}")
        return value


# =============================================================================
# metrics 섹션: 메트릭 수집 설정
# =============================================================================

class MetricsConfig(BaseModel):
    """
    전달 지연 및 카운터 메트릭 수집 설정입니다.
    """
    # 전달 지연 통계 슬라이딩 윈도우 크기 (초)
    latency_window_sec: int = Field(default=60, description="전달 지연 통계 윈도우 (초)")


# =============================================================================
# 최상위 AppConfig: 모든 섹션을 통합하는 루트 모델
# =============================================================================

class AppConfig(BaseModel):
    """
    애플리케이션 전체 설정을 통합하는 최상위 모델입니다.

    역할:
    - config.yaml의 모든 섹션을 하나의 타입 안전한 객체로 통합
    - Pydantic v2 유효성 검증을 통해 설정 무결성 보장
    - 각 섹션이 누락된 경우 기본값으로 자동 생성

    사용 예시:
        >>> import yaml
        >>> with open("config.yaml") as f:
        ...     raw = yaml.safe_load(f)
        >>> config = AppConfig(**raw)
        >>> print(config.layout.line_height)
        30.0
    """
    # 시스템 전역 설정
    system: SystemConfig = Field(default_factory=SystemConfig, description="시스템 설정")
    # 댓글 검증 및 표시 윈도우 설정
    danmu: DanmuConfig = Field(default_factory=DanmuConfig, description="danmu 설정")
    # 레인 배치 설정
    layout: LayoutConfig = Field(default_factory=LayoutConfig, description="레인 배치 설정")
    # 애니메이션 계약 설정
    render: RenderConfig = Field(default_factory=RenderConfig, description="렌더 설정")
    # 실시간 전달 채널 설정
    delivery: DeliveryConfig = Field(default_factory=DeliveryConfig, description="전달 채널 설정")
    # 문서 저장소 설정
    store: StoreConfig = Field(default_factory=StoreConfig, description="저장소 설정")
    # HTTP API 설정
    api: ApiConfig = Field(default_factory=ApiConfig, description="API 설정")
    # 메트릭 수집 설정
    metrics: MetricsConfig = Field(default_factory=MetricsConfig, description="메트릭 설정")
