"""
오버레이 엔진 설정 로더입니다.

config.yaml → DMU_ 환경변수 → AppConfig 검증 순서로 설정을 만들고,
파일이 바뀌면 다시 읽어 rate limit 같은 런타임 값을 구독자에게 넘깁니다.
다시 읽은 설정이 검증에 실패하면 직전 설정을 계속 사용합니다.

사용 예시:
    >>> manager = ConfigManager()
    >>> config = manager.load("config.yaml")
    >>> manager.get("danmu.window_seconds")
    8.0
    >>> manager.subscribe(server.apply_config)
    >>> manager.watch()
"""

from __future__ import annotations

import logging
import os
import threading
from pathlib import Path
from typing import Any, Callable, Optional

import yaml
from pydantic import BaseModel, ValidationError
from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from src.config.schema import AppConfig

logger = logging.getLogger(__name__)

ENV_PREFIX = "DMU_"

# (이전 설정, 새 설정)
ConfigChangeCallback = Callable[[AppConfig, AppConfig], None]

# 경로에 이 조각이 들어간 값은 로그에 출력하지 않음 (api.tokens 등)
_SECRET_MARKERS = ("token", "secret", "key")


class ConfigLoadError(Exception):
    """설정을 읽거나 해석하지 못했습니다."""


class ConfigValidationError(ConfigLoadError):
    """AppConfig 스키마를 통과하지 못했습니다."""


class ConfigFileNotFoundError(ConfigLoadError):
    """설정 파일이 없습니다."""


class _ConfigFileHandler(FileSystemEventHandler):
    """config 디렉터리 이벤트 중 대상 파일의 수정/교체만 골라 전달합니다."""

    def __init__(self, manager: "ConfigManager", target_filename: str) -> None:
        super().__init__()
        self._manager = manager
        self._target_filename = target_filename

    def on_modified(self, event: Any) -> None:
        if not event.is_directory and Path(event.src_path).name == self._target_filename:
            logger.info(f"config 수정 감지: {event.src_path}")
            self._manager._on_file_changed(event)

    def on_moved(self, event: Any) -> None:
        # 임시 파일에 쓴 뒤 rename으로 교체하는 편집기 저장 방식
        if not event.is_directory and Path(event.dest_path).name == self._target_filename:
            logger.info(f"config 교체 감지: {event.dest_path}")
            self._manager._on_file_changed(event)


class ConfigManager:
    """
    활성 AppConfig 하나를 보관하고 파일 변경 시 교체합니다.

    교체는 검증을 통과한 경우에만 일어나며, 그때마다 구독자가 (이전, 새) 설정으로 호출됩니다.
    """

    def __init__(self) -> None:
        self._config: Optional[AppConfig] = None
        self._config_filepath: Optional[Path] = None
        self._subscribers: list[ConfigChangeCallback] = []
        self._lock = threading.RLock()
        self._observer: Optional[Observer] = None

    @property
    def config(self) -> Optional[AppConfig]:
        with self._lock:
            return self._config

    def load(self, filepath: str | Path) -> AppConfig:
        """
        설정 파일을 읽어 활성 설정으로 삼습니다.

        에러:
            ConfigFileNotFoundError: 파일 없음
            ConfigValidationError: 스키마 위반 (환경변수 값 포함)
            ConfigLoadError: YAML 문법 오류, 최상위가 매핑이 아님
        """
        filepath = Path(filepath)
        if not filepath.exists():
            message = f"설정 파일 없음: {filepath}"
            logger.error(message)
            raise ConfigFileNotFoundError(message)

        config = self._build(filepath)
        with self._lock:
            self._config = config
            self._config_filepath = filepath

        logger.info(
            f"설정 로드: {filepath} (window={config.danmu.window_seconds}s, "
            f"viewport={config.layout.viewport_width:g}x{config.layout.viewport_height:g}, port={config.api.port}, "
            f"log={config.system.log_level}/{config.system.log_format})"
        )
        return config

    def get(self, key: str, default: Any = None) -> Any:
        """
        "render.font_sizes.large"처럼 점으로 이은 경로의 값을 돌려줍니다.

        모델 필드와 dict 키(api.tokens.<token>) 모두 따라갑니다. 경로가 없으면 default.
        """
        with self._lock:
            if self._config is None:
                raise RuntimeError("load() 이전에는 설정을 조회할 수 없습니다")

            node: Any = self._config
            for part in key.split("."):
                if isinstance(node, BaseModel) and part in type(node).model_fields:
                    node = getattr(node, part)
                elif isinstance(node, dict) and part in node:
                    node = node[part]
                else:
                    return default
            return node

    def subscribe(self, callback: ConfigChangeCallback) -> None:
        with self._lock:
            self._subscribers.append(callback)

    def unsubscribe(self, callback: ConfigChangeCallback) -> None:
        with self._lock:
            if callback in self._subscribers:
                self._subscribers.remove(callback)
            else:
                logger.debug("등록되지 않은 설정 구독자 해제 요청")

    def watch(self, filepath: str | Path | None = None) -> None:
        """설정 파일 감시를 시작합니다. 경로를 생략하면 마지막으로 load()한 파일을 감시합니다."""
        target = Path(filepath) if filepath else self._config_filepath
        if target is None:
            logger.warning("감시할 설정 파일이 없어 watch()를 건너뜁니다")
            return
        if self._observer is not None:
            return

        observer = Observer()
        observer.schedule(_ConfigFileHandler(self, target.name), path=str(target.parent), recursive=False)
        observer.daemon = True
        observer.start()
        self._observer = observer
        logger.info(f"config 감시 시작: {target}")

    def stop_watch(self) -> None:
        if self._observer is None:
            return
        self._observer.stop()
        self._observer.join(timeout=5)
        self._observer = None
        logger.info("config 감시 종료")

    def validate_schema(self, raw_config: dict) -> bool:
        try:
            AppConfig(**raw_config)
        except ValidationError as validation_error:
            logger.warning(f"스키마 위반: {validation_error.error_count()}건")
            return False
        return True

    # =========================================================================
    # 파일 → AppConfig
    # =========================================================================

    def _build(self, filepath: Path) -> AppConfig:
        raw_config = self._parse_yaml_file(filepath)
        raw_config = self._apply_env_overrides(raw_config)
        return self._validate_config(raw_config)

    def _parse_yaml_file(self, filepath: Path) -> dict:
        try:
            raw_data = yaml.safe_load(filepath.read_text(encoding="utf-8"))
        except yaml.YAMLError as yaml_error:
            logger.error(f"YAML 문법 오류: {filepath}: {yaml_error}")
            raise ConfigLoadError(f"YAML 문법 오류: {yaml_error}") from yaml_error
        except OSError as file_error:
            logger.error(f"설정 파일 읽기 실패: {filepath}: {file_error}")
            raise ConfigLoadError(f"설정 파일 읽기 실패: {file_error}") from file_error

        if raw_data is None:
            logger.warning(f"빈 설정 파일, 기본값 사용: {filepath}")
            return {}
        if not isinstance(raw_data, dict):
            raise ConfigLoadError(f"설정 최상위는 매핑이어야 합니다: {type(raw_data).__name__}")
        return raw_data

    def _apply_env_overrides(self, raw_config: dict) -> dict:
        """
        DMU_<경로> 환경변수를 raw_config에 덮어씁니다.

        경로는 AppConfig 필드 이름으로 해석하므로 밑줄이 들어간 필드명도 구분됩니다.
            DMU_API_RATE_LIMIT_WINDOW_SEC -> api.rate_limit_window_sec
            DMU_RENDER_FONT_SIZES_LARGE   -> render.font_sizes.large
        해석되지 않는 변수는 무시합니다.
        """
        applied = 0
        for env_key, env_value in sorted(os.environ.items()):
            if not env_key.startswith(ENV_PREFIX):
                continue
            path = self._resolve_env_path(env_key[len(ENV_PREFIX):].lower())
            if path is None:
                logger.debug(f"해석할 수 없는 환경변수 무시: {env_key}")
                continue

            value = self._convert_env_value(env_value)
            section = raw_config
            for part in path[:-1]:
                if not isinstance(section.get(part), dict):
                    section[part] = {}
                section = section[part]
            section[path[-1]] = value
            applied += 1

            dotted = ".".join(path)
            shown = "***" if any(marker in dotted for marker in _SECRET_MARKERS) else value
            logger.info(f"{env_key} -> {dotted} = {shown}")

        if applied:
            logger.info(f"환경변수 오버라이드 {applied}건 적용")
        return raw_config

    def _resolve_env_path(self, lowered_key: str) -> Optional[list[str]]:
        model: type[BaseModel] = AppConfig
        path: list[str] = []
        rest = lowered_key

        while rest:
            fields = model.model_fields
            if rest in fields:
                return path + [rest]

            # rate_limit_window_sec처럼 밑줄이 든 이름이 있으므로 긴 필드명부터 대조
            prefix = next(
                (name for name in sorted(fields, key=len, reverse=True) if rest.startswith(name + "_")),
                None,
            )
            if prefix is None:
                return None
            nested = fields[prefix].annotation
            if not (isinstance(nested, type) and issubclass(nested, BaseModel)):
                return None
            path.append(prefix)
            model = nested
            rest = rest[len(prefix) + 1:]

        return None

    @staticmethod
    def _convert_env_value(value: str) -> Any:
        """"true"/"false" → bool, 정수 → int, 실수 → float, 나머지는 문자열 그대로."""
        lowered = value.lower()
        if lowered in ("true", "false"):
            return lowered == "true"
        for convert in (int, float):
            try:
                return convert(value)
            except ValueError:
                continue
        return value

    def _validate_config(self, raw_config: dict) -> AppConfig:
        try:
            return AppConfig(**raw_config)
        except ValidationError as validation_error:
            for detail in validation_error.errors():
                location = ".".join(str(part) for part in detail["loc"])
                logger.error(f"설정 값 오류: {location}: {detail['msg']} (입력={detail.get('input', '-')!r})")
            raise ConfigValidationError(
                f"설정 스키마 위반 {validation_error.error_count()}건"
            ) from validation_error

    # =========================================================================
    # 핫스왑
    # =========================================================================

    def _on_file_changed(self, event: Any) -> None:
        if self._config_filepath is None:
            return

        try:
            new_config = self._build(self._config_filepath)
        except ConfigLoadError as load_error:
            logger.error(f"config 재로드 실패, 직전 설정 유지: {load_error}")
            return

        with self._lock:
            previous_config = self._config
            self._config = new_config
            subscribers = list(self._subscribers)

        logger.info(f"config 재로드: rate_limit={new_config.api.rate_limit_max}/{new_config.api.rate_limit_window_sec}s")
        if previous_config is not None:
            self._notify_subscribers(previous_config, new_config, subscribers)

    def _notify_subscribers(
        self,
        previous_config: AppConfig,
        new_config: AppConfig,
        subscribers: list[ConfigChangeCallback],
    ) -> None:
        # 한 구독자의 실패가 나머지 통보를 막지 않음
        for callback in subscribers:
            try:
                callback(previous_config, new_config)
            except Exception as callback_error:
                logger.error(
                    f"설정 구독자 {getattr(callback, '__qualname__', callback)} 실패: {callback_error}",
                    exc_info=True,
                )
