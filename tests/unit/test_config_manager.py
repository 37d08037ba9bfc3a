"""
ConfigManager 단위 테스트

검증 조건:
- YAML 로드 후 스키마 검증, 빈 파일은 기본값
- dot-notation 조회 (중첩 모델, dict 필드), 없는 키는 기본값
- DMU_ 환경변수가 스키마 필드 경로로 해석되어 오버라이드 (중첩 모델 포함)
- 파일 없음/YAML 파싱 실패/검증 실패는 각각의 ConfigLoadError 하위 에러
- 핫스왑 검증 실패 시 이전 설정 유지, 성공 시 구독자에게 (이전, 새) 설정 통보
- 대상 파일의 수정 또는 rename 교체만 재로드를 일으킴
- 구독자 콜백 하나의 예외가 다른 구독자 통보를 막지 않음
"""

from __future__ import annotations

import os
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
import yaml

from src.config.config_manager import (
    ConfigFileNotFoundError,
    ConfigLoadError,
    ConfigManager,
    ConfigValidationError,
    _ConfigFileHandler,
)
from src.config.schema import AppConfig, TokenEntryConfig

REPO_CONFIG = Path(__file__).resolve().parents[2] / "config.yaml"


def _write_config(path: Path, data: dict) -> Path:
    path.write_text(yaml.safe_dump(data, allow_unicode=True), encoding="utf-8")
    return path


def _make_config() -> dict:
    return {
        "system": {"log_level": "debug", "log_format": "text"},
        "danmu": {"window_seconds": 6.0},
        "layout": {"viewport_height": 480, "line_height": 24},
        "api": {
            "port": 9000,
            "rate_limit_max": 10,
            "tokens": {"t1": {"uid": "user-1"}},
        },
    }


@pytest.fixture(autouse=True)
def _clear_env(monkeypatch):
    for key in list(os.environ):
        if key.startswith("DMU_"):
            monkeypatch.delenv(key)


@pytest.fixture
def config_file(tmp_path):
    return _write_config(tmp_path / "config.yaml", _make_config())


@pytest.fixture
def manager():
    instance = ConfigManager()
    yield instance
    instance.stop_watch()


class TestLoad:
    def test_load_valid_file(self, manager, config_file):
        config = manager.load(config_file)
        assert isinstance(config, AppConfig)
        assert config.system.log_level == "DEBUG"
        assert config.danmu.window_seconds == 6.0
        assert config.layout.line_height == 24
        assert config.api.port == 9000
        assert manager.config is config

    def test_repository_config_loads(self, manager):
        config = manager.load(REPO_CONFIG)
        assert config.danmu.window_seconds == 8.0
        assert [video.video_id for video in config.store.seed_videos] == ["demo"]
        assert config.api.tokens["dev-mod-token"].roles == ["user", "moderator"]

    def test_empty_file_uses_defaults(self, manager, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("", encoding="utf-8")
        config = manager.load(path)
        assert config == AppConfig()

    def test_missing_file(self, manager, tmp_path):
        with pytest.raises(ConfigFileNotFoundError):
            manager.load(tmp_path / "missing.yaml")

    def test_broken_yaml(self, manager, tmp_path):
        path = tmp_path / "broken.yaml"
        path.write_text("api: [unclosed", encoding="utf-8")
        with pytest.raises(ConfigLoadError):
            manager.load(path)

    def test_top_level_must_be_mapping(self, manager, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n", encoding="utf-8")
        with pytest.raises(ConfigLoadError):
            manager.load(path)

    @pytest.mark.parametrize(
        "section, values",
        [
            ("api", {"port": 70000}),
            ("system", {"log_level": "LOUD"}),
            ("danmu", {"window_seconds": 0}),
            ("danmu", {"default_color": "red"}),
            ("render", {"fade_in_ratio": 0.5}),
            ("layout", {"padding": -1}),
        ],
    )
    def test_schema_violation(self, manager, tmp_path, section, values):
        path = _write_config(tmp_path / "bad.yaml", {section: values})
        with pytest.raises(ConfigValidationError):
            manager.load(path)
        assert manager.config is None


class TestGet:
    def test_dot_notation(self, manager, config_file):
        manager.load(config_file)
        assert manager.get("layout.line_height") == 24
        assert manager.get("render.font_sizes.large") == 18.0
        assert manager.get("api.tokens.t1") == TokenEntryConfig(uid="user-1")

    def test_missing_key_returns_default(self, manager, config_file):
        manager.load(config_file)
        assert manager.get("layout.unknown") is None
        assert manager.get("nope.deeper", default=3) == 3

    def test_get_before_load(self, manager):
        with pytest.raises(RuntimeError):
            manager.get("api.port")

    def test_validate_schema(self, manager):
        assert manager.validate_schema({"api": {"port": 8081}}) is True
        assert manager.validate_schema({"api": {"port": 0}}) is False


class TestEnvOverrides:
    def test_section_field(self, manager, config_file, monkeypatch):
        monkeypatch.setenv("DMU_API_PORT", "9100")
        monkeypatch.setenv("DMU_DANMU_WINDOW_SECONDS", "7.5")
        monkeypatch.setenv("DMU_DANMU_ENFORCE_VIDEO_DURATION", "false")
        config = manager.load(config_file)
        assert config.api.port == 9100
        assert config.danmu.window_seconds == 7.5
        assert config.danmu.enforce_video_duration is False

    def test_field_names_with_underscores(self, manager, config_file, monkeypatch):
        monkeypatch.setenv("DMU_API_RATE_LIMIT_WINDOW_SEC", "15")
        monkeypatch.setenv("DMU_DELIVERY_SUBSCRIBER_QUEUE_SIZE", "32")
        config = manager.load(config_file)
        assert config.api.rate_limit_window_sec == 15.0
        assert config.delivery.subscriber_queue_size == 32

    def test_nested_model(self, manager, config_file, monkeypatch):
        monkeypatch.setenv("DMU_RENDER_FONT_SIZES_LARGE", "24")
        config = manager.load(config_file)
        assert config.render.font_sizes.large == 24.0
        assert config.render.font_sizes.small == 12.0

    def test_unknown_variable_ignored(self, manager, config_file, monkeypatch):
        monkeypatch.setenv("DMU_API_NOT_A_FIELD", "1")
        monkeypatch.setenv("DMU_NOPE", "1")
        config = manager.load(config_file)
        assert config.api.port == 9000

    def test_invalid_override_fails_validation(self, manager, config_file, monkeypatch):
        monkeypatch.setenv("DMU_SYSTEM_LOG_FORMAT", "xml")
        with pytest.raises(ConfigValidationError):
            manager.load(config_file)

    @pytest.mark.parametrize(
        "raw, expected",
        [("true", True), ("FALSE", False), ("42", 42), ("0.25", 0.25), ("hello", "hello")],
    )
    def test_value_conversion(self, manager, raw, expected):
        assert manager._convert_env_value(raw) == expected


class TestHotSwap:
    def test_invalid_change_keeps_previous(self, manager, config_file):
        original = manager.load(config_file)
        callback = MagicMock()
        manager.subscribe(callback)

        broken = _make_config()
        broken["api"]["port"] = 70000
        _write_config(config_file, broken)
        manager._on_file_changed(None)

        assert manager.config is original
        callback.assert_not_called()

    def test_valid_change_notifies_subscribers(self, manager, config_file):
        original = manager.load(config_file)
        callback = MagicMock()
        manager.subscribe(callback)

        updated = _make_config()
        updated["api"]["rate_limit_max"] = 99
        _write_config(config_file, updated)
        manager._on_file_changed(None)

        assert manager.get("api.rate_limit_max") == 99
        callback.assert_called_once()
        old, new = callback.call_args.args
        assert old is original
        assert new.api.rate_limit_max == 99

    def test_failing_subscriber_does_not_block_others(self, manager, config_file):
        manager.load(config_file)
        failing = MagicMock(side_effect=RuntimeError("boom"))
        healthy = MagicMock()
        manager.subscribe(failing)
        manager.subscribe(healthy)

        _write_config(config_file, _make_config())
        manager._on_file_changed(None)
        healthy.assert_called_once()

    def test_unsubscribe(self, manager, config_file):
        manager.load(config_file)
        callback = MagicMock()
        manager.subscribe(callback)
        manager.unsubscribe(callback)
        manager.unsubscribe(callback)

        manager._on_file_changed(None)
        callback.assert_not_called()

    def test_watch_without_load_is_noop(self, manager):
        manager.watch()
        manager.stop_watch()

    def test_watch_and_stop(self, manager, config_file):
        manager.load(config_file)
        manager.watch()
        manager.watch()
        manager.stop_watch()

    def test_file_replaced_by_rename_triggers_reload(self, manager, config_file):
        manager.load(config_file)
        callback = MagicMock()
        manager.subscribe(callback)
        handler = _ConfigFileHandler(manager, config_file.name)

        updated = _make_config()
        updated["api"]["rate_limit_max"] = 7
        _write_config(config_file, updated)
        handler.on_modified(SimpleNamespace(is_directory=False, src_path=str(config_file.parent / "other.yaml")))
        callback.assert_not_called()

        handler.on_moved(
            SimpleNamespace(is_directory=False, src_path=f"{config_file}.tmp", dest_path=str(config_file))
        )
        callback.assert_called_once()
        assert manager.get("api.rate_limit_max") == 7
