"""Tests for commons_server.config loading and overrides."""

import configparser

import pytest

from commons_server import config as config_module
from commons_server.config import (
    PROJECT_ROOT,
    ServerConfig,
    _load_from_ini,
    get_config_status,
    load_config,
    print_config_summary,
    reload_config,
    use_data_dir,
)


@pytest.mark.unit
def test_defaults():
    cfg = ServerConfig()

    assert cfg.server.port == 8000
    assert cfg.chat.rate_limit_count == 10
    assert cfg.chat.history_limit == 500
    assert cfg.dm.history_limit == 200
    assert cfg.mail.retention_days == 30
    assert cfg.forum.view_dedupe_seconds == 60
    assert cfg.trade.stale_timeout_minutes == 30
    assert cfg.monitor.ema_alpha == 0.1
    assert cfg.persistence.debounce_ms == 1000
    assert cfg.persistence.max_wait_ms == 10_000
    assert cfg.security.admin_token == ""


@pytest.mark.unit
def test_server_env_overrides(monkeypatch):
    monkeypatch.setenv("COMMONS_HOST", "127.0.0.1")
    monkeypatch.setenv("COMMONS_PORT", "9001")
    monkeypatch.setenv("COMMONS_LOG_LEVEL", "debug")
    monkeypatch.setenv("COMMONS_LOG_FORMAT", "JSON")

    cfg = load_config()

    assert cfg.server.host == "127.0.0.1"
    assert cfg.server.port == 9001
    assert cfg.logging.level == "DEBUG"
    assert cfg.logging.format == "json"


@pytest.mark.unit
def test_unknown_log_format_env_ignored(monkeypatch):
    monkeypatch.setenv("COMMONS_LOG_FORMAT", "xml")

    assert load_config().logging.format in ("simple", "detailed", "json")


@pytest.mark.unit
def test_data_dir_env_override(monkeypatch, tmp_path):
    monkeypatch.setenv("COMMONS_DATA_DIR", str(tmp_path))

    cfg = load_config()

    assert cfg.data.absolute_dir == tmp_path


@pytest.mark.unit
def test_relative_data_dir_resolves_against_project_root():
    cfg = ServerConfig()

    assert cfg.data.absolute_dir == PROJECT_ROOT / "data"


@pytest.mark.unit
def test_numeric_sections_from_ini():
    """Every numeric section is loaded generically by field type."""
    parser = configparser.ConfigParser()
    parser.read_dict(
        {
            "chat": {"rate_limit_count": "3", "max_length": "140"},
            "mail": {"retention_days": "7"},
            "monitor": {"ema_alpha": "0.25", "min_cache_samples": "10"},
            "trade": {"stale_timeout_minutes": "5", "not_a_field": "ignored"},
        }
    )

    cfg = ServerConfig()
    _load_from_ini(parser, cfg)

    assert cfg.chat.rate_limit_count == 3
    assert cfg.chat.max_length == 140
    assert cfg.mail.retention_days == 7
    assert cfg.monitor.ema_alpha == 0.25
    assert cfg.monitor.min_cache_samples == 10
    assert cfg.trade.stale_timeout_minutes == 5
    assert not hasattr(cfg.trade, "not_a_field")


@pytest.mark.unit
def test_server_and_logging_from_ini():
    parser = configparser.ConfigParser()
    parser.read_dict(
        {
            "server": {"host": "localhost", "port": "8123"},
            "data": {"dir": "/srv/commons"},
            "logging": {"level": "warning", "format": "simple"},
        }
    )

    cfg = ServerConfig()
    _load_from_ini(parser, cfg)

    assert cfg.server.host == "localhost"
    assert cfg.server.port == 8123
    assert str(cfg.data.absolute_dir) == "/srv/commons"
    assert cfg.logging.level == "WARNING"
    assert cfg.logging.format == "simple"


@pytest.mark.unit
def test_security_from_ini_and_env(monkeypatch):
    parser = configparser.ConfigParser()
    parser.read_dict(
        {
            "security": {
                "cors_origins": "https://a.example, https://b.example",
                "cors_allow_credentials": "false",
                "admin_token": "from-ini",
            }
        }
    )
    cfg = ServerConfig()
    _load_from_ini(parser, cfg)

    assert cfg.security.cors_origins == ["https://a.example", "https://b.example"]
    assert cfg.security.cors_allow_credentials is False
    assert cfg.security.admin_token == "from-ini"

    monkeypatch.setenv("COMMONS_CORS_ORIGINS", "https://c.example")
    monkeypatch.setenv("COMMONS_ADMIN_TOKEN", "from-env")
    env_cfg = load_config()

    assert env_cfg.security.cors_origins == ["https://c.example"]
    assert env_cfg.security.admin_token == "from-env"


@pytest.mark.unit
def test_use_data_dir_restores(tmp_path):
    original = config_module.config.data.dir

    with use_data_dir(tmp_path / "data") as path:
        assert config_module.config.data.absolute_dir == path

    assert config_module.config.data.dir == original


@pytest.mark.unit
def test_reload_config_replaces_singleton(monkeypatch):
    monkeypatch.setattr(config_module, "config", config_module.config)
    monkeypatch.setenv("COMMONS_PORT", "9123")

    cfg = reload_config()

    assert cfg is config_module.config
    assert cfg.server.port == 9123


@pytest.mark.unit
def test_config_status_and_summary(capsys):
    status = get_config_status()
    print_config_summary()

    out = capsys.readouterr().out
    assert "SERVER CONFIGURATION" in out
    assert "Chat limit:" in out
    assert status["config_file_path"].endswith("server.ini")
