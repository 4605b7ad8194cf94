"""
Settings for the commons server.

Each concern (network, data directory, logging, every service and the
snapshot writer) has its own dataclass section. Values are layered, later
layers winning:

    defaults  <  config/server.example.ini  <  config/server.ini  <  COMMONS_* env

The example file is only read when no server.ini exists. The merged result is
built once at import and exposed as the module-level ``config``; the
composition root copies what each service needs at construction time.

Usage:
    from commons_server.config import config

    print(config.server.port)
    print(config.chat.rate_limit_count)
    print(config.data.absolute_dir)

Environment Variable Mapping:
    COMMONS_HOST        -> server.host
    COMMONS_PORT        -> server.port
    COMMONS_DATA_DIR    -> data.dir
    COMMONS_LOG_LEVEL   -> logging.level
    COMMONS_LOG_FORMAT  -> logging.format
    COMMONS_CORS_ORIGINS -> security.cors_origins
    COMMONS_ADMIN_TOKEN -> security.admin_token
"""

import configparser
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

# =============================================================================
# PATH CONFIGURATION
# =============================================================================

# Project root directory (contains src/, config/, data/)
PROJECT_ROOT = Path(__file__).parent.parent.parent

CONFIG_DIR = PROJECT_ROOT / "config"
CONFIG_FILE = CONFIG_DIR / "server.ini"
CONFIG_EXAMPLE = CONFIG_DIR / "server.example.ini"


# =============================================================================
# CONFIGURATION DATACLASSES
# =============================================================================


@dataclass
class ServerSettings:
    """Network server configuration."""

    host: str = "0.0.0.0"  # nosec B104 - intentional for server binding
    port: int = 8000


@dataclass
class DataSettings:
    """Location of the JSON snapshot files."""

    dir: str = "data"

    @property
    def absolute_dir(self) -> Path:
        """Get absolute path to the data directory."""
        p = Path(self.dir)
        if p.is_absolute():
            return p
        return PROJECT_ROOT / p


@dataclass
class SecuritySettings:
    """
    Browser access and the shared token for session management.

    An empty ``admin_token`` disables the session routes.
    """

    cors_origins: list[str] = field(default_factory=lambda: ["http://localhost:3000"])
    cors_allow_credentials: bool = True
    cors_allow_methods: list[str] = field(default_factory=lambda: ["*"])
    cors_allow_headers: list[str] = field(default_factory=lambda: ["*"])
    admin_token: str = ""


@dataclass
class LoggingSettings:
    """Logging configuration."""

    level: str = "INFO"
    format: Literal["simple", "detailed", "json"] = "detailed"


@dataclass
class ChatSettings:
    """Chat channel limits."""

    rate_limit_count: int = 10
    rate_limit_window_ms: int = 10_000
    history_limit: int = 500
    max_length: int = 500


@dataclass
class DirectMessageSettings:
    """Direct message limits."""

    rate_limit_count: int = 10
    rate_limit_window_ms: int = 10_000
    history_limit: int = 200
    max_length: int = 1000


@dataclass
class MailSettings:
    """Mail limits and retention."""

    rate_limit_count: int = 5
    rate_limit_window_ms: int = 60_000
    inbox_limit: int = 200
    sent_limit: int = 100
    retention_days: int = 30
    reap_interval_seconds: int = 3600


@dataclass
class ForumSettings:
    """Forum limits."""

    rate_limit_count: int = 5
    rate_limit_window_ms: int = 60_000
    topics_per_page: int = 20
    replies_per_page: int = 50
    view_dedupe_seconds: int = 60


@dataclass
class TradeSettings:
    """Trade coordinator timing and history."""

    stale_timeout_minutes: int = 30
    reaper_interval_seconds: int = 60
    history_limit: int = 1000


@dataclass
class MonitorSettings:
    """Performance monitor sampling and health thresholds."""

    sample_interval_seconds: int = 60
    history_size: int = 60
    ema_alpha: float = 0.1
    max_heap_percent: float = 90.0
    max_request_ms: float = 1000.0
    max_websocket_ms: float = 100.0
    min_cache_hit_percent: float = 50.0
    min_cache_samples: int = 100


@dataclass
class PersistenceSettings:
    """Snapshot writer behaviour."""

    debounce_ms: int = 1000
    max_wait_ms: int = 10_000
    flush_interval_ms: int = 500


@dataclass
class ServerConfig:
    """
    Complete server configuration.

    This is the main configuration object that aggregates all settings sections.
    Access via the module-level `config` singleton.
    """

    server: ServerSettings = field(default_factory=ServerSettings)
    data: DataSettings = field(default_factory=DataSettings)
    security: SecuritySettings = field(default_factory=SecuritySettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)
    chat: ChatSettings = field(default_factory=ChatSettings)
    dm: DirectMessageSettings = field(default_factory=DirectMessageSettings)
    mail: MailSettings = field(default_factory=MailSettings)
    forum: ForumSettings = field(default_factory=ForumSettings)
    trade: TradeSettings = field(default_factory=TradeSettings)
    monitor: MonitorSettings = field(default_factory=MonitorSettings)
    persistence: PersistenceSettings = field(default_factory=PersistenceSettings)


# =============================================================================
# CONFIGURATION LOADING
# =============================================================================


def _parse_bool(value: str) -> bool:
    """Parse a string value to boolean."""
    return value.lower() in ("true", "yes", "1", "on", "enabled")


def _parse_list(value: str) -> list[str]:
    """Parse a comma-separated string to list, stripping whitespace."""
    return [item.strip() for item in value.split(",") if item.strip()]


# Sections loaded field by field: every option name matches a dataclass
# field, and the field's current type decides the parser.
_TYPED_SECTIONS = (
    "server",
    "data",
    "security",
    "chat",
    "dm",
    "mail",
    "forum",
    "trade",
    "monitor",
    "persistence",
)
_LOG_FORMATS = ("simple", "detailed", "json")


def _load_section(parser: configparser.ConfigParser, name: str, target: object) -> None:
    """Copy options of one INI section onto a settings dataclass."""
    if not parser.has_section(name):
        return
    for option in parser.options(name):
        if not hasattr(target, option):
            continue
        current = getattr(target, option)
        if isinstance(current, bool):
            setattr(target, option, _parse_bool(parser.get(name, option)))
        elif isinstance(current, list):
            setattr(target, option, _parse_list(parser.get(name, option)))
        elif isinstance(current, int):
            setattr(target, option, parser.getint(name, option))
        elif isinstance(current, float):
            setattr(target, option, parser.getfloat(name, option))
        else:
            setattr(target, option, parser.get(name, option))


def _set_logging(cfg: ServerConfig, level: str | None, fmt: str | None) -> None:
    if level:
        cfg.logging.level = level.upper()
    if fmt and fmt.lower() in _LOG_FORMATS:
        cfg.logging.format = fmt.lower()  # type: ignore[assignment]


def _load_from_ini(parser: configparser.ConfigParser, cfg: ServerConfig) -> None:
    """Apply every known INI section to ``cfg``. Unknown options are ignored."""
    for name in _TYPED_SECTIONS:
        _load_section(parser, name, getattr(cfg, name))
    if parser.has_section("logging"):
        _set_logging(
            cfg,
            parser.get("logging", "level", fallback=None),
            parser.get("logging", "format", fallback=None),
        )


def _apply_env_overrides(cfg: ServerConfig) -> None:
    if env_host := os.getenv("COMMONS_HOST"):
        cfg.server.host = env_host
    if env_port := os.getenv("COMMONS_PORT"):
        cfg.server.port = int(env_port)
    if env_data := os.getenv("COMMONS_DATA_DIR"):
        cfg.data.dir = env_data
    if env_cors := os.getenv("COMMONS_CORS_ORIGINS"):
        cfg.security.cors_origins = _parse_list(env_cors)
    if env_token := os.getenv("COMMONS_ADMIN_TOKEN"):
        cfg.security.admin_token = env_token
    _set_logging(cfg, os.getenv("COMMONS_LOG_LEVEL"), os.getenv("COMMONS_LOG_FORMAT"))


def load_config() -> ServerConfig:
    """
    Build a fresh :class:`ServerConfig` from defaults, INI file and environment.

    Returns:
        ServerConfig: Fully populated configuration object.
    """
    cfg = ServerConfig()

    source = next((path for path in (CONFIG_FILE, CONFIG_EXAMPLE) if path.exists()), None)
    if source is not None:
        parser = configparser.ConfigParser()
        parser.read(source)
        _load_from_ini(parser, cfg)

    _apply_env_overrides(cfg)
    return cfg


def reload_config() -> "ServerConfig":
    """
    Reload configuration from disk and environment.

    This updates the module-level `config` singleton. Services that were
    already built keep the settings they were constructed with.

    Returns:
        ServerConfig: The newly loaded configuration.
    """
    global config
    config = load_config()
    return config


# =============================================================================
# MODULE-LEVEL SINGLETON
# =============================================================================

config = load_config()


# =============================================================================
# UTILITY FUNCTIONS
# =============================================================================


def get_config_status() -> dict:
    """
    Get configuration status for diagnostics.

    Returns a dictionary with configuration source information,
    useful for debugging and the CLI ``config`` command.
    """
    return {
        "config_file_exists": CONFIG_FILE.exists(),
        "config_file_path": str(CONFIG_FILE),
        "using_example": not CONFIG_FILE.exists() and CONFIG_EXAMPLE.exists(),
        "data_dir": str(config.data.absolute_dir),
        "log_level": config.logging.level,
    }


def print_config_summary() -> None:
    """Print a summary of current configuration to stdout."""
    status = get_config_status()
    print("\n" + "=" * 60)
    print("SERVER CONFIGURATION")
    print("=" * 60)
    print(f"Config file: {status['config_file_path']}")
    print(f"File exists: {status['config_file_exists']}")
    if status["using_example"]:
        print("WARNING: Using example config (copy to server.ini for production)")
    print("-" * 60)
    print(f"Server:      {config.server.host}:{config.server.port}")
    print(f"Data dir:    {status['data_dir']}")
    print(f"CORS origins: {config.security.cors_origins}")
    print(f"Sessions API: {'enabled' if config.security.admin_token else 'disabled'}")
    print(f"Log level:   {config.logging.level} ({config.logging.format})")
    print(
        f"Chat limit:  {config.chat.rate_limit_count} msgs / "
        f"{config.chat.rate_limit_window_ms} ms"
    )
    print(f"Trade stale: {config.trade.stale_timeout_minutes} min")
    print("=" * 60 + "\n")


# =============================================================================
# TEST HELPERS
# =============================================================================


class use_data_dir:
    """
    Context manager for pointing snapshot persistence at a temporary directory.

    Usage:
        from commons_server.config import use_data_dir

        def test_something(tmp_path):
            with use_data_dir(tmp_path / "data"):
                services = build_services()

    Args:
        data_dir: Path to the temporary data directory
    """

    def __init__(self, data_dir: Path | str):
        self.data_dir = Path(data_dir)
        self.original_dir: str | None = None

    def __enter__(self) -> Path:
        """Set up the temporary data directory."""
        self.original_dir = config.data.dir
        config.data.dir = str(self.data_dir)
        return self.data_dir

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        """Restore original data directory."""
        if self.original_dir is not None:
            config.data.dir = self.original_dir
        return None
