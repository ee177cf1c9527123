from __future__ import annotations

from dataclasses import asdict, dataclass, field, replace
import logging
import os
from pathlib import Path
from typing import Any, Callable, cast

import yaml

from .io_utils import atomic_write_text, read_text_safe
from .path_utils import ensure_under_root, resolve_data_path, resolve_log_path

MAX_LOG_FILES = 5

CURRENT_CONFIG_VERSION = 1

DEFAULT_AUTO_PUSH_TIME = "08:00"
DEFAULT_PUSH_ENDPOINT = "https://www.pushplus.plus/send"

LOGGER = logging.getLogger(__name__)

_CONFIG_MIGRATIONS: dict[int, Callable[[dict[str, Any]], dict[str, Any]]] = {}

_DEFAULT_CONFIG_VALUES: dict[str, Any] = {
    "flag_store_file": "flags.json",
    "flag_store_persist_across_restarts": False,
    "status_file": "logs/status.json",
    "log_file": "logs/loginpush.log",
    "log_level": "INFO",
    "log_console_level": "WARNING",
    "log_console_enabled": True,
    "log_max_bytes": 5_000_000,
    "log_backup_count": 3,
    "log_run_files_keep": 3,
    "config_version": CURRENT_CONFIG_VERSION,
}

_DEFAULT_PUSH_VALUES: dict[str, Any] = {
    "token": "",
    "enabled": False,
    "endpoint": DEFAULT_PUSH_ENDPOINT,
    "auto_push_time": DEFAULT_AUTO_PUSH_TIME,
    "daily_push_enabled": False,
}

_DEFAULT_SCHEDULE_VALUES: dict[str, Any] = {
    "max_short_term_push": 5,
    "short_term_interval_seconds": 600,
    "first_launch_push": True,
    "capture_settle_seconds": 3,
}

_DEFAULT_BROWSER_VALUES: dict[str, Any] = {
    "login_url_marker": "login",
    "login_cookie_name": "token",
    "user_data_dir": "browser",
    "headless": False,
    "qr_selector": "",
    "login_poll_seconds": 5,
    "navigation_timeout_seconds": 60,
}


def parse_time_of_day(value: str | None) -> tuple[int, int]:
    """Parse ``HH:MM``; anything unusable falls back to the default time."""
    text = str(value or "").strip()
    hour_text, sep, minute_text = text.partition(":")
    try:
        if not sep:
            raise ValueError(text)
        hour = int(hour_text)
        minute = int(minute_text)
    except ValueError:
        hour, minute = -1, -1
    if 0 <= hour <= 23 and 0 <= minute <= 59:
        return hour, minute
    LOGGER.warning(
        "Invalid auto_push_time %r; using %s",
        value,
        DEFAULT_AUTO_PUSH_TIME,
        extra={"category": "config"},
    )
    default_hour, default_minute = DEFAULT_AUTO_PUSH_TIME.split(":")
    return int(default_hour), int(default_minute)


@dataclass(frozen=True)
class PushSettings:
    token: str = ""
    enabled: bool = False
    endpoint: str = DEFAULT_PUSH_ENDPOINT
    auto_push_time: str = DEFAULT_AUTO_PUSH_TIME
    daily_push_enabled: bool = False

    @property
    def can_push(self) -> bool:
        return self.enabled and bool(self.token.strip())

    def time_of_day(self) -> tuple[int, int]:
        return parse_time_of_day(self.auto_push_time)


@dataclass(frozen=True)
class ScheduleConfig:
    max_short_term_push: int = 5
    short_term_interval_seconds: int = 600
    first_launch_push: bool = True
    capture_settle_seconds: float = 3.0


@dataclass(frozen=True)
class BrowserConfig:
    login_url: str
    login_url_marker: str = "login"
    login_cookie_name: str = "token"
    user_data_dir: str = "browser"
    headless: bool = False
    qr_selector: str = ""
    login_poll_seconds: int = 5
    navigation_timeout_seconds: int = 60


@dataclass(frozen=True)
class AppConfig:
    browser: BrowserConfig
    push: PushSettings = field(default_factory=PushSettings)
    schedule: ScheduleConfig = field(default_factory=ScheduleConfig)
    flag_store_file: str = "flags.json"
    flag_store_persist_across_restarts: bool = False
    status_file: str = "logs/status.json"
    log_file: str = "logs/loginpush.log"
    log_level: str = "INFO"
    log_console_level: str = "WARNING"
    log_console_enabled: bool = True
    log_max_bytes: int = 5_000_000
    log_backup_count: int = 3
    log_run_files_keep: int = 3
    config_version: int = CURRENT_CONFIG_VERSION


class SettingsStore:
    """Current push settings, replaced as a whole when the user saves."""

    def __init__(self, settings: PushSettings) -> None:
        self._settings = settings

    def get(self) -> PushSettings:
        return self._settings

    def update(self, settings: PushSettings) -> None:
        self._settings = settings


def _get_data_root_override() -> Path | None:
    override = os.environ.get("LOGINPUSH_DATA_DIR")
    if override:
        return Path(override)
    return None


def _get_default_user_data_dir() -> Path:
    local_appdata = os.environ.get("LOCALAPPDATA")
    if local_appdata:
        return Path(local_appdata) / "LoginPush"
    xdg_data = os.environ.get("XDG_DATA_HOME")
    if xdg_data:
        return Path(xdg_data) / "loginpush"
    return Path.home() / ".local" / "share" / "loginpush"


def get_user_data_dir() -> Path:
    override = _get_data_root_override()
    if override is not None:
        return override
    return _get_default_user_data_dir()


def get_user_log_dir() -> Path:
    return get_user_data_dir() / "logs"


def get_project_root() -> Path:
    override = os.environ.get("LOGINPUSH_ROOT")
    if override:
        return Path(override)
    return Path(__file__).resolve().parents[2]


def get_default_config_path() -> Path:
    return get_user_data_dir() / "config.local.yaml"


def _migrate_config_data(data: dict[str, Any]) -> dict[str, Any]:
    version_raw = data.get("config_version", CURRENT_CONFIG_VERSION)
    try:
        version = int(version_raw)
    except (TypeError, ValueError) as exc:
        raise ValueError("config_version must be an integer") from exc
    if version > CURRENT_CONFIG_VERSION:
        raise ValueError(
            "config_version is newer than supported: "
            f"{version} > {CURRENT_CONFIG_VERSION}"
        )
    if version < 1:
        raise ValueError("config_version must be >= 1")
    migrated = dict(data)
    while version < CURRENT_CONFIG_VERSION:
        migrate = _CONFIG_MIGRATIONS.get(version)
        if migrate is None:
            raise ValueError(f"Unsupported config_version {version}: no migration available")
        migrated = migrate(migrated)
        version = int(migrated.get("config_version", version + 1))
    migrated["config_version"] = CURRENT_CONFIG_VERSION
    return migrated


def _with_defaults(section: str, data: dict[str, Any], defaults: dict[str, Any]) -> dict[str, Any]:
    missing = sorted(key for key in defaults if key not in data)
    if missing:
        LOGGER.warning(
            "Applied defaults for missing %s keys: %s",
            section,
            ", ".join(missing),
            extra={"category": "config"},
        )
    merged = dict(defaults)
    merged.update(data)
    return merged


def _get_required(data: dict[str, Any], key: str) -> Any:
    if key not in data:
        raise ValueError(f"Missing required config key: {key}")
    return data[key]


def _get_section(data: dict[str, Any], key: str, *, required: bool = False) -> dict[str, Any]:
    raw = data.get(key)
    if raw is None:
        if required:
            raise ValueError(f"Missing required config section: {key}")
        return {}
    if not isinstance(raw, dict):
        raise ValueError(f"{key} must be a mapping")
    return cast(dict[str, Any], raw)


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def _load_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")
    raw: object = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    if not isinstance(raw, dict):
        raise ValueError("Config must be a mapping")
    return cast(dict[str, Any], raw)


def _build_push_settings(push_data: dict[str, Any]) -> PushSettings:
    data = _with_defaults("push", push_data, _DEFAULT_PUSH_VALUES)
    token = str(data.get("token") or "").strip()
    env_token = os.environ.get("LOGINPUSH_PUSH_TOKEN")
    if env_token:
        token = env_token.strip()
    auto_push_time = str(data.get("auto_push_time") or DEFAULT_AUTO_PUSH_TIME).strip()
    hour, minute = parse_time_of_day(auto_push_time)
    return PushSettings(
        token=token,
        enabled=_as_bool(data.get("enabled")),
        endpoint=str(data.get("endpoint") or DEFAULT_PUSH_ENDPOINT).strip(),
        auto_push_time=f"{hour:02d}:{minute:02d}",
        daily_push_enabled=_as_bool(data.get("daily_push_enabled")),
    )


def _build_schedule_config(schedule_data: dict[str, Any]) -> ScheduleConfig:
    data = _with_defaults("schedule", schedule_data, _DEFAULT_SCHEDULE_VALUES)
    return ScheduleConfig(
        max_short_term_push=int(data["max_short_term_push"]),
        short_term_interval_seconds=int(data["short_term_interval_seconds"]),
        first_launch_push=_as_bool(data["first_launch_push"]),
        capture_settle_seconds=float(data["capture_settle_seconds"]),
    )


def _build_browser_config(browser_data: dict[str, Any]) -> BrowserConfig:
    data = _with_defaults("browser", browser_data, _DEFAULT_BROWSER_VALUES)
    return BrowserConfig(
        login_url=str(_get_required(data, "login_url")).strip(),
        login_url_marker=str(data["login_url_marker"]),
        login_cookie_name=str(data["login_cookie_name"]),
        user_data_dir=str(data["user_data_dir"]),
        headless=_as_bool(data["headless"]),
        qr_selector=str(data["qr_selector"] or ""),
        login_poll_seconds=int(data["login_poll_seconds"]),
        navigation_timeout_seconds=int(data["navigation_timeout_seconds"]),
    )


def _build_config(raw: dict[str, Any]) -> AppConfig:
    data = _migrate_config_data(raw)
    top_level = {
        key: value for key, value in data.items() if key not in {"push", "schedule", "browser"}
    }
    top_level = _with_defaults("top-level", top_level, _DEFAULT_CONFIG_VALUES)

    log_backup_count = int(top_level["log_backup_count"])
    log_run_files_keep = int(top_level["log_run_files_keep"])
    if log_backup_count > MAX_LOG_FILES:
        LOGGER.warning(
            "log_backup_count capped at %s (requested %s)",
            MAX_LOG_FILES,
            log_backup_count,
            extra={"category": "config"},
        )
        log_backup_count = MAX_LOG_FILES
    if log_run_files_keep > MAX_LOG_FILES:
        LOGGER.warning(
            "log_run_files_keep capped at %s (requested %s)",
            MAX_LOG_FILES,
            log_run_files_keep,
            extra={"category": "config"},
        )
        log_run_files_keep = MAX_LOG_FILES

    config = AppConfig(
        browser=_build_browser_config(_get_section(data, "browser", required=True)),
        push=_build_push_settings(_get_section(data, "push")),
        schedule=_build_schedule_config(_get_section(data, "schedule")),
        flag_store_file=str(top_level["flag_store_file"]),
        flag_store_persist_across_restarts=_as_bool(
            top_level["flag_store_persist_across_restarts"]
        ),
        status_file=str(top_level["status_file"]),
        log_file=str(top_level["log_file"]),
        log_level=str(top_level["log_level"]),
        log_console_level=str(top_level["log_console_level"]),
        log_console_enabled=_as_bool(top_level["log_console_enabled"]),
        log_max_bytes=int(top_level["log_max_bytes"]),
        log_backup_count=log_backup_count,
        log_run_files_keep=log_run_files_keep,
        config_version=int(top_level["config_version"]),
    )
    config = _apply_path_policy(config)
    _validate_config(config)
    return config


def _apply_path_policy(config: AppConfig) -> AppConfig:
    base = get_user_data_dir()
    log_root = get_user_log_dir()
    return replace(
        config,
        flag_store_file=resolve_data_path(base, config.flag_store_file),
        status_file=resolve_log_path(base, log_root, config.status_file),
        log_file=resolve_log_path(base, log_root, config.log_file),
        browser=replace(
            config.browser,
            user_data_dir=resolve_data_path(base, config.browser.user_data_dir),
        ),
    )


def _is_valid_log_level(level: str) -> bool:
    return str(level).upper() in logging.getLevelNamesMapping()


def _validate_config(config: AppConfig) -> None:
    log_root = get_user_log_dir()

    if not config.browser.login_url:
        raise ValueError("browser.login_url is required")
    if not config.browser.login_url_marker:
        raise ValueError("browser.login_url_marker is required")
    if not config.browser.login_cookie_name:
        raise ValueError("browser.login_cookie_name is required")
    if config.browser.login_poll_seconds < 1:
        raise ValueError("browser.login_poll_seconds must be >= 1")
    if config.browser.navigation_timeout_seconds < 1:
        raise ValueError("browser.navigation_timeout_seconds must be >= 1")
    if config.schedule.max_short_term_push < 1:
        raise ValueError("schedule.max_short_term_push must be >= 1")
    if config.schedule.short_term_interval_seconds < 1:
        raise ValueError("schedule.short_term_interval_seconds must be >= 1")
    if config.schedule.capture_settle_seconds < 0:
        raise ValueError("schedule.capture_settle_seconds must be >= 0")
    if not config.flag_store_file:
        raise ValueError("flag_store_file is required")
    if not config.log_file:
        raise ValueError("log_file is required")
    if config.log_max_bytes < 1024:
        raise ValueError("log_max_bytes must be >= 1024")
    if config.log_backup_count < 0:
        raise ValueError("log_backup_count must be >= 0")
    if config.log_run_files_keep < 1:
        raise ValueError("log_run_files_keep must be >= 1")
    if not _is_valid_log_level(config.log_level):
        raise ValueError("log_level must be a valid logging level")
    if not _is_valid_log_level(config.log_console_level):
        raise ValueError("log_console_level must be a valid logging level")
    ensure_under_root(log_root, config.log_file, "log_file")
    ensure_under_root(log_root, config.status_file, "status_file")
    if config.push.endpoint and not config.push.endpoint.startswith(("http://", "https://")):
        raise ValueError("push.endpoint must be an http(s) URL")


def load_config(path: str) -> AppConfig:
    data = _load_yaml(Path(path))
    return _build_config(data)


def save_settings(path: str, settings: PushSettings) -> None:
    """Write the ``push`` section back, leaving the rest of the file untouched."""
    config_path = Path(path)
    text = read_text_safe(config_path, context="config")
    raw: object = yaml.safe_load(text) if text.strip() else {}
    if not isinstance(raw, dict):
        raise ValueError("Config must be a mapping")
    data = cast(dict[str, Any], raw)
    data["push"] = asdict(settings)
    atomic_write_text(
        config_path,
        yaml.safe_dump(data, sort_keys=False, allow_unicode=True),
        encoding="utf-8",
    )
    LOGGER.info("Push settings saved", extra={"category": "config"})
