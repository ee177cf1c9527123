from __future__ import annotations

import logging
import sys
from pathlib import Path

import yaml

from .app import run
from .config import (
    AppConfig,
    get_project_root,
    get_user_data_dir,
    get_user_log_dir,
    load_config,
)
from .io_utils import atomic_write_text
from .logging_setup import setup_logging
from . import __release_date__, __version_label__

LOGGER = logging.getLogger(__name__)


def read_template_config_text(project_root: Path | None = None) -> str | None:
    root = project_root or get_project_root()
    template_path = root / "templates" / "local" / "config.local.yaml"
    try:
        if template_path.exists():
            return template_path.read_text(encoding="utf-8")
    except OSError as exc:
        LOGGER.warning("Failed to read config template: %s", exc, extra={"category": "config"})
    return None


def ensure_local_config_from_template(path: Path, *, template_text: str | None) -> bool:
    if path.exists() or template_text is None:
        return False
    atomic_write_text(path, template_text, encoding="utf-8")
    LOGGER.info("Local config created from template: %s", path, extra={"category": "config"})
    return True


def _ensure_local_override(path: Path) -> None:
    if not path.exists():
        raise SystemExit(
            "Local configuration not found.\n"
            f"Expected file: {path}\n"
            "Create it from templates/local/config.local.yaml, "
            "fill the required fields, and run again."
        )
    content = path.read_text(encoding="utf-8").strip()
    if not content:
        raise SystemExit(
            "Local configuration is empty.\n"
            f"File: {path}\n"
            "Fill the required fields, save, and run again."
        )


def _reject_extra_args(args: list[str]) -> None:
    if not args:
        return
    raise SystemExit(
        "Usage: run LoginPush without arguments.\n"
        f"Arguments received: {' '.join(args)}"
    )


def _setup_boot_logging() -> None:
    if logging.getLogger().handlers:
        return
    log_root = get_user_log_dir()
    log_root.mkdir(parents=True, exist_ok=True)
    setup_logging(
        str(log_root / "loginpush_boot.log"),
        log_level="INFO",
        log_console_level="INFO",
        log_console_enabled=True,
        log_max_bytes=1_000_000,
        log_backup_count=3,
        log_run_files_keep=3,
        app_version=__version_label__,
        release_date=__release_date__,
        commit_hash="",
    )


def _setup_run_logging(config: AppConfig) -> None:
    setup_logging(
        config.log_file,
        log_level=config.log_level,
        log_console_level=config.log_console_level,
        log_console_enabled=config.log_console_enabled,
        log_max_bytes=config.log_max_bytes,
        log_backup_count=config.log_backup_count,
        log_run_files_keep=config.log_run_files_keep,
        app_version=__version_label__,
        release_date=__release_date__,
        commit_hash="",
    )


def main() -> int:
    _setup_boot_logging()
    _reject_extra_args([arg for arg in sys.argv[1:] if arg])

    local_path = get_user_data_dir() / "config.local.yaml"
    local_path.parent.mkdir(parents=True, exist_ok=True)
    template_text = read_template_config_text()
    if template_text is None:
        LOGGER.warning("Config template not found", extra={"category": "startup"})
    ensure_local_config_from_template(local_path, template_text=template_text)
    _ensure_local_override(local_path)
    try:
        config = load_config(str(local_path))
    except (OSError, ValueError, yaml.YAMLError) as exc:
        LOGGER.error("Config error: %s", exc, extra={"category": "config"})
        raise SystemExit(
            "Configuration error.\n\n"
            f"Config file: {local_path}\n"
            f"Details: {exc}\n\n"
            "Review the YAML formatting and required fields, then run again."
        ) from exc

    _setup_run_logging(config)
    run(config, config_path=local_path)
    return 0
