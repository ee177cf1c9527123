from __future__ import annotations

import os
import time
from datetime import datetime
from pathlib import Path
from typing import Any

import yaml

from .config import AppConfig, get_user_data_dir, load_config
from .io_utils import read_json_safe
from .status import format_status, snapshot_from_payload

__all__ = ["build_status_display", "load_status_payload", "main", "snapshot_from_payload"]


def load_status_payload(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {"_status_error": "status file not found"}
    data = read_json_safe(path, default=None, context="status export")
    if data is None:
        return {"_status_error": "status file unreadable"}
    if isinstance(data, dict):
        return dict(data)
    return {}


def _format_file_mtime(path: Path) -> str:
    try:
        timestamp = datetime.fromtimestamp(path.stat().st_mtime)
        return timestamp.strftime("%d-%m-%Y - %H:%M:%S")
    except OSError:
        return ""


def build_status_display(
    *,
    config: AppConfig,
    payload: dict[str, Any],
    counter_seconds: int,
    status_path: Path,
) -> str:
    status_text = format_status(
        snapshot_from_payload(payload),
        login_url=config.browser.login_url,
    )
    status_label = str(status_path)
    status_error = payload.get("_status_error", "")
    if status_error:
        status_label = f"{status_label} ({status_error})"
    header = [
        "LoginPush - Status",
        f"Counter (s): {counter_seconds}",
        f"Status file: {status_label}",
        f"Last update: {_format_file_mtime(status_path)}",
        f"Version: {payload.get('app_version', '')}",
        "",
    ]
    footer = [
        "",
        f"status_export_errors: {payload.get('status_export_errors', '')}",
    ]
    return "\n".join(header + status_text.splitlines() + footer)


def clear_screen() -> None:
    if os.name == "nt":
        os.system("cls")
    else:
        os.system("clear")


def main() -> int:
    config_path = get_user_data_dir() / "config.local.yaml"
    try:
        config = load_config(str(config_path))
    except (OSError, ValueError, yaml.YAMLError) as exc:
        print("Failed to load configuration:")
        print(f"  {exc}")
        print(f"  Path: {config_path}")
        return 1

    status_path = Path(config.status_file)
    counter = 0
    try:
        while True:
            payload = load_status_payload(status_path)
            clear_screen()
            print(
                build_status_display(
                    config=config,
                    payload=payload,
                    counter_seconds=counter,
                    status_path=status_path,
                )
            )
            counter += 1
            time.sleep(1)
    except KeyboardInterrupt:
        return 0


if __name__ == "__main__":
    raise SystemExit(main())
