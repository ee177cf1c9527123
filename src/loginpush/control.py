"""Command queue between the CLI and the running host.

The CLI appends JSON lines to a queue file in the user data directory; the
host drains it on every login poll. The host also watches the config file so
push settings saved by any means reach the live controller.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

import yaml

from .config import SettingsStore, get_user_data_dir, load_config

if TYPE_CHECKING:
    from .app import Runtime

LOGGER = logging.getLogger(__name__)

COMMAND_QUEUE_NAME = "cli_commands.jsonl"
COMMAND_PUSH_NOW = "push_now"
COMMAND_RELOAD_SETTINGS = "reload_settings"


@dataclass(frozen=True)
class CliCommand:
    command: str
    payload: dict[str, object]
    timestamp: float


def get_command_queue_path() -> Path:
    return get_user_data_dir() / COMMAND_QUEUE_NAME


def write_command(
    command: str,
    payload: dict[str, object] | None = None,
    *,
    path: Path | None = None,
) -> None:
    entry = CliCommand(command=command, payload=payload or {}, timestamp=time.time())
    path = path or get_command_queue_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a", encoding="utf-8") as handle:
        handle.write(json.dumps(entry.__dict__, ensure_ascii=False) + "\n")


def drain_commands(path: Path | None = None) -> list[CliCommand]:
    path = path or get_command_queue_path()
    if not path.exists():
        return []
    try:
        raw_lines = path.read_text(encoding="utf-8").splitlines()
        path.write_text("", encoding="utf-8")
    except OSError as exc:
        LOGGER.warning("Failed to drain CLI commands: %s", exc, extra={"category": "control"})
        return []

    commands: list[CliCommand] = []
    for line in raw_lines:
        if not line.strip():
            continue
        try:
            data = json.loads(line)
        except json.JSONDecodeError:
            continue
        if not isinstance(data, dict):
            continue
        command = str(data.get("command", "")).strip()
        if not command:
            continue
        payload = data.get("payload")
        if not isinstance(payload, dict):
            payload = {}
        timestamp = data.get("timestamp")
        if not isinstance(timestamp, (int, float)):
            timestamp = time.time()
        commands.append(CliCommand(command=command, payload=payload, timestamp=float(timestamp)))
    return commands


class ControlPoller:
    """Applies queued CLI commands and config edits to the current runtime."""

    def __init__(
        self,
        settings: SettingsStore,
        *,
        config_path: Path | None = None,
        queue_path: Path | None = None,
    ) -> None:
        self._settings = settings
        self._config_path = config_path
        self._queue_path = queue_path or get_command_queue_path()
        self._config_stamp = self._read_config_stamp()
        stale = drain_commands(self._queue_path)
        if stale:
            LOGGER.info(
                "Discarded %s CLI command(s) queued before start",
                len(stale),
                extra={"category": "control"},
            )

    def _read_config_stamp(self) -> tuple[int, int] | None:
        if self._config_path is None:
            return None
        try:
            stat = self._config_path.stat()
        except OSError:
            return None
        return stat.st_mtime_ns, stat.st_size

    def poll(self, runtime: Runtime | None) -> None:
        stamp = self._read_config_stamp()
        if stamp is not None and stamp != self._config_stamp:
            self._config_stamp = stamp
            self.reload_settings(runtime)
        for command in drain_commands(self._queue_path):
            self._apply(command, runtime)

    def reload_settings(self, runtime: Runtime | None) -> None:
        if self._config_path is None:
            return
        try:
            settings = load_config(str(self._config_path)).push
        except (OSError, ValueError, yaml.YAMLError) as exc:
            LOGGER.warning("Config reload failed: %s", exc, extra={"category": "config"})
            return
        if settings == self._settings.get():
            return
        LOGGER.info("Push settings changed; applying", extra={"category": "config"})
        if runtime is None:
            self._settings.update(settings)
            return
        runtime.controller.on_save(settings)

    def _apply(self, command: CliCommand, runtime: Runtime | None) -> None:
        LOGGER.info("CLI command received: %s", command.command, extra={"category": "control"})
        if command.command == COMMAND_RELOAD_SETTINGS:
            self.reload_settings(runtime)
        elif command.command == COMMAND_PUSH_NOW:
            if runtime is None:
                LOGGER.warning(
                    "Manual push ignored: login page is not loaded",
                    extra={"category": "control"},
                )
                return
            runtime.controller.push_now()
        else:
            LOGGER.warning(
                "Unknown CLI command: %s", command.command, extra={"category": "control"}
            )
