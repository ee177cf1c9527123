from __future__ import annotations

import json
import os
from pathlib import Path

from loginpush.config import PushSettings, SettingsStore
from loginpush.control import (
    COMMAND_PUSH_NOW,
    COMMAND_RELOAD_SETTINGS,
    ControlPoller,
    drain_commands,
    get_command_queue_path,
    write_command,
)

SETTINGS = PushSettings(token="tok", enabled=True, daily_push_enabled=True)
CONFIG_TEXT = (
    "browser:\n"
    "  login_url: \"https://portal.example.com/#/login\"\n"
    "push:\n"
    "  token: \"tok\"\n"
    "  enabled: true\n"
    "  auto_push_time: \"{time}\"\n"
    "  daily_push_enabled: true\n"
)


class _Controller:
    def __init__(self) -> None:
        self.pushes = 0
        self.saved: list[PushSettings] = []

    def push_now(self) -> bool:
        self.pushes += 1
        return True

    def on_save(self, settings: PushSettings) -> None:
        self.saved.append(settings)


class _Runtime:
    def __init__(self) -> None:
        self.controller = _Controller()


def _touch(path: Path) -> None:
    stat = path.stat()
    os.utime(path, ns=(stat.st_atime_ns, stat.st_mtime_ns + 1_000_000_000))


def test_queue_defaults_to_user_data_dir() -> None:
    write_command(COMMAND_PUSH_NOW)
    assert get_command_queue_path().exists()
    assert [command.command for command in drain_commands()] == [COMMAND_PUSH_NOW]


def test_drain_skips_malformed_lines(tmp_path: Path) -> None:
    queue = tmp_path / "commands.jsonl"
    write_command(COMMAND_PUSH_NOW, path=queue)
    with queue.open("a", encoding="utf-8") as handle:
        handle.write("not json\n")
        handle.write(json.dumps(["list"]) + "\n")
        handle.write(json.dumps({"command": "  "}) + "\n")
        handle.write(json.dumps({"command": "reload_settings", "payload": "x", "timestamp": "y"}) + "\n")

    commands = drain_commands(queue)

    assert [command.command for command in commands] == [COMMAND_PUSH_NOW, COMMAND_RELOAD_SETTINGS]
    assert commands[1].payload == {}
    assert isinstance(commands[1].timestamp, float)
    assert drain_commands(queue) == []


def test_drain_missing_queue(tmp_path: Path) -> None:
    assert drain_commands(tmp_path / "missing.jsonl") == []


def test_commands_queued_before_start_are_discarded(tmp_path: Path) -> None:
    queue = tmp_path / "commands.jsonl"
    write_command(COMMAND_PUSH_NOW, path=queue)
    runtime = _Runtime()

    poller = ControlPoller(SettingsStore(SETTINGS), queue_path=queue)
    poller.poll(runtime)

    assert runtime.controller.pushes == 0


def test_push_now_command_calls_controller(tmp_path: Path) -> None:
    queue = tmp_path / "commands.jsonl"
    poller = ControlPoller(SettingsStore(SETTINGS), queue_path=queue)
    runtime = _Runtime()

    write_command(COMMAND_PUSH_NOW, path=queue)
    write_command("unknown", path=queue)
    poller.poll(runtime)
    poller.poll(runtime)

    assert runtime.controller.pushes == 1


def test_config_edit_goes_through_controller(tmp_path: Path) -> None:
    config_path = tmp_path / "config.local.yaml"
    config_path.write_text(CONFIG_TEXT.format(time="08:00"), encoding="utf-8")
    settings = SettingsStore(SETTINGS)
    poller = ControlPoller(
        settings, config_path=config_path, queue_path=tmp_path / "commands.jsonl"
    )
    runtime = _Runtime()

    poller.poll(runtime)
    assert runtime.controller.saved == []

    config_path.write_text(CONFIG_TEXT.format(time="18:30"), encoding="utf-8")
    _touch(config_path)
    poller.poll(runtime)
    poller.poll(runtime)

    assert [saved.auto_push_time for saved in runtime.controller.saved] == ["18:30"]


def test_config_edit_without_runtime_updates_store(tmp_path: Path) -> None:
    config_path = tmp_path / "config.local.yaml"
    config_path.write_text(CONFIG_TEXT.format(time="08:00"), encoding="utf-8")
    settings = SettingsStore(SETTINGS)
    queue = tmp_path / "commands.jsonl"
    poller = ControlPoller(settings, config_path=config_path, queue_path=queue)

    config_path.write_text(CONFIG_TEXT.format(time="06:15"), encoding="utf-8")
    write_command(COMMAND_RELOAD_SETTINGS, path=queue)
    poller.poll(None)

    assert settings.get().auto_push_time == "06:15"


def test_broken_config_keeps_current_settings(tmp_path: Path) -> None:
    config_path = tmp_path / "config.local.yaml"
    config_path.write_text(CONFIG_TEXT.format(time="08:00"), encoding="utf-8")
    settings = SettingsStore(SETTINGS)
    poller = ControlPoller(
        settings, config_path=config_path, queue_path=tmp_path / "commands.jsonl"
    )
    runtime = _Runtime()

    config_path.write_text("push: [unclosed\n", encoding="utf-8")
    _touch(config_path)
    poller.poll(runtime)

    assert runtime.controller.saved == []
    assert settings.get() == SETTINGS
