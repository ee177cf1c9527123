from __future__ import annotations

import argparse
import cmd
import json
from dataclasses import replace
from pathlib import Path
from typing import Sequence

import yaml

from .config import AppConfig, get_user_data_dir, load_config, parse_time_of_day, save_settings
from .control import COMMAND_PUSH_NOW, COMMAND_RELOAD_SETTINGS, write_command
from .flag_store import JsonFileFlagStore
from .pushplus import PushDeliveryError, PushPlusClient
from .status import format_status
from .status_cli import load_status_payload, snapshot_from_payload


class LoginPushShell(cmd.Cmd):
    intro = "LoginPush CLI. Type 'help' for commands."
    prompt = "loginpush> "

    def __init__(self, config_path: Path, *, client: PushPlusClient | None = None, **kwargs) -> None:
        super().__init__(**kwargs)
        self._config_path = config_path
        self._client = client

    def _load_config(self) -> AppConfig | None:
        try:
            return load_config(str(self._config_path))
        except (OSError, ValueError, yaml.YAMLError) as exc:
            self.stdout.write(f"Failed to load config: {exc}\n")
            return None

    def do_status(self, _arg: str) -> None:
        """Show last exported status."""
        config = self._load_config()
        if config is None:
            return
        status_path = Path(config.status_file)
        payload = load_status_payload(status_path)
        error = payload.get("_status_error")
        if error:
            self.stdout.write(f"Status export unavailable: {error}\n")
            return
        text = format_status(snapshot_from_payload(payload), login_url=config.browser.login_url)
        self.stdout.write(text + "\n")

    def do_flags(self, _arg: str) -> None:
        """Dump the persisted scheduling flags."""
        config = self._load_config()
        if config is None:
            return
        values = JsonFileFlagStore(Path(config.flag_store_file)).items()
        if not values:
            self.stdout.write("No flags stored.\n")
            return
        self.stdout.write(json.dumps(values, indent=2, sort_keys=True) + "\n")

    def do_reset(self, _arg: str) -> None:
        """Clear the persisted scheduling flags (next launch counts as the first)."""
        config = self._load_config()
        if config is None:
            return
        JsonFileFlagStore(Path(config.flag_store_file)).clear()
        self.stdout.write("Flags cleared.\n")

    def do_test_push(self, _arg: str) -> None:
        """Send a PushPlus test message with the configured token."""
        config = self._load_config()
        if config is None:
            return
        if not config.push.token:
            self.stdout.write("Push token is not configured.\n")
            return
        client = self._client or PushPlusClient(endpoint=config.push.endpoint)
        try:
            endpoint = client.send_test(config.push.token, config.push.endpoint)
        except PushDeliveryError as exc:
            self.stdout.write(f"Test push failed: {exc}\n")
            return
        self.stdout.write(f"Test push sent via {endpoint}\n")

    def do_push_time(self, arg: str) -> None:
        """Set the daily push time: push_time HH:MM"""
        config = self._load_config()
        if config is None:
            return
        value = arg.strip()
        hour, minute = parse_time_of_day(value)
        normalized = f"{hour:02d}:{minute:02d}"
        if normalized != value.zfill(5):
            self.stdout.write(f"Invalid time {value!r}; expected HH:MM.\n")
            return
        save_settings(
            str(self._config_path),
            replace(config.push, auto_push_time=normalized, daily_push_enabled=True),
        )
        write_command(COMMAND_RELOAD_SETTINGS)
        self.stdout.write(f"Daily push set to {normalized}.\n")

    def do_push_now(self, _arg: str) -> None:
        """Ask the running LoginPush to capture and push the QR code once."""
        write_command(COMMAND_PUSH_NOW)
        self.stdout.write("Manual push requested.\n")

    def do_quit(self, _arg: str) -> bool:
        """Exit this CLI."""
        return True

    def do_EOF(self, _arg: str) -> bool:
        self.stdout.write("\n")
        return True


def _resolve_config_path() -> Path:
    return get_user_data_dir() / "config.local.yaml"


def _cli_main(argv: Sequence[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="LoginPush CLI")
    parser.add_argument(
        "command",
        nargs="?",
        choices=["status", "flags", "reset", "test-push", "push-time", "push-now"],
        help="Run a single command and exit.",
    )
    parser.add_argument("value", nargs="?", default="", help="Argument for push-time (HH:MM).")
    args = parser.parse_args(argv)

    shell = LoginPushShell(_resolve_config_path())
    if args.command is None:
        shell.cmdloop()
        return 0

    handlers = {
        "status": shell.do_status,
        "flags": shell.do_flags,
        "reset": shell.do_reset,
        "test-push": shell.do_test_push,
        "push-time": shell.do_push_time,
        "push-now": shell.do_push_now,
    }
    handlers[args.command](args.value)
    return 0


if __name__ == "__main__":
    raise SystemExit(_cli_main())
