from __future__ import annotations

import io
import json
from pathlib import Path

import yaml

from loginpush.cli import LoginPushShell, _cli_main
from loginpush.config import get_user_data_dir, load_config
from loginpush.control import COMMAND_PUSH_NOW, COMMAND_RELOAD_SETTINGS, drain_commands
from loginpush.flag_store import KEY_IN_SEQUENCE, JsonFileFlagStore
from loginpush.pushplus import PushDeliveryError, PushPlusClient

BASE_CONFIG = Path(__file__).parent / "data" / "config.yaml"


class _Client(PushPlusClient):
    def __init__(self, error: Exception | None = None) -> None:
        super().__init__()
        self.tests: list[tuple[str, str | None]] = []
        self.error = error

    def send_test(self, token: str, endpoint: str | None = None) -> str:
        self.tests.append((token, endpoint))
        if self.error is not None:
            raise self.error
        return endpoint or "https://www.pushplus.plus/send"


def _shell(tmp_path: Path, client: _Client | None = None) -> tuple[LoginPushShell, io.StringIO, Path]:
    config_path = tmp_path / "config.local.yaml"
    config_path.write_text(BASE_CONFIG.read_text(encoding="utf-8"), encoding="utf-8")
    out = io.StringIO()
    return LoginPushShell(config_path, client=client, stdout=out), out, config_path


def test_flags_and_reset(tmp_path: Path) -> None:
    shell, out, config_path = _shell(tmp_path)
    store = JsonFileFlagStore(Path(load_config(str(config_path)).flag_store_file))

    shell.do_flags("")
    assert "No flags stored." in out.getvalue()

    store.set(KEY_IN_SEQUENCE, True)
    shell.do_flags("")
    assert '"sequence.active": true' in out.getvalue()

    shell.do_reset("")
    assert store.items() == {}
    assert "Flags cleared." in out.getvalue()


def test_test_push_uses_configured_token(tmp_path: Path) -> None:
    client = _Client()
    shell, out, _config_path = _shell(tmp_path, client)

    shell.do_test_push("")

    assert client.tests == [("tok-from-file", "https://www.pushplus.plus/send")]
    assert "Test push sent via https://www.pushplus.plus/send" in out.getvalue()


def test_test_push_reports_failure(tmp_path: Path) -> None:
    shell, out, _config_path = _shell(tmp_path, _Client(PushDeliveryError("code=903 bad token")))
    shell.do_test_push("")
    assert "Test push failed: code=903 bad token" in out.getvalue()


def test_push_time_updates_config(tmp_path: Path) -> None:
    shell, out, config_path = _shell(tmp_path)

    shell.do_push_time("7:30")

    raw = yaml.safe_load(config_path.read_text(encoding="utf-8"))
    assert raw["push"]["auto_push_time"] == "07:30"
    assert raw["push"]["daily_push_enabled"] is True
    assert "Daily push set to 07:30" in out.getvalue()
    assert [command.command for command in drain_commands()] == [COMMAND_RELOAD_SETTINGS]

    shell.do_push_time("26:00")
    assert "Invalid time '26:00'" in out.getvalue()
    assert yaml.safe_load(config_path.read_text(encoding="utf-8"))["push"]["auto_push_time"] == "07:30"
    assert drain_commands() == []


def test_push_now_queues_command(tmp_path: Path) -> None:
    shell, out, _config_path = _shell(tmp_path)

    shell.do_push_now("")

    assert [command.command for command in drain_commands()] == [COMMAND_PUSH_NOW]
    assert "Manual push requested." in out.getvalue()


def test_status_without_export(tmp_path: Path) -> None:
    shell, out, _config_path = _shell(tmp_path)
    shell.do_status("")
    assert "Status export unavailable: status file not found" in out.getvalue()


def test_cli_main_reads_default_config(capsys) -> None:
    config_path = get_user_data_dir() / "config.local.yaml"
    config_path.write_text(BASE_CONFIG.read_text(encoding="utf-8"), encoding="utf-8")
    flags_path = get_user_data_dir() / "flags.json"
    flags_path.write_text(json.dumps({"push.last_date": "2026-10-18"}), encoding="utf-8")

    assert _cli_main(["flags"]) == 0

    assert "2026-10-18" in capsys.readouterr().out


def test_cli_reports_config_errors(tmp_path: Path) -> None:
    out = io.StringIO()
    LoginPushShell(tmp_path / "missing.yaml", stdout=out).do_flags("")
    assert "Failed to load config" in out.getvalue()
