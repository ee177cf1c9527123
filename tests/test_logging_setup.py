import json
import logging
import os
from logging.handlers import RotatingFileHandler
from pathlib import Path

from loginpush.logging_setup import sanitize_text, sequence_context, setup_logging


def _close_handlers() -> None:
    for handler in logging.getLogger().handlers:
        handler.close()


def test_setup_logging_creates_run_log_and_prunes(tmp_path: Path) -> None:
    log_dir = tmp_path / "logs"
    log_dir.mkdir()
    base_log = log_dir / "loginpush.log"

    existing = []
    for idx in range(6):
        path = log_dir / f"loginpush_20260101_00000{idx}_123.log"
        path.write_text("old", encoding="utf-8")
        os.utime(path, (1, 1))
        existing.append(path)

    setup_logging(str(base_log), app_version="0.3.0", release_date="2026-10-19")

    logs = sorted(log_dir.glob("loginpush_*.log"))
    assert len(logs) == 3
    assert any(path not in existing for path in logs)
    assert base_log.exists()
    assert (log_dir / "loginpush.jsonl").exists()
    assert sorted(log_dir.glob("loginpush_*.jsonl"))
    assert logging.getLogger("urllib3").level == logging.WARNING

    handlers = logging.getLogger().handlers
    assert any(isinstance(handler, RotatingFileHandler) for handler in handlers)

    _close_handlers()


def test_setup_logging_caps_retention(tmp_path: Path) -> None:
    log_dir = tmp_path / "logs"
    log_dir.mkdir()
    base_log = log_dir / "loginpush.log"

    for idx in range(8):
        path = log_dir / f"loginpush_20260101_00001{idx}_123.log"
        path.write_text("old", encoding="utf-8")
        os.utime(path, (1, 1))

    setup_logging(str(base_log), log_backup_count=12, log_run_files_keep=10)

    assert len(sorted(log_dir.glob("loginpush_*.log"))) == 5
    rotating = [h for h in logging.getLogger().handlers if isinstance(h, RotatingFileHandler)]
    assert rotating
    assert rotating[0].backupCount == 5

    _close_handlers()


def test_json_log_carries_category_and_sequence(tmp_path: Path) -> None:
    base_log = tmp_path / "logs" / "loginpush.log"
    setup_logging(str(base_log), log_console_enabled=False)

    with sequence_context("abc123"):
        logging.getLogger("loginpush.test").info(
            "Sending token=secret-value", extra={"category": "push"}
        )
    _close_handlers()

    lines = (tmp_path / "logs" / "loginpush.jsonl").read_text(encoding="utf-8").splitlines()
    records = [json.loads(line) for line in lines]
    record = next(item for item in records if item["logger"] == "loginpush.test")
    assert record["category"] == "push"
    assert record["sequence_id"] == "abc123"
    assert "secret-value" not in record["message"]


def test_sanitize_text_redacts_sensitive_values() -> None:
    message = (
        "User test@example.com saved to /home/bob/flags.json "
        "token=abcd1234 img data:image/png;base64,iVBORw0KGgo="
    )
    sanitized = sanitize_text(message)
    assert "test@example.com" not in sanitized
    assert "/home/bob" not in sanitized
    assert "abcd1234" not in sanitized
    assert "iVBORw0KGgo" not in sanitized
    assert "<email>" in sanitized
    assert "/home/<user>" in sanitized
