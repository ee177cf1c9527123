from __future__ import annotations

import os
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable

import pytest


@pytest.fixture(autouse=True)
def _isolate_runtime_dirs(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Isolate tests from user-specific directories and keep logs/data in temp."""
    data_dir = tmp_path / "config"
    root_dir = tmp_path / "Root"
    data_dir.mkdir(parents=True, exist_ok=True)
    root_dir.mkdir(parents=True, exist_ok=True)

    monkeypatch.setenv("LOGINPUSH_DATA_DIR", str(data_dir))
    monkeypatch.setenv("LOGINPUSH_ROOT", str(root_dir))
    monkeypatch.setenv("LOCALAPPDATA", str(tmp_path / "LocalAppData"))
    monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path / "xdg"))
    monkeypatch.delenv("LOGINPUSH_PUSH_TOKEN", raising=False)
    if "USERPROFILE" not in os.environ:
        monkeypatch.setenv("USERPROFILE", str(tmp_path))


class ManualHandle:
    def __init__(self, when: datetime, callback: Callable[[], None]) -> None:
        self.when = when
        self.callback = callback
        self.cancelled = False
        self.fired = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualScheduler:
    """Stand-in for the event loop's call_later driven by advance()."""

    def __init__(self, start: datetime) -> None:
        self.now = start
        self.handles: list[ManualHandle] = []

    def time(self) -> datetime:
        return self.now

    def call_later(self, delay: float, callback: Callable[[], None]) -> ManualHandle:
        handle = ManualHandle(self.now + timedelta(seconds=delay), callback)
        self.handles.append(handle)
        return handle

    def pending(self) -> list[ManualHandle]:
        return [handle for handle in self.handles if not handle.cancelled and not handle.fired]

    def advance(self, seconds: float) -> None:
        target = self.now + timedelta(seconds=seconds)
        while True:
            due = [handle for handle in self.pending() if handle.when <= target]
            if not due:
                break
            handle = min(due, key=lambda item: item.when)
            self.now = handle.when
            handle.fired = True
            handle.callback()
        self.now = target


@pytest.fixture
def scheduler() -> ManualScheduler:
    return ManualScheduler(datetime(2026, 10, 19, 7, 0))
