from __future__ import annotations

import asyncio
import json
import os
from dataclasses import replace
from datetime import datetime
from pathlib import Path

import pytest

from loginpush.app import Runtime, build_runtime, build_status, prepare_flag_store
from loginpush.browser_host import BrowserHost, CookieLoginOracle
from loginpush.clock import SchedulingClock
from loginpush.collaborators import ReloadError
from loginpush.config import AppConfig, BrowserConfig, PushSettings, SettingsStore, save_settings
from loginpush.control import COMMAND_PUSH_NOW, ControlPoller, write_command
from loginpush.controller import ControllerState
from loginpush.dispatcher import ArtifactCaptureError, DispatchResult, PushDispatcher, PushRequest
from loginpush.flag_store import JsonFileFlagStore, MemoryFlagStore, record_push
from loginpush.status import StatusStore

LOGIN_URL = "https://portal.example.com/#/login"
HOME_URL = "https://portal.example.com/#/home"
CONFIG = AppConfig(browser=BrowserConfig(login_url=LOGIN_URL))
SETTINGS = PushSettings(token="tok", enabled=True, daily_push_enabled=True)


class _Dispatcher(PushDispatcher):
    def __init__(self) -> None:
        self.requests: list[PushRequest] = []

    async def dispatch(self, request: PushRequest) -> DispatchResult:
        self.requests.append(request)
        return DispatchResult(True, "QR code sent")


class _Spawner:
    def __init__(self) -> None:
        self.pending = []

    def __call__(self, coro) -> None:
        self.pending.append(coro)

    def drain(self) -> None:
        while self.pending:
            asyncio.run(self.pending.pop(0))


class _Page:
    def __init__(self, url: str) -> None:
        self.url = url
        self.closed = False
        self.reloads = 0

    def is_closed(self) -> bool:
        return self.closed

    async def reload(self, **_kwargs) -> None:
        self.reloads += 1

    async def screenshot(self, **_kwargs) -> bytes:
        return b"png"


class _Frame:
    def __init__(self, url: str, parent_frame=None) -> None:
        self.url = url
        self.parent_frame = parent_frame


class _Context:
    def __init__(self, cookies: list[dict]) -> None:
        self._cookies = cookies

    async def cookies(self) -> list[dict]:
        return self._cookies


class _Host:
    """BrowserHost driven by fake page objects instead of Playwright."""

    def __init__(self, scheduler) -> None:
        self.spawner = _Spawner()
        self.host = BrowserHost(CONFIG.browser, spawn=self.spawner)
        self.store = MemoryFlagStore()
        record_push(self.store, datetime(2026, 10, 18, 8, 0))
        self.status = StatusStore()
        self.settings = SettingsStore(SETTINGS)
        self.dispatcher = _Dispatcher()
        self.builds: list[Runtime] = []
        self.scheduler = scheduler
        self.page = _Page(LOGIN_URL)
        self.host._page = self.page
        self.host._runtime_factory = self._build

    def _build(self) -> Runtime:
        runtime = build_runtime(
            store=self.store,
            clock=SchedulingClock(self.scheduler, now_fn=self.scheduler.time),
            dispatcher=self.dispatcher,
            login_oracle=self.host.login_oracle,
            reload_requester=self.host.reload_requester,
            reporter=self.status,
            settings=self.settings,
            config=CONFIG,
            spawn=self.spawner,
        )
        self.builds.append(runtime)
        return runtime


def test_build_runtime_wires_tracker_to_controller(scheduler) -> None:
    harness = _Host(scheduler)
    runtime = harness._build()

    runtime.tracker.handle_load(LOGIN_URL)
    assert runtime.controller.page_active is True
    assert runtime.controller.state is ControllerState.DAILY_ARMED

    runtime.tracker.handle_navigation(HOME_URL)
    assert runtime.controller.page_active is False
    assert runtime.controller.state is ControllerState.IDLE


def test_load_event_builds_runtime_once(scheduler) -> None:
    harness = _Host(scheduler)

    harness.host._handle_load(harness.page)
    harness.host._handle_load(harness.page)

    assert len(harness.builds) == 1
    assert harness.host.runtime is harness.builds[0]
    assert harness.builds[0].controller.state is ControllerState.DAILY_ARMED


def test_reload_rebuilds_runtime(scheduler) -> None:
    harness = _Host(scheduler)
    harness.host._handle_load(harness.page)
    first = harness.host.runtime

    harness.host.reload_requester.request_reload()

    assert harness.host.runtime is None
    assert first.controller.state is ControllerState.IDLE

    harness.spawner.drain()

    assert harness.page.reloads == 1
    assert len(harness.builds) == 2
    assert harness.host.runtime is harness.builds[1]
    assert harness.host.runtime.controller.state is ControllerState.DAILY_ARMED


def test_reload_without_page_raises() -> None:
    host = BrowserHost(CONFIG.browser, spawn=_Spawner())
    with pytest.raises(ReloadError):
        host.reload_requester.request_reload()


def test_child_frame_navigation_is_ignored(scheduler) -> None:
    harness = _Host(scheduler)
    harness.host._handle_load(harness.page)
    controller = harness.host.runtime.controller

    harness.host._handle_frame_navigated(_Frame(HOME_URL, parent_frame=object()))
    assert controller.page_active is True

    harness.host._handle_frame_navigated(_Frame(HOME_URL))
    assert controller.page_active is False


def test_close_unloads_runtime(scheduler) -> None:
    harness = _Host(scheduler)
    harness.host._handle_load(harness.page)
    controller = harness.host.runtime.controller

    harness.host._handle_close(harness.page)

    assert harness.host.runtime is None
    assert controller.page_active is False
    assert harness.host._closed.is_set()


def test_cookie_poll_stops_controller_on_login(scheduler) -> None:
    harness = _Host(scheduler)
    harness.host._handle_load(harness.page)
    controller = harness.host.runtime.controller
    changes: list[bool] = []

    harness.host._context = _Context([{"name": "token", "value": "abc"}])
    assert asyncio.run(harness.host.poll_login_once(changes.append)) is True
    assert asyncio.run(harness.host.poll_login_once(changes.append)) is True

    assert changes == [True]
    assert harness.host.login_oracle.is_logged_in() is True
    assert controller.state is ControllerState.STOPPED
    assert harness.status.snapshot().last_message == "Login detected"


def test_cookie_login_oracle_reports_changes() -> None:
    oracle = CookieLoginOracle()
    assert oracle.is_logged_in() is False
    assert oracle.update(False) is False
    assert oracle.update(True) is True
    assert oracle.is_logged_in() is True


def test_artifact_capture(scheduler) -> None:
    harness = _Host(scheduler)
    assert asyncio.run(harness.host.artifacts.capture()) == b"png"

    harness.page.closed = True
    with pytest.raises(ArtifactCaptureError):
        asyncio.run(harness.host.artifacts.capture())


def test_prepare_flag_store_honours_persistence(tmp_path: Path) -> None:
    config = replace(CONFIG, flag_store_file=str(tmp_path / "flags.json"))
    JsonFileFlagStore(Path(config.flag_store_file)).set("push.last_date", "2026-10-18")

    kept = prepare_flag_store(replace(config, flag_store_persist_across_restarts=True))
    assert kept.get("push.last_date") == "2026-10-18"

    cleared = prepare_flag_store(config)
    assert cleared.items() == {}


def test_build_status_exports_reports(tmp_path: Path) -> None:
    config = replace(CONFIG, status_file=str(tmp_path / "status.json"))
    status, exporter = build_status(config)

    status.report_status("Next push at 2026-10-19 08:00", "info")

    data = json.loads(Path(config.status_file).read_text(encoding="utf-8"))
    assert data["last_message"] == "Next push at 2026-10-19 08:00"
    assert data["login_url"] == LOGIN_URL
    assert exporter.write_errors == 0


def test_poll_loop_hands_runtime_to_control_poller(scheduler) -> None:
    harness = _Host(scheduler)
    harness.host._handle_load(harness.page)
    seen = []

    def _on_poll(runtime) -> None:
        seen.append(runtime)
        harness.host._closed.set()

    asyncio.run(harness.host._poll_login(None, _on_poll))

    assert seen == [harness.host.runtime]


def test_push_now_command_reaches_running_controller(scheduler, tmp_path: Path) -> None:
    harness = _Host(scheduler)
    harness.host._handle_load(harness.page)
    queue = tmp_path / "commands.jsonl"
    poller = ControlPoller(harness.settings, queue_path=queue)

    write_command(COMMAND_PUSH_NOW, path=queue)
    poller.poll(harness.host.runtime)
    harness.spawner.drain()

    assert [request.reason for request in harness.dispatcher.requests] == ["manual push"]
    assert harness.host.runtime.controller.state is ControllerState.DAILY_ARMED


def test_push_now_command_without_page_is_ignored(scheduler, tmp_path: Path) -> None:
    harness = _Host(scheduler)
    queue = tmp_path / "commands.jsonl"
    poller = ControlPoller(harness.settings, queue_path=queue)

    write_command(COMMAND_PUSH_NOW, path=queue)
    poller.poll(None)
    harness.spawner.drain()

    assert harness.dispatcher.requests == []


def test_saved_settings_reschedule_running_controller(scheduler, tmp_path: Path) -> None:
    config_path = tmp_path / "config.local.yaml"
    config_path.write_text(
        "browser:\n"
        f"  login_url: \"{LOGIN_URL}\"\n"
        "push:\n"
        "  token: \"tok\"\n"
        "  enabled: true\n"
        "  auto_push_time: \"08:00\"\n"
        "  daily_push_enabled: true\n",
        encoding="utf-8",
    )
    harness = _Host(scheduler)
    harness.host._handle_load(harness.page)
    poller = ControlPoller(
        harness.settings, config_path=config_path, queue_path=tmp_path / "commands.jsonl"
    )
    assert harness.status.snapshot().next_push_at == "2026-10-19T08:00:00"

    save_settings(str(config_path), replace(SETTINGS, auto_push_time="18:30"))
    stat = config_path.stat()
    os.utime(config_path, ns=(stat.st_atime_ns, stat.st_mtime_ns + 1_000_000_000))
    poller.poll(harness.host.runtime)

    assert harness.settings.get().auto_push_time == "18:30"
    assert harness.host.runtime.controller.state is ControllerState.DAILY_ARMED
    assert harness.status.snapshot().next_push_at == "2026-10-19T18:30:00"

    scheduler.advance(3600)
    harness.spawner.drain()
    assert harness.dispatcher.requests == []
