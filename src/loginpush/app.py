from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path

from .browser_host import BrowserHost
from .clock import SchedulingClock
from .collaborators import LoginOracle, ReloadRequester, StatusReporter
from .config import AppConfig, SettingsStore
from .control import ControlPoller
from .controller import PushController, Spawn
from .dispatcher import PushDispatcher, QrCodeDispatcher
from .flag_store import FlagStore, JsonFileFlagStore
from .lifecycle import PageLifecycleTracker
from .pushplus import PushPlusClient
from .status import StatusStore
from .telemetry import JsonWriter, StatusExporter
from . import __release_date__, __version_label__

LOGGER = logging.getLogger(__name__)


@dataclass
class Runtime:
    controller: PushController
    tracker: PageLifecycleTracker


def build_runtime(
    *,
    store: FlagStore,
    clock: SchedulingClock,
    dispatcher: PushDispatcher,
    login_oracle: LoginOracle,
    reload_requester: ReloadRequester,
    reporter: StatusReporter,
    settings: SettingsStore,
    config: AppConfig,
    spawn: Spawn | None = None,
) -> Runtime:
    controller = PushController(
        store=store,
        clock=clock,
        dispatcher=dispatcher,
        login_oracle=login_oracle,
        reload_requester=reload_requester,
        reporter=reporter,
        settings=settings,
        schedule=config.schedule,
        spawn=spawn,
    )
    tracker = PageLifecycleTracker(
        store,
        marker=config.browser.login_url_marker,
        on_activated=controller.on_activated,
        on_deactivated=controller.on_deactivated,
        sequence_state=controller.sequence_snapshot,
    )
    return Runtime(controller=controller, tracker=tracker)


def prepare_flag_store(config: AppConfig) -> JsonFileFlagStore:
    store = JsonFileFlagStore(Path(config.flag_store_file))
    if config.flag_store_persist_across_restarts:
        LOGGER.info("Keeping flag store from previous run", extra={"category": "store"})
    else:
        store.clear()
        LOGGER.info("Flag store reset for new run", extra={"category": "store"})
    return store


def build_status(config: AppConfig) -> tuple[StatusStore, StatusExporter]:
    status = StatusStore()
    exporter = StatusExporter(
        status,
        JsonWriter(Path(config.status_file)),
        extra={
            "app_version": __version_label__,
            "release_date": __release_date__,
            "login_url": config.browser.login_url,
        },
    )
    status.add_listener(exporter.export)
    return status, exporter


async def run_async(config: AppConfig, *, config_path: Path | None = None) -> None:
    status, exporter = build_status(config)
    store = prepare_flag_store(config)
    settings = SettingsStore(config.push)
    client = PushPlusClient(endpoint=config.push.endpoint)
    host = BrowserHost(config.browser)
    poller = ControlPoller(settings, config_path=config_path)
    loop = asyncio.get_running_loop()
    dispatcher = QrCodeDispatcher(
        client,
        host.artifacts,
        settings.get,
        settle_seconds=config.schedule.capture_settle_seconds,
    )

    def _build() -> Runtime:
        return build_runtime(
            store=store,
            clock=SchedulingClock(loop),
            dispatcher=dispatcher,
            login_oracle=host.login_oracle,
            reload_requester=host.reload_requester,
            reporter=status,
            settings=settings,
            config=config,
        )

    def _on_login_change(logged_in: bool) -> None:
        status.set_logged_in(logged_in)
        exporter.export()

    LOGGER.info(
        "LoginPush started (push %s, daily %s at %s)",
        "enabled" if config.push.can_push else "disabled",
        "on" if config.push.daily_push_enabled else "off",
        config.push.auto_push_time,
        extra={"category": "startup"},
    )
    status.set_running(True)
    try:
        await host.run(_build, on_login_change=_on_login_change, on_poll=poller.poll)
    finally:
        status.set_running(False)
        LOGGER.info("LoginPush stopped", extra={"category": "shutdown"})


def run(config: AppConfig, *, config_path: Path | None = None) -> None:
    try:
        asyncio.run(run_async(config, config_path=config_path))
    except KeyboardInterrupt:
        LOGGER.info("Interrupted by user", extra={"category": "shutdown"})
