"""Playwright host for the login page.

Owns the browser, turns page events into lifecycle calls and rebuilds the
controller runtime on every reload it performs, so only the flag store
carries state across a reload.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Callable

from playwright.async_api import BrowserContext, Frame, Page, async_playwright
from playwright.async_api import Error as PlaywrightError

from .collaborators import LoginOracle, ReloadError, ReloadRequester
from .config import BrowserConfig
from .controller import TaskSpawner
from .dispatcher import ArtifactCaptureError, ArtifactSource

if TYPE_CHECKING:
    from .app import Runtime

LOGGER = logging.getLogger(__name__)


class CookieLoginOracle(LoginOracle):
    """Cached answer of the last cookie poll; never touches the browser."""

    def __init__(self) -> None:
        self._logged_in = False

    def is_logged_in(self) -> bool:
        return self._logged_in

    def update(self, value: bool) -> bool:
        changed = value != self._logged_in
        self._logged_in = value
        return changed


class PageArtifactSource(ArtifactSource):
    def __init__(self, host: "BrowserHost", selector: str = "") -> None:
        self._host = host
        self._selector = selector

    async def capture(self) -> bytes:
        page = self._host.page
        if page is None or page.is_closed():
            raise ArtifactCaptureError("login page is not open")
        try:
            if self._selector:
                return await page.locator(self._selector).first.screenshot(type="png")
            return await page.screenshot(type="png")
        except PlaywrightError as exc:
            raise ArtifactCaptureError(str(exc)) from exc


class PageReloadRequester(ReloadRequester):
    def __init__(self, host: "BrowserHost") -> None:
        self._host = host

    def request_reload(self) -> None:
        self._host.reload_page()


class BrowserHost:
    def __init__(
        self,
        config: BrowserConfig,
        *,
        spawn: Callable[..., object] | None = None,
    ) -> None:
        self._config = config
        self._spawn = spawn or TaskSpawner()
        self._page: Page | None = None
        self._context: BrowserContext | None = None
        self._runtime: Runtime | None = None
        self._runtime_factory: Callable[[], Runtime] | None = None
        self._closed = asyncio.Event()
        self.login_oracle = CookieLoginOracle()
        self.artifacts = PageArtifactSource(self, config.qr_selector)
        self.reload_requester = PageReloadRequester(self)

    @property
    def page(self) -> Page | None:
        return self._page

    @property
    def runtime(self) -> Runtime | None:
        return self._runtime

    # Page events

    def _ensure_runtime(self) -> Runtime | None:
        if self._runtime is None and self._runtime_factory is not None:
            self._runtime = self._runtime_factory()
            LOGGER.debug("Runtime built for page load", extra={"category": "browser"})
        return self._runtime

    def _handle_load(self, page: Page) -> None:
        try:
            runtime = self._ensure_runtime()
            if runtime is not None:
                runtime.tracker.handle_load(page.url)
        except Exception as exc:
            LOGGER.exception("Load handler failed: %s", exc, extra={"category": "browser"})

    def _handle_frame_navigated(self, frame: Frame) -> None:
        if frame.parent_frame is not None:
            return
        runtime = self._runtime
        if runtime is None:
            return
        try:
            runtime.tracker.handle_navigation(frame.url)
        except Exception as exc:
            LOGGER.exception("Navigation handler failed: %s", exc, extra={"category": "browser"})

    def _handle_close(self, _page: Page) -> None:
        runtime = self._runtime
        self._runtime = None
        if runtime is not None:
            try:
                runtime.tracker.handle_unload()
            except Exception as exc:
                LOGGER.exception("Unload handler failed: %s", exc, extra={"category": "browser"})
        LOGGER.info("Login page closed", extra={"category": "browser"})
        self._closed.set()

    # Reload

    def reload_page(self) -> None:
        page = self._page
        if page is None or page.is_closed():
            raise ReloadError("login page is not open")
        runtime = self._runtime
        self._runtime = None
        if runtime is not None:
            runtime.tracker.handle_unload()
        LOGGER.info("Reloading login page", extra={"category": "browser"})
        self._spawn(self._reload(page))

    async def _reload(self, page: Page) -> None:
        try:
            await page.reload(
                wait_until="load",
                timeout=self._config.navigation_timeout_seconds * 1000,
            )
        except PlaywrightError as exc:
            LOGGER.warning("Page reload failed: %s", exc, extra={"category": "browser"})
        if self._runtime is None and not page.is_closed():
            self._handle_load(page)

    # Login polling

    async def _read_login_cookie(self) -> bool:
        context = self._context
        if context is None:
            return False
        try:
            cookies = await context.cookies()
        except PlaywrightError as exc:
            LOGGER.debug("Cookie read failed: %s", exc, extra={"category": "browser"})
            return self.login_oracle.is_logged_in()
        name = self._config.login_cookie_name
        return any(cookie.get("name") == name and cookie.get("value") for cookie in cookies)

    async def poll_login_once(self, on_change: Callable[[bool], None] | None = None) -> bool:
        logged_in = await self._read_login_cookie()
        if not self.login_oracle.update(logged_in):
            return logged_in
        LOGGER.info(
            "Login state changed: %s",
            "logged in" if logged_in else "logged out",
            extra={"category": "browser"},
        )
        if on_change is not None:
            on_change(logged_in)
        if logged_in and self._runtime is not None:
            self._runtime.controller.on_login_detected_externally()
        return logged_in

    async def _poll_login(
        self,
        on_change: Callable[[bool], None] | None,
        on_poll: Callable[[Runtime | None], None] | None = None,
    ) -> None:
        while not self._closed.is_set():
            try:
                await self.poll_login_once(on_change)
            except Exception as exc:
                LOGGER.exception("Login poll failed: %s", exc, extra={"category": "browser"})
            if on_poll is not None:
                try:
                    on_poll(self._runtime)
                except Exception as exc:
                    LOGGER.exception("Control poll failed: %s", exc, extra={"category": "control"})
            try:
                await asyncio.wait_for(
                    self._closed.wait(), timeout=self._config.login_poll_seconds
                )
            except asyncio.TimeoutError:
                continue

    # Main loop

    async def run(
        self,
        runtime_factory: Callable[[], Runtime],
        *,
        on_login_change: Callable[[bool], None] | None = None,
        on_poll: Callable[[Runtime | None], None] | None = None,
    ) -> None:
        self._runtime_factory = runtime_factory
        user_data_dir = Path(self._config.user_data_dir)
        user_data_dir.mkdir(parents=True, exist_ok=True)
        async with async_playwright() as playwright:
            context = await playwright.chromium.launch_persistent_context(
                str(user_data_dir),
                headless=self._config.headless,
            )
            self._context = context
            try:
                page = context.pages[0] if context.pages else await context.new_page()
                self._page = page
                page.on("load", self._handle_load)
                page.on("framenavigated", self._handle_frame_navigated)
                page.on("close", self._handle_close)
                await self.poll_login_once(on_login_change)
                LOGGER.info("Opening login page", extra={"category": "browser"})
                try:
                    await page.goto(
                        self._config.login_url,
                        timeout=self._config.navigation_timeout_seconds * 1000,
                    )
                except PlaywrightError as exc:
                    LOGGER.warning(
                        "Login page did not finish loading: %s",
                        exc,
                        extra={"category": "browser"},
                    )
                await self._poll_login(on_login_change, on_poll)
            finally:
                self._context = None
                self._page = None
                try:
                    await context.close()
                except PlaywrightError as exc:
                    LOGGER.debug("Browser close failed: %s", exc, extra={"category": "browser"})
