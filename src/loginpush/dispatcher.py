from __future__ import annotations

import asyncio
import base64
import html
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from .config import PushSettings
from .pushplus import PushDeliveryError, PushPlusClient

LOGGER = logging.getLogger(__name__)

REMINDER_TITLE = "Login reminder"


class ArtifactCaptureError(RuntimeError):
    """Raised when the login QR code could not be captured."""


@dataclass(frozen=True)
class PushRequest:
    reason: str
    attempt: int = 0
    max_attempts: int = 0


@dataclass(frozen=True)
class DispatchResult:
    success: bool
    message: str


class PushDispatcher:
    async def dispatch(self, request: PushRequest) -> DispatchResult:
        raise NotImplementedError()


class ArtifactSource:
    async def capture(self) -> bytes:
        raise NotImplementedError()


def _describe_request(request: PushRequest) -> str:
    if request.attempt and request.max_attempts:
        return f"{request.reason} (attempt {request.attempt}/{request.max_attempts})"
    return request.reason


def build_reminder_html(image_png: bytes | None, *, note: str, now: datetime) -> str:
    stamp = now.strftime("%Y-%m-%d %H:%M")
    parts = [
        "<p>The login page is waiting. Scan the QR code to sign in.</p>",
        f"<p>{html.escape(note)} at {stamp}</p>",
    ]
    if image_png:
        encoded = base64.b64encode(image_png).decode("ascii")
        parts.append(f'<img src="data:image/png;base64,{encoded}" alt="login QR code" />')
    else:
        parts.append("<p>The QR code could not be captured; open the login page to scan it.</p>")
    return "\n".join(parts)


class QrCodeDispatcher(PushDispatcher):
    """Captures the login QR code and sends it through PushPlus."""

    def __init__(
        self,
        client: PushPlusClient,
        artifacts: ArtifactSource,
        settings: Callable[[], PushSettings],
        *,
        settle_seconds: float = 3.0,
        now_fn: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._client = client
        self._artifacts = artifacts
        self._settings = settings
        self._settle_seconds = settle_seconds
        self._now_fn = now_fn

    async def _capture(self) -> bytes | None:
        if self._settle_seconds > 0:
            await asyncio.sleep(self._settle_seconds)
        try:
            return await self._artifacts.capture()
        except Exception as exc:
            LOGGER.warning(
                "QR code capture failed, sending plain reminder: %s",
                exc,
                extra={"category": "push"},
            )
            return None

    async def dispatch(self, request: PushRequest) -> DispatchResult:
        settings = self._settings()
        if not settings.enabled:
            return DispatchResult(False, "push is disabled")
        if not settings.token.strip():
            return DispatchResult(False, "push token is not set")

        self._client.endpoint = settings.endpoint
        image = await self._capture()
        content = build_reminder_html(
            image,
            note=_describe_request(request),
            now=self._now_fn(),
        )
        try:
            endpoint = await asyncio.to_thread(
                self._client.send,
                settings.token,
                REMINDER_TITLE,
                content,
            )
        except PushDeliveryError as exc:
            LOGGER.error("Push delivery failed: %s", exc, extra={"category": "push"})
            return DispatchResult(False, f"push failed: {exc}")
        LOGGER.info(
            "Push delivered via %s (%s)",
            endpoint,
            _describe_request(request),
            extra={"category": "push"},
        )
        if image is None:
            return DispatchResult(True, "reminder sent without QR code")
        return DispatchResult(True, "QR code sent")
