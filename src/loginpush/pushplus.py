from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable

import requests

from .config import DEFAULT_PUSH_ENDPOINT

LOGGER = logging.getLogger(__name__)

FALLBACK_ENDPOINTS = (
    DEFAULT_PUSH_ENDPOINT,
    "https://pushplus.plus/send",
    "https://pushplus.hxtrip.com/send",
)

TEST_TITLE = "LoginPush test"
TEST_CONTENT = "<p>PushPlus is configured correctly.</p>"


class PushDeliveryError(RuntimeError):
    """Raised when no PushPlus endpoint accepted the message."""


def build_endpoint_list(preferred: str | None, *, remembered: str | None = None) -> list[str]:
    endpoints: list[str] = []
    for candidate in (remembered, preferred, *FALLBACK_ENDPOINTS):
        value = str(candidate or "").strip()
        if value and value not in endpoints:
            endpoints.append(value)
    return endpoints


def _describe_response(response: requests.Response) -> tuple[bool, str]:
    try:
        payload: Any = response.json()
    except ValueError:
        return False, f"HTTP {response.status_code}: response is not JSON"
    if not isinstance(payload, dict):
        return False, f"HTTP {response.status_code}: unexpected response"
    code = payload.get("code")
    message = str(payload.get("msg") or payload.get("message") or "")
    if code == 200:
        return True, message or "ok"
    return False, f"code={code} {message}".strip()


@dataclass
class PushPlusClient:
    endpoint: str = DEFAULT_PUSH_ENDPOINT
    attempts_per_endpoint: int = 3
    retry_delay_seconds: float = 1.0
    timeout_seconds: float = 15.0
    sleep: Callable[[float], None] = time.sleep
    _working_endpoint: str | None = field(default=None, init=False, repr=False)

    @property
    def working_endpoint(self) -> str | None:
        return self._working_endpoint

    def _post(self, endpoint: str, payload: dict[str, Any]) -> tuple[bool, str]:
        try:
            response = requests.post(endpoint, json=payload, timeout=self.timeout_seconds)
        except requests.RequestException as exc:
            return False, str(exc)
        return _describe_response(response)

    def _deliver(self, endpoints: list[str], payload: dict[str, Any], attempts: int) -> str:
        last_error = "no endpoint configured"
        for endpoint in endpoints:
            for attempt in range(1, attempts + 1):
                ok, detail = self._post(endpoint, payload)
                if ok:
                    if endpoint != self._working_endpoint:
                        LOGGER.info(
                            "PushPlus endpoint selected: %s",
                            endpoint,
                            extra={"category": "push"},
                        )
                    self._working_endpoint = endpoint
                    return endpoint
                last_error = f"{endpoint}: {detail}"
                LOGGER.warning(
                    "PushPlus attempt %s/%s failed: %s",
                    attempt,
                    attempts,
                    last_error,
                    extra={"category": "push"},
                )
                if attempt < attempts and self.retry_delay_seconds:
                    self.sleep(self.retry_delay_seconds)
        raise PushDeliveryError(last_error)

    def send(self, token: str, title: str, content: str) -> str:
        """Deliver one message; returns the endpoint that accepted it."""
        if not token.strip():
            raise PushDeliveryError("push token is empty")
        payload = {
            "token": token,
            "title": title,
            "content": content,
            "template": "html",
        }
        endpoints = build_endpoint_list(self.endpoint, remembered=self._working_endpoint)
        return self._deliver(endpoints, payload, max(1, self.attempts_per_endpoint))

    def send_test(self, token: str, endpoint: str | None = None) -> str:
        if not token.strip():
            raise PushDeliveryError("push token is empty")
        payload = {
            "token": token,
            "title": TEST_TITLE,
            "content": TEST_CONTENT,
            "template": "html",
        }
        if endpoint and endpoint.strip():
            endpoints = [endpoint.strip()]
        else:
            endpoints = build_endpoint_list(None)
        return self._deliver(endpoints, payload, 1)
