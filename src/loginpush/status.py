from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime
from threading import Lock
from typing import Any, Callable

from .collaborators import SEVERITY_ERROR, SEVERITY_INFO, StatusReporter
from .logging_setup import sanitize_text


@dataclass(frozen=True)
class StatusSnapshot:
    running: bool
    state: str
    last_message: str
    last_severity: str
    last_message_at: str
    attempt: int
    max_attempts: int
    next_push_at: str
    last_push: str
    last_push_result: str
    logged_in: bool
    error_count: int


def _now_iso() -> str:
    return datetime.now().isoformat(timespec="seconds")


class StatusStore(StatusReporter):
    def __init__(self) -> None:
        self._lock = Lock()
        self._running = False
        self._state = ""
        self._last_message = ""
        self._last_severity = ""
        self._last_message_at = ""
        self._attempt = 0
        self._max_attempts = 0
        self._next_push_at = ""
        self._last_push = ""
        self._last_push_result = ""
        self._logged_in = False
        self._error_count = 0
        self._listeners: list[Callable[[], None]] = []

    def add_listener(self, listener: Callable[[], None]) -> None:
        with self._lock:
            self._listeners.append(listener)

    def _notify(self) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            listener()

    def report_status(self, message: str, severity: str = SEVERITY_INFO) -> None:
        with self._lock:
            self._last_message = sanitize_text(message)
            self._last_severity = severity
            self._last_message_at = _now_iso()
            if severity == SEVERITY_ERROR:
                self._error_count += 1
        self._notify()

    def set_running(self, value: bool) -> None:
        with self._lock:
            self._running = value
        self._notify()

    def set_state(self, value: str) -> None:
        with self._lock:
            self._state = value

    def set_progress(self, attempt: int, max_attempts: int) -> None:
        with self._lock:
            self._attempt = max(0, int(attempt))
            self._max_attempts = max(0, int(max_attempts))

    def set_next_push_at(self, value: datetime | None) -> None:
        with self._lock:
            self._next_push_at = value.isoformat(timespec="seconds") if value else ""

    def set_last_push(self, value: datetime, result: str) -> None:
        with self._lock:
            self._last_push = value.isoformat(timespec="seconds")
            self._last_push_result = sanitize_text(result)

    def set_logged_in(self, value: bool) -> None:
        with self._lock:
            self._logged_in = value

    def snapshot(self) -> StatusSnapshot:
        with self._lock:
            return StatusSnapshot(
                running=self._running,
                state=self._state,
                last_message=self._last_message,
                last_severity=self._last_severity,
                last_message_at=self._last_message_at,
                attempt=self._attempt,
                max_attempts=self._max_attempts,
                next_push_at=self._next_push_at,
                last_push=self._last_push,
                last_push_result=self._last_push_result,
                logged_in=self._logged_in,
                error_count=self._error_count,
            )


def snapshot_to_payload(snapshot: StatusSnapshot) -> dict[str, Any]:
    payload = asdict(snapshot)
    payload["updated_at"] = _now_iso()
    return payload


def snapshot_from_payload(payload: dict[str, Any]) -> StatusSnapshot:
    def _int(key: str) -> int:
        try:
            return int(payload.get(key, 0) or 0)
        except (TypeError, ValueError):
            return 0

    return StatusSnapshot(
        running=bool(payload.get("running", False)),
        state=str(payload.get("state", "")),
        last_message=str(payload.get("last_message", "")),
        last_severity=str(payload.get("last_severity", "")),
        last_message_at=str(payload.get("last_message_at", "")),
        attempt=_int("attempt"),
        max_attempts=_int("max_attempts"),
        next_push_at=str(payload.get("next_push_at", "")),
        last_push=str(payload.get("last_push", "")),
        last_push_result=str(payload.get("last_push_result", "")),
        logged_in=bool(payload.get("logged_in", False)),
        error_count=_int("error_count"),
    )


def format_timestamp(value: str) -> str:
    if not value:
        return ""
    try:
        timestamp = datetime.fromisoformat(value)
        return timestamp.strftime("%d-%m-%Y - %H:%M")
    except ValueError:
        return value


def _format_progress(snapshot: StatusSnapshot) -> str:
    if not snapshot.max_attempts:
        return "none"
    return f"{snapshot.attempt}/{snapshot.max_attempts}"


def format_status(snapshot: StatusSnapshot, *, login_url: str = "") -> str:
    running = "yes" if snapshot.running else "no"
    logged_in = "yes" if snapshot.logged_in else "no"
    message = snapshot.last_message or "<none>"
    if snapshot.last_severity:
        message = f"[{snapshot.last_severity}] {message}"
    lines = [
        f"Running: {running}",
        f"Login page: {login_url or '<configured page>'}",
        f"State: {snapshot.state or 'unknown'}",
        f"Logged in: {logged_in}",
        f"Last status: {message}",
        f"Last status at: {format_timestamp(snapshot.last_message_at)}",
        f"Sequence attempt: {_format_progress(snapshot)}",
        f"Next push: {format_timestamp(snapshot.next_push_at)}",
        f"Last push: {format_timestamp(snapshot.last_push)}",
        f"Last push result: {snapshot.last_push_result}",
        f"Total errors: {snapshot.error_count}",
    ]
    return "\n".join(lines)
