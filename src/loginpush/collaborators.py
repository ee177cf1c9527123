from __future__ import annotations

import logging
from datetime import datetime

LOGGER = logging.getLogger(__name__)

SEVERITY_INFO = "info"
SEVERITY_SUCCESS = "success"
SEVERITY_ERROR = "error"

SEVERITIES = (SEVERITY_INFO, SEVERITY_SUCCESS, SEVERITY_ERROR)


class ReloadError(RuntimeError):
    """Raised when the page could not be reloaded."""


class LoginOracle:
    def is_logged_in(self) -> bool:
        raise NotImplementedError()


class ReloadRequester:
    def request_reload(self) -> None:
        raise NotImplementedError()


class StatusReporter:
    def report_status(self, message: str, severity: str = SEVERITY_INFO) -> None:
        raise NotImplementedError()

    # Structured progress; reporters that only show text can ignore these.
    def set_state(self, value: str) -> None:
        return None

    def set_progress(self, attempt: int, max_attempts: int) -> None:
        return None

    def set_next_push_at(self, value: datetime | None) -> None:
        return None

    def set_last_push(self, value: datetime, result: str) -> None:
        return None


class LoggingStatusReporter(StatusReporter):
    """Fallback reporter used when no status store is wired in."""

    def report_status(self, message: str, severity: str = SEVERITY_INFO) -> None:
        level = logging.ERROR if severity == SEVERITY_ERROR else logging.INFO
        LOGGER.log(level, "Status: %s", message, extra={"category": "status"})
