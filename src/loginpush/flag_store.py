"""Durable key/value flags that survive a page reload.

The controller is the only writer. Stores never raise on I/O problems: an
unreadable backing file reads as empty and a failed write is dropped, which
degrades the scheduler to its "never pushed" defaults.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, cast

from .io_utils import atomic_write_json, read_json_safe

LOGGER = logging.getLogger(__name__)

KEY_IN_SEQUENCE = "sequence.active"
KEY_PUSH_COUNT = "sequence.push_count"
KEY_PENDING_RELOAD = "sequence.pending_reload"
KEY_LAST_PUSH_MS = "push.last_epoch_ms"
KEY_LAST_PUSH_DATE = "push.last_date"


class FlagStore:
    def get(self, key: str) -> Any:
        raise NotImplementedError()

    def set(self, key: str, value: Any) -> None:
        raise NotImplementedError()

    def remove(self, key: str) -> None:
        raise NotImplementedError()

    def clear(self) -> None:
        raise NotImplementedError()

    def items(self) -> dict[str, Any]:
        raise NotImplementedError()


class MemoryFlagStore(FlagStore):
    def __init__(self, initial: dict[str, Any] | None = None) -> None:
        self._values: dict[str, Any] = dict(initial or {})

    def get(self, key: str) -> Any:
        return self._values.get(key)

    def set(self, key: str, value: Any) -> None:
        self._values[key] = value

    def remove(self, key: str) -> None:
        self._values.pop(key, None)

    def clear(self) -> None:
        self._values.clear()

    def items(self) -> dict[str, Any]:
        return dict(self._values)


class JsonFileFlagStore(FlagStore):
    """One JSON object on disk, rewritten atomically on every change."""

    def __init__(self, path: Path) -> None:
        self._path = Path(path)
        self._write_errors = 0

    @property
    def path(self) -> Path:
        return self._path

    @property
    def write_errors(self) -> int:
        return self._write_errors

    def _load(self) -> dict[str, Any]:
        data = read_json_safe(self._path, default={}, context="flag store")
        if not isinstance(data, dict):
            LOGGER.warning(
                "Flag store content is not an object; ignoring it",
                extra={"category": "store"},
            )
            return {}
        return cast(dict[str, Any], data)

    def _save(self, values: dict[str, Any]) -> None:
        try:
            atomic_write_json(self._path, values)
        except OSError as exc:
            self._write_errors += 1
            LOGGER.warning(
                "Flag store write failed: %s",
                exc,
                extra={"category": "store"},
            )

    def get(self, key: str) -> Any:
        return self._load().get(key)

    def set(self, key: str, value: Any) -> None:
        values = self._load()
        values[key] = value
        self._save(values)

    def remove(self, key: str) -> None:
        values = self._load()
        if key not in values:
            return
        del values[key]
        self._save(values)

    def clear(self) -> None:
        self._save({})

    def items(self) -> dict[str, Any]:
        return self._load()


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() == "true"
    return value is True


def _as_int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


@dataclass
class SequenceState:
    in_sequence: bool = False
    push_count: int = 0
    pending_reload: bool = False


@dataclass(frozen=True)
class PushRecord:
    last_push_epoch_ms: int | None = None
    last_push_date: str | None = None

    @property
    def never_pushed(self) -> bool:
        return self.last_push_epoch_ms is None


def load_sequence_state(store: FlagStore, max_push_count: int) -> SequenceState:
    in_sequence = _as_bool(store.get(KEY_IN_SEQUENCE))
    count = _as_int(store.get(KEY_PUSH_COUNT)) or 0
    pending_reload = _as_bool(store.get(KEY_PENDING_RELOAD))
    if not in_sequence:
        count = 0
    count = max(0, min(count, max_push_count))
    return SequenceState(
        in_sequence=in_sequence,
        push_count=count,
        pending_reload=pending_reload,
    )


def save_sequence_state(store: FlagStore, state: SequenceState) -> None:
    if state.in_sequence:
        store.set(KEY_IN_SEQUENCE, True)
        store.set(KEY_PUSH_COUNT, state.push_count)
    else:
        store.remove(KEY_IN_SEQUENCE)
        store.remove(KEY_PUSH_COUNT)
    set_pending_reload(store, state.pending_reload)


def clear_sequence_state(store: FlagStore) -> None:
    store.remove(KEY_IN_SEQUENCE)
    store.remove(KEY_PUSH_COUNT)
    store.remove(KEY_PENDING_RELOAD)


def is_pending_reload(store: FlagStore) -> bool:
    return _as_bool(store.get(KEY_PENDING_RELOAD))


def set_pending_reload(store: FlagStore, value: bool) -> None:
    if value:
        store.set(KEY_PENDING_RELOAD, True)
    else:
        store.remove(KEY_PENDING_RELOAD)


def load_push_record(store: FlagStore) -> PushRecord:
    last_ms = _as_int(store.get(KEY_LAST_PUSH_MS))
    last_date = store.get(KEY_LAST_PUSH_DATE)
    return PushRecord(
        last_push_epoch_ms=last_ms,
        last_push_date=last_date if isinstance(last_date, str) and last_date else None,
    )


def record_push(store: FlagStore, now: datetime) -> PushRecord:
    record = PushRecord(
        last_push_epoch_ms=int(now.timestamp() * 1000),
        last_push_date=now.date().isoformat(),
    )
    store.set(KEY_LAST_PUSH_MS, record.last_push_epoch_ms)
    store.set(KEY_LAST_PUSH_DATE, record.last_push_date)
    return record
