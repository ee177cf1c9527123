from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .io_utils import atomic_write_text
from .status import StatusStore, snapshot_to_payload

LOGGER = logging.getLogger(__name__)


@dataclass
class JsonWriter:
    path: Path

    def write(self, payload: dict[str, Any]) -> None:
        payload_json = json.dumps(payload, ensure_ascii=True, indent=2)
        atomic_write_text(self.path, payload_json, encoding="utf-8")


@dataclass
class StatusExporter:
    """Mirrors the status store into a JSON file for the status CLI."""

    status: StatusStore
    writer: JsonWriter
    extra: dict[str, Any] = field(default_factory=dict)
    write_errors: int = 0

    def export(self) -> None:
        payload = snapshot_to_payload(self.status.snapshot())
        payload.update(self.extra)
        payload["status_export_errors"] = self.write_errors
        try:
            self.writer.write(payload)
        except OSError as exc:
            self.write_errors += 1
            LOGGER.warning("Status export failed: %s", exc, extra={"category": "status"})
