"""Structured logging and observability helpers."""

from __future__ import annotations

import json
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any


@dataclass(slots=True)
class StructuredLogger:
    records: list[dict[str, Any]] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def log(
        self,
        *,
        operation: str,
        message: str,
        package: str | None = None,
        version: str | None = None,
        phase: str | None = None,
        level: str = "info",
        extra: dict[str, Any] | None = None,
    ) -> None:
        record: dict[str, Any] = {
            "level": level,
            "operation": operation,
            "package": package,
            "version": version,
            "phase": phase,
            "message": message,
        }
        if extra is not None:
            record["extra"] = extra
        # Executor workers log concurrently.
        with self._lock:
            self.records.append(record)

    def records_for_package(self, package: str) -> list[dict[str, Any]]:
        with self._lock:
            return [record for record in self.records if record.get("package") == package]

    def records_for_operation(self, operation: str) -> list[dict[str, Any]]:
        with self._lock:
            return [record for record in self.records if record.get("operation") == operation]

    def to_json_lines(self, path: str | Path) -> Path:
        output_path = Path(path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        with self._lock:
            lines = [json.dumps(record, sort_keys=True) for record in self.records]
        output_path.write_text("\n".join(lines) + "\n", encoding="utf-8")
        return output_path
