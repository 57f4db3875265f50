from __future__ import annotations

import json
import sys
from typing import Any, Dict

from .base import Reporter, TaskRecord, TaskStatus, get_verbosity

# Status lines starting with one of these prefixes are mirrored as summary events
SUMMARY_PREFIXES: Dict[str, str] = {
    "fetch summary": "fetch",
    "import summary": "import",
    "build summary": "build",
    "cleanup summary": "cleanup",
    "conversion summary": "conversion",
}


def parse_summary(message: str) -> tuple[str, Dict[str, str]] | None:
    """Split ``"<Kind> summary: k=v k=v"`` into its type and fields."""
    lower = message.lower()
    for prefix, stype in SUMMARY_PREFIXES.items():
        if not lower.startswith(prefix):
            continue
        _, _, kv_text = message.partition(":")
        pairs: Dict[str, str] = {}
        for token in kv_text.split():
            key, sep, value = token.partition("=")
            if sep:
                pairs[key] = value
        return stype, pairs
    return None


class JsonLinesReporter(Reporter):
    """Machine-readable JSON lines reporter (one event per line)."""

    supports_progress = False

    def __init__(self, stream=None):
        self.stream = stream or sys.stdout
        self._tasks: Dict[str, TaskRecord] = {}

    def _emit(self, obj: dict) -> None:
        self.stream.write(json.dumps(obj, sort_keys=True, default=str) + "\n")

    def start_task(
        self, task_id: str, name: str, total: int | None = None, **meta: Any
    ) -> None:
        self._tasks[task_id] = TaskRecord(task_id, name, total, meta=dict(meta))
        self._emit(
            {
                "event": "task_start",
                "id": task_id,
                "name": name,
                "total": total,
                **meta,
            }
        )

    def advance(self, task_id: str, step: int = 1, **meta: Any) -> None:
        rec = self._tasks.get(task_id)
        if not rec:
            return
        rec.tick(step, meta)
        self._emit(
            {
                "event": "task_progress",
                "id": task_id,
                "completed": rec.completed,
                **meta,
            }
        )

    def end_task(
        self,
        task_id: str,
        status: TaskStatus = TaskStatus.SUCCESS,
        **final_meta: Any,
    ) -> None:
        rec = self._tasks.pop(task_id, None)
        if not rec:
            return
        rec.finish(status, final_meta)
        self._emit(
            {
                "event": "task_end",
                "id": task_id,
                "status": status.name.lower(),
                "completed": rec.completed,
                "total": rec.total,
                "duration_seconds": rec.duration,
                **rec.meta,
            }
        )

    def _status_event(self, message: str, level: str, **fields: Any) -> None:
        summary = parse_summary(message)
        if summary is not None:
            stype, pairs = summary
            self._emit(
                {
                    "event": "summary",
                    "summary_type": stype,
                    "level": level,
                    "raw": message,
                    **pairs,
                    **fields,
                }
            )
        self._emit(
            {"event": "status", "message": message, "level": level, **fields}
        )

    def status(self, message: str, **fields: Any) -> None:
        self._status_event(message, "info", **fields)

    def verbose(self, message: str, *, level: int = 1, **fields: Any) -> None:
        if get_verbosity() < level:
            return
        self._emit(
            {
                "event": "status",
                "message": message,
                "level": f"verbose{level}",
                **fields,
            }
        )

    def error(self, message: str, **fields: Any) -> None:
        self._status_event(message, "error", **fields)

    def warning(self, message: str, **fields: Any) -> None:
        self._status_event(message, "warning", **fields)

    def section(self, title: str) -> None:
        self._emit({"event": "section", "title": title})
