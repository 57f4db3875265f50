"""Reporter contract shared by the conversion stages.

A conversion run reports through one active :class:`Reporter`. Stages open a
:func:`task` (fetch, import, build), advance it per asset and close it with
final counters; the counters listed in :data:`STAT_KEYS` are rendered on the
completion line of every reporter.
"""

from __future__ import annotations

import sys
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Dict, Iterator, Optional, Tuple

__all__ = [
    "TaskStatus",
    "TaskRecord",
    "Reporter",
    "set_reporter",
    "get_reporter",
    "set_verbosity",
    "get_verbosity",
    "task",
    "STAT_KEYS",
]

# Stage counters rendered in completion lines, in this order
STAT_KEYS: Tuple[str, ...] = ("fetched", "staged", "bundles", "skipped", "bytes")


class TaskStatus(Enum):
    RUNNING = auto()
    SUCCESS = auto()
    FAILED = auto()
    SKIPPED = auto()


@dataclass(slots=True)
class TaskRecord:
    """Progress of one conversion stage."""

    task_id: str
    name: str
    total: Optional[int] = None
    completed: int = 0
    status: TaskStatus = TaskStatus.RUNNING
    start_time: float = field(default_factory=time.time)
    end_time: float | None = None
    meta: Dict[str, Any] = field(default_factory=dict)

    @property
    def duration(self) -> float:
        if self.end_time is None:
            return 0.0
        return self.end_time - self.start_time

    def tick(self, step: int, meta: Dict[str, Any]) -> None:
        self.completed += step
        self.meta.update(meta)

    def finish(self, status: TaskStatus, meta: Dict[str, Any]) -> None:
        self.status = status
        self.end_time = time.time()
        self.meta.update(meta)

    def counts(self) -> str:
        return f"{self.completed}/{self.total}" if self.total is not None else ""

    def stats_suffix(self) -> str:
        stats = [f"{k}={self.meta[k]}" for k in STAT_KEYS if k in self.meta]
        return f" [{' '.join(stats)}]" if stats else ""


_VERBOSITY: int = 0


def set_verbosity(level: int) -> None:
    global _VERBOSITY
    _VERBOSITY = max(0, level)


def get_verbosity() -> int:
    return _VERBOSITY


class Reporter(ABC):
    """Sink for stage progress, summaries and diagnostics of a conversion run."""

    supports_progress: bool = False

    @abstractmethod
    def start_task(
        self, task_id: str, name: str, total: int | None = None, **meta: Any
    ) -> None: ...

    @abstractmethod
    def advance(self, task_id: str, step: int = 1, **meta: Any) -> None:
        """Count one processed asset; ``current_item`` names it."""

    @abstractmethod
    def end_task(
        self,
        task_id: str,
        status: TaskStatus = TaskStatus.SUCCESS,
        **final_meta: Any,
    ) -> None: ...

    @abstractmethod
    def status(self, message: str, **fields: Any) -> None: ...

    @abstractmethod
    def error(self, message: str, **fields: Any) -> None: ...

    @abstractmethod
    def section(self, title: str) -> None:
        """Mark the start of a conversion step (fetching, building)."""

    def verbose(self, message: str, *, level: int = 1, **fields: Any) -> None:
        pass

    def warning(self, message: str, **fields: Any) -> None:
        self.status(message, **fields)

    def flush(self) -> None:
        pass


_ACTIVE_REPORTER: Reporter | None = None


def set_reporter(rep: Reporter) -> None:
    global _ACTIVE_REPORTER
    _ACTIVE_REPORTER = rep


def get_reporter() -> Reporter:
    global _ACTIVE_REPORTER
    if _ACTIVE_REPORTER is None:
        from .plain import PlainReporter  # local import to avoid cycle

        _ACTIVE_REPORTER = PlainReporter(stream=sys.stderr)
    return _ACTIVE_REPORTER


@contextmanager
def task(
    task_id: str, name: str, total: int | None = None, **meta: Any
) -> Iterator[Dict[str, Any]]:
    """Track a stage task; the yielded dict collects its final counters."""
    rep = get_reporter()
    rep.start_task(task_id, name, total, **meta)
    final: Dict[str, Any] = {}
    try:
        yield final
    except Exception:
        rep.end_task(task_id, TaskStatus.FAILED, **final)
        raise
    else:
        rep.end_task(task_id, TaskStatus.SUCCESS, **final)
