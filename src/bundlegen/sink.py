"""Error sink: where every conversion failure ends up."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .errors import ConversionError, ErrorCode, error_code_for
from .logging import get_logger

__all__ = ["ErrorEvent", "ErrorSink", "LoggingErrorSink"]


@dataclass(slots=True)
class ErrorEvent:
    code: ErrorCode
    message: str
    context: Dict[str, Any] = field(default_factory=dict)


class ErrorSink(ABC):
    @abstractmethod
    def report_error(
        self, code: ErrorCode, message: str, context: Optional[Dict[str, Any]] = None
    ) -> None: ...

    @abstractmethod
    def report_exception(self, exc: BaseException, **context: Any) -> None: ...

    def dispose(self) -> None:
        pass


class LoggingErrorSink(ErrorSink):
    """Logs errors with the run context attached and keeps them for the result."""

    def __init__(self, **run_context: Any) -> None:
        self.run_context = {k: v for k, v in run_context.items() if v is not None}
        self.events: List[ErrorEvent] = []
        self.disposed = False
        self.dispose_count = 0

    def report_error(
        self, code: ErrorCode, message: str, context: Optional[Dict[str, Any]] = None
    ) -> None:
        ctx = {**self.run_context, **(context or {})}
        self.events.append(ErrorEvent(code, message, ctx))
        get_logger("errors").error("[%s] %s %s", code.name, message, ctx or "")

    def report_exception(self, exc: BaseException, **context: Any) -> None:
        if isinstance(exc, ConversionError):
            self.report_error(exc.code, exc.message, {**(exc.context or {}), **context})
        else:
            self.report_error(error_code_for(exc), repr(exc), context)

    def dispose(self) -> None:
        if self.disposed:
            return
        self.disposed = True
        self.dispose_count += 1
        if self.events:
            get_logger("errors").info("Reported %d error(s)", len(self.events))
