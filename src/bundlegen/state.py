"""Conversion state machine and stage timers."""

from __future__ import annotations

import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Dict, Iterator

from .errors import ErrorCode

__all__ = ["Step", "ConversionState", "StageTimers"]


class Step(IntEnum):
    IDLE = 0
    FETCHING = 1
    BUILDING = 2
    FINISHED = 3


class ConversionState:
    def __init__(self) -> None:
        self._step = Step.IDLE
        self._last_error_code = ErrorCode.UNDEFINED

    @property
    def step(self) -> Step:
        return self._step

    @property
    def last_error_code(self) -> ErrorCode:
        return self._last_error_code

    @last_error_code.setter
    def last_error_code(self, code: ErrorCode) -> None:
        # A tolerated failure must survive the final SUCCESS write
        if (
            code == ErrorCode.SUCCESS
            and self._last_error_code == ErrorCode.CONVERSION_ERRORS_TOLERATED
        ):
            return
        self._last_error_code = ErrorCode(code)

    @property
    def finished(self) -> bool:
        return self._step == Step.FINISHED

    def advance(self, step: Step) -> None:
        if step < self._step:
            raise ValueError(f"Cannot move from {self._step.name} back to {step.name}")
        self._step = step

    def force_exit(self, code: ErrorCode) -> None:
        self.last_error_code = code
        self._step = Step.FINISHED

    def __repr__(self) -> str:
        return (
            f"ConversionState(step={self._step.name}, "
            f"last_error_code={self._last_error_code.name})"
        )


@dataclass(slots=True)
class StageTimers:
    elapsed: Dict[str, float] = field(default_factory=dict)

    @contextmanager
    def timed(self, stage: str) -> Iterator[None]:
        start = time.perf_counter()
        try:
            yield
        finally:
            self.elapsed[stage] = self.elapsed.get(stage, 0.0) + (
                time.perf_counter() - start
            )

    def total(self) -> float:
        return sum(self.elapsed.values())

    def describe(self) -> str:
        return " ".join(f"{k}={v:.2f}s" for k, v in self.elapsed.items())
