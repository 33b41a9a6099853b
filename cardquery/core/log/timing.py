"""Stage timing."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from time import perf_counter
from typing import Iterator, Optional


@dataclass
class StageTimer:
    label: str
    total: Optional[int] = None
    unit: str = "items"
    started: float = field(default_factory=perf_counter)

    @property
    def elapsed_ms(self) -> float:
        return (perf_counter() - self.started) * 1000.0

    def describe(self, outcome: str) -> str:
        text = f"{self.label} {outcome} {self.elapsed_ms:.1f}ms"
        if self.total is not None:
            text += f" over {self.total:,} {self.unit}"
        return text


@contextmanager
def timeit(
    label: str,
    *,
    logger: Optional[logging.Logger] = None,
    level: int = logging.DEBUG,
    unit: str = "items",
    total: Optional[int] = None,
) -> Iterator[StageTimer]:
    """Log how long the block took; failures are logged as warnings and re-raised."""
    log = logger or logging.getLogger("cardquery.timing")
    timer = StageTimer(label, total=total, unit=unit)
    try:
        yield timer
    except Exception:
        log.warning(timer.describe("failed after"))
        raise
    log.log(level, timer.describe("took"))
