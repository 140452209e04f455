"""Per-spawn timing metrics.

A ``SpawnMetrics`` instance is created for each spawn, passed into every step,
and persisted on the session when the spawn returns. Nothing here is shared
between sessions.
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass, field
import time
from typing import Any, Callable, Iterator, Optional


@dataclass
class SpawnMetrics:
    """Wall-clock durations (milliseconds) of the spawn steps."""

    from_pool: bool = False
    durations_ms: dict[str, float] = field(default_factory=dict)
    restored_files: int = 0
    restore_failures: int = 0
    health_checks: int = 0
    clock: Callable[[], float] = field(default=time.perf_counter, repr=False, compare=False)
    _started: Optional[float] = field(default=None, repr=False, compare=False)

    def __post_init__(self) -> None:
        self._started = self.clock()

    @contextmanager
    def measure(self, step: str) -> Iterator[None]:
        """Time the enclosed block under ``step``, even if it raises."""
        start = self.clock()
        try:
            yield
        finally:
            self.record(step, (self.clock() - start) * 1000.0)

    def record(self, step: str, elapsed_ms: float) -> None:
        self.durations_ms[step] = round(self.durations_ms.get(step, 0.0) + elapsed_ms, 2)

    @property
    def total_ms(self) -> float:
        if self._started is None:
            return 0.0
        return round((self.clock() - self._started) * 1000.0, 2)

    def to_dict(self) -> dict[str, Any]:
        return {
            "from_pool": self.from_pool,
            "durations_ms": dict(self.durations_ms),
            "total_ms": self.total_ms,
            "restored_files": self.restored_files,
            "restore_failures": self.restore_failures,
            "health_checks": self.health_checks,
        }


__all__ = ["SpawnMetrics"]
