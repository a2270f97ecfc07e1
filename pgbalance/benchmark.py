"""Wall-clock timings for connections and queries."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Mapping


@dataclass(frozen=True, slots=True)
class Timing:
    """Accumulated readings of one timer."""

    count: int = 0
    total_ms: float = 0.0


class Benchmark:
    """Named timers whose readings accumulate in a registry.

    Each key keeps only a running count and total.
    """

    def __init__(self, clock: Callable[[], float] = time.perf_counter) -> None:
        self._clock = clock
        self._started: dict[str, float] = {}
        self._registry: dict[str, Timing] = {}

    def timing_start(self, key: str) -> None:
        self._started[key] = self._clock()

    def timing_current_to_registry(self, key: str) -> float:
        """Stop the ``key`` timer and add the elapsed milliseconds to its totals."""

        started = self._started.pop(key, None)
        if started is None:
            return 0.0
        elapsed_ms = (self._clock() - started) * 1000
        timing = self._registry.get(key, Timing())
        self._registry[key] = Timing(timing.count + 1, timing.total_ms + elapsed_ms)
        return elapsed_ms

    @property
    def registry(self) -> Mapping[str, Timing]:
        return dict(self._registry)

    def count(self, key: str) -> int:
        return self._registry.get(key, Timing()).count

    def total(self, key: str) -> float:
        return self._registry.get(key, Timing()).total_ms


__all__ = ["Benchmark", "Timing"]
