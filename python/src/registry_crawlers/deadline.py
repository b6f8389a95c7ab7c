from __future__ import annotations

import time
from typing import Callable

from registry_crawlers.errors import DeadlineExceeded


class Deadline:
    """Wall-clock budget shared by every step of one run.

    Network calls keep their own short timeouts; ``cap`` clips them to whatever is
    left of the budget so no single call can overshoot the run by more than its own
    per-call timeout.
    """

    def __init__(self, budget_seconds: float, clock: Callable[[], float] = time.monotonic) -> None:
        if budget_seconds < 0:
            raise ValueError(f"budget_seconds must be >= 0, got {budget_seconds!r}")
        self.budget_seconds = float(budget_seconds)
        self._clock = clock
        self.started_at = clock()
        self.expires_at = self.started_at + self.budget_seconds

    def now(self) -> float:
        return self._clock()

    def elapsed(self) -> float:
        return self._clock() - self.started_at

    def remaining(self) -> float:
        return max(0.0, self.expires_at - self._clock())

    def expired(self) -> bool:
        return self._clock() >= self.expires_at

    def check(self, where: str = "") -> None:
        if self.expired():
            raise DeadlineExceeded(where)

    def cap(self, per_call_timeout: float) -> float:
        return min(float(per_call_timeout), self.remaining())

    def __repr__(self) -> str:
        return f"Deadline(budget={self.budget_seconds:.1f}s, remaining={self.remaining():.1f}s)"
