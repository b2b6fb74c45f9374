import time
from contextlib import contextmanager
from typing import Dict, Optional

ONE_MINUTE_MS = 60 * 1000
ONE_DAY_MS = 24 * 60 * ONE_MINUTE_MS


def now_ms() -> int:
    """Current wall-clock time as epoch milliseconds."""
    return int(time.time() * 1000)


class StageTimer:
    """
    Collects per-stage durations (ms) for a job run.

    Usage:
        timer = StageTimer()
        with timer.stage("fetchNodes"):
            ...
        timer.finish()  # adds "total"
    """

    def __init__(self, budget_seconds: Optional[float] = None):
        self._start = time.monotonic()
        self.timings: Dict[str, int] = {}
        self.deadline = self._start + budget_seconds if budget_seconds else None

    @contextmanager
    def stage(self, name: str):
        started = time.monotonic()
        try:
            yield
        finally:
            self.timings[name] = int((time.monotonic() - started) * 1000)

    def remaining(self) -> Optional[float]:
        """Seconds left in the job budget, None when unbounded."""
        if self.deadline is None:
            return None
        return self.deadline - time.monotonic()

    def finish(self) -> Dict[str, int]:
        self.timings["total"] = int((time.monotonic() - self._start) * 1000)
        return self.timings
