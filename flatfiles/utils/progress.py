"""
Progress telemetry for download jobs.

Running totals plus a linear ETA projection: the average time per finished
date multiplied by the number of dates still to go.
"""
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional, Tuple

from common.models.data_models import DateOutcome, DateStatus


def format_duration(seconds: float) -> str:
    """Format seconds as 'Xh Ym Zs'"""
    seconds = max(0, int(seconds))
    hours, remainder = divmod(seconds, 3600)
    minutes, secs = divmod(remainder, 60)
    return f"{hours}h {minutes}m {secs}s"


def calculate_eta(completed: int, total: int, elapsed_seconds: float) -> Tuple[float, str]:
    """
    Project remaining time from the average pace so far.

    Args:
        completed: Dates finished (completed or failed)
        total: Dates in the job
        elapsed_seconds: Wall time since the job started

    Returns:
        (eta_seconds, formatted) where formatted is "calculating..." until
        the first date finishes
    """
    if completed <= 0:
        return 0.0, 'calculating...'

    remaining = max(0, total - completed)
    eta = elapsed_seconds / completed * remaining
    return eta, format_duration(eta)


@dataclass
class ProgressSnapshot:
    """Point-in-time view handed to progress callbacks"""
    total: int
    completed: int
    failed: int
    total_records: int
    elapsed_seconds: float
    eta_seconds: float
    eta_formatted: str
    last: Optional[DateOutcome] = None

    @property
    def done(self) -> int:
        return self.completed + self.failed


ProgressCallback = Callable[[ProgressSnapshot], None]


class ProgressTracker:
    """
    Thread-safe running totals for one job.

    Worker threads call ``record``; the returned snapshot is consistent even
    when several dates finish at once.
    """

    def __init__(self, total: int, clock: Callable[[], float] = time.monotonic):
        self.total = total
        self.completed = 0
        self.failed = 0
        self.total_records = 0
        self._clock = clock
        self._started = clock()
        self._lock = threading.Lock()

    @property
    def elapsed_seconds(self) -> float:
        return self._clock() - self._started

    def record(self, outcome: DateOutcome) -> ProgressSnapshot:
        """Fold one finished date into the totals"""
        with self._lock:
            if outcome.status is DateStatus.COMPLETED:
                self.completed += 1
                self.total_records += outcome.records
            else:
                self.failed += 1
            return self._snapshot(outcome)

    def snapshot(self) -> ProgressSnapshot:
        with self._lock:
            return self._snapshot(None)

    def _snapshot(self, last: Optional[DateOutcome]) -> ProgressSnapshot:
        elapsed = self.elapsed_seconds
        eta, eta_formatted = calculate_eta(self.completed + self.failed, self.total, elapsed)
        return ProgressSnapshot(
            total=self.total,
            completed=self.completed,
            failed=self.failed,
            total_records=self.total_records,
            elapsed_seconds=elapsed,
            eta_seconds=eta,
            eta_formatted=eta_formatted,
            last=last,
        )
