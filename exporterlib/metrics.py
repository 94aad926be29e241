import threading
import time
from dataclasses import dataclass, field
from typing import Dict, Optional

from .errors import FetchErrorKind


@dataclass
class Totals:
    fetches: int = 0
    bytes: int = 0
    errors: int = 0
    fetch_ms_sum: float = 0.0
    errors_by_kind: Dict[FetchErrorKind, int] = field(default_factory=dict)


class Metrics:
    def __init__(self):
        self._totals = Totals()
        self._lock = threading.Lock()
        self._start = time.time()

    def record_fetch(self, error_kind: Optional[FetchErrorKind], bytes_read: int, fetch_ms: float) -> None:
        with self._lock:
            self._totals.fetches += 1
            self._totals.bytes += max(0, bytes_read)
            if error_kind is not None:
                self._totals.errors += 1
                self._totals.errors_by_kind[error_kind] = self._totals.errors_by_kind.get(error_kind, 0) + 1
            self._totals.fetch_ms_sum += fetch_ms

    def snapshot(self) -> tuple[Totals, float]:
        with self._lock:
            t = Totals(
                fetches=self._totals.fetches,
                bytes=self._totals.bytes,
                errors=self._totals.errors,
                fetch_ms_sum=self._totals.fetch_ms_sum,
                errors_by_kind=dict(self._totals.errors_by_kind),
            )
        elapsed = max(1e-6, time.time() - self._start)
        return t, elapsed


class StatsLogger(threading.Thread):
    def __init__(self, metrics: Metrics, interval_s: float, log_fn):
        super().__init__(name="stats-logger", daemon=True)
        self._metrics = metrics
        self._interval = max(0.5, interval_s)
        self._log = log_fn
        self._stop_event = threading.Event()

    def run(self) -> None:
        while not self._stop_event.is_set():
            self._stop_event.wait(self._interval)
            if self._stop_event.is_set():
                break
            totals, elapsed = self._metrics.snapshot()
            avg_ms = totals.fetch_ms_sum / max(1, totals.fetches)
            self._log(
                "Perf: fetches=%d, errors=%d, KB=%.1f, avg_fetch_ms=%.1f, fetches/min=%.2f",
                totals.fetches,
                totals.errors,
                totals.bytes / 1024,
                avg_ms,
                totals.fetches * 60.0 / elapsed,
            )

    def stop(self) -> None:
        self._stop_event.set()
