import threading
import time
from dataclasses import dataclass, replace


@dataclass
class Totals:
    enqueued: int = 0
    dequeued: int = 0
    empty_polls: int = 0
    visited_marks: int = 0
    visited_checks: int = 0
    filter_skips: int = 0
    cookie_reads: int = 0
    cookie_writes: int = 0
    cookie_errors: int = 0
    errors: int = 0
    transactions: int = 0
    tx_ms_sum: float = 0.0


class Metrics:
    def __init__(self):
        self._totals = Totals()
        self._lock = threading.Lock()
        self._start = time.time()

    def record_transaction(self, tx_ms: float) -> None:
        with self._lock:
            self._totals.transactions += 1
            self._totals.tx_ms_sum += tx_ms

    def record_error(self) -> None:
        with self._lock:
            self._totals.errors += 1

    def record_enqueue(self) -> None:
        with self._lock:
            self._totals.enqueued += 1

    def record_dequeue(self, empty: bool = False) -> None:
        with self._lock:
            if empty:
                self._totals.empty_polls += 1
            else:
                self._totals.dequeued += 1

    def record_visited_mark(self) -> None:
        with self._lock:
            self._totals.visited_marks += 1

    def record_visited_check(self, filter_skip: bool = False) -> None:
        with self._lock:
            self._totals.visited_checks += 1
            if filter_skip:
                self._totals.filter_skips += 1

    def record_cookies(self, write: bool, ok: bool = True) -> None:
        with self._lock:
            if write:
                self._totals.cookie_writes += 1
            else:
                self._totals.cookie_reads += 1
            if not ok:
                self._totals.cookie_errors += 1

    def snapshot(self) -> tuple[Totals, float]:
        with self._lock:
            t = replace(self._totals)
        elapsed = max(1e-6, time.time() - self._start)
        return t, elapsed


class StatsLogger(threading.Thread):
    daemon = True

    def __init__(self, metrics: Metrics, interval_s: float, log_fn):
        super().__init__(name="crawlstore-stats")
        self._metrics = metrics
        self._interval = max(0.5, interval_s)
        self._log = log_fn
        self._stop = threading.Event()

    def run(self) -> None:
        while not self._stop.is_set():
            self._stop.wait(self._interval)
            if self._stop.is_set():
                break
            self.log_once()

    def log_once(self) -> None:
        totals, elapsed = self._metrics.snapshot()
        avg_ms = totals.tx_ms_sum / max(1, totals.transactions)
        self._log(
            "Store: tx=%d, errors=%d, enqueued=%d, dequeued=%d, empty_polls=%d, visited=%d, avg_tx_ms=%.2f, tx/sec=%.2f",
            totals.transactions,
            totals.errors,
            totals.enqueued,
            totals.dequeued,
            totals.empty_polls,
            totals.visited_marks,
            avg_ms,
            totals.transactions / elapsed,
        )

    def stop(self) -> None:
        self._stop.set()
