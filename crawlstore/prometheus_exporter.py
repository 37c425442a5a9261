import logging
import threading
from typing import Callable, Optional

from prometheus_client import REGISTRY, CollectorRegistry, Counter, Gauge, start_http_server

from .errors import StorageError
from .metrics import Metrics


logger = logging.getLogger(__name__)


class PrometheusExporter:
    def __init__(
        self,
        metrics: Metrics,
        port: int = 8000,
        queue_size: Optional[Callable[[], int]] = None,
        registry: CollectorRegistry = REGISTRY,
        interval_s: float = 5.0,
    ) -> None:
        self.metrics = metrics
        self.port = port
        self.registry = registry
        self._queue_size = queue_size
        self._interval = interval_s
        self._server_thread: threading.Thread | None = None
        self._stop_event = threading.Event()

        self.enqueued_total = Counter('crawlstore_enqueued_total', 'Items appended to the queue', registry=registry)
        self.dequeued_total = Counter('crawlstore_dequeued_total', 'Items removed from the queue', registry=registry)
        self.empty_polls_total = Counter('crawlstore_empty_polls_total', 'Dequeue calls on an empty queue', registry=registry)
        self.visited_marks_total = Counter('crawlstore_visited_marks_total', 'Requests marked as visited', registry=registry)
        self.cookie_errors_total = Counter('crawlstore_cookie_errors_total', 'Cookie reads or writes that failed', registry=registry)
        self.errors_total = Counter('crawlstore_errors_total', 'Storage errors raised to callers', registry=registry)
        self.transactions_total = Counter('crawlstore_transactions_total', 'Transactions run against the store', registry=registry)
        self.avg_tx_duration_seconds = Gauge('crawlstore_avg_tx_duration_seconds', 'Average transaction duration in seconds', registry=registry)
        self.queue_size = Gauge('crawlstore_queue_size', 'Items pending in the queue', registry=registry)

        self._last: dict[str, int] = {}

    def start(self) -> None:
        start_http_server(self.port, registry=self.registry)
        logger.info("Prometheus metrics server started on port %d", self.port)

        self._server_thread = threading.Thread(
            target=self._update_metrics_loop,
            name="prometheus-updater",
            daemon=True
        )
        self._server_thread.start()

    def _update_metrics_loop(self) -> None:
        while not self._stop_event.is_set():
            self.update_metrics()
            self._stop_event.wait(self._interval)

    def _inc(self, counter: Counter, name: str, value: int) -> None:
        delta = value - self._last.get(name, 0)
        if delta > 0:
            counter.inc(delta)
        self._last[name] = value

    def update_metrics(self) -> None:
        totals, _elapsed = self.metrics.snapshot()

        self._inc(self.enqueued_total, "enqueued", totals.enqueued)
        self._inc(self.dequeued_total, "dequeued", totals.dequeued)
        self._inc(self.empty_polls_total, "empty_polls", totals.empty_polls)
        self._inc(self.visited_marks_total, "visited_marks", totals.visited_marks)
        self._inc(self.cookie_errors_total, "cookie_errors", totals.cookie_errors)
        self._inc(self.errors_total, "errors", totals.errors)
        self._inc(self.transactions_total, "transactions", totals.transactions)

        if totals.transactions > 0:
            self.avg_tx_duration_seconds.set(totals.tx_ms_sum / totals.transactions / 1000.0)

        if self._queue_size is not None:
            try:
                self.queue_size.set(self._queue_size())
            except StorageError as exc:
                logger.warning("Could not read queue size: %s", exc)

    def stop(self) -> None:
        self._stop_event.set()
        if self._server_thread:
            self._server_thread.join(timeout=2.0)
