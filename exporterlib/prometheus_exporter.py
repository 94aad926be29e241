import threading
from typing import Dict, Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, make_wsgi_app

from .errors import FetchErrorKind
from .metrics import Metrics


class PrometheusExporter:
    """Mirrors Metrics totals into prometheus_client collectors on every scrape."""

    def __init__(self, metrics: Metrics, registry: Optional[CollectorRegistry] = None) -> None:
        self.metrics = metrics
        self.registry = registry if registry is not None else CollectorRegistry()
        self._lock = threading.Lock()

        self.fetches_total = Counter(
            'exporter_fetches_total', 'Total number of upstream fetches', registry=self.registry
        )
        self.bytes_total = Counter(
            'exporter_fetched_bytes_total', 'Total number of body bytes fetched', registry=self.registry
        )
        self.errors_total = Counter(
            'exporter_fetch_errors_total', 'Failed upstream fetches by error kind', ['kind'], registry=self.registry
        )
        self.avg_fetch_duration_seconds = Gauge(
            'exporter_avg_fetch_duration_seconds', 'Average fetch duration in seconds', registry=self.registry
        )
        self.last_fetch_ok = Gauge(
            'exporter_last_fetch_success', '1 if the most recent fetch succeeded, else 0', registry=self.registry
        )
        for kind in FetchErrorKind:
            self.errors_total.labels(kind=kind.value)

        self._last_fetches = 0
        self._last_bytes = 0
        self._last_errors: Dict[FetchErrorKind, int] = {}

    def update(self) -> None:
        with self._lock:
            totals, _ = self.metrics.snapshot()
            # counters only move forward, so push the change since the last scrape
            fetches_delta = totals.fetches - self._last_fetches
            bytes_delta = totals.bytes - self._last_bytes
            if fetches_delta > 0:
                self.fetches_total.inc(fetches_delta)
            if bytes_delta > 0:
                self.bytes_total.inc(bytes_delta)
            for kind, count in totals.errors_by_kind.items():
                errors_delta = count - self._last_errors.get(kind, 0)
                if errors_delta > 0:
                    self.errors_total.labels(kind=kind.value).inc(errors_delta)

            if totals.fetches > 0:
                avg_fetch_ms = totals.fetch_ms_sum / totals.fetches
                self.avg_fetch_duration_seconds.set(avg_fetch_ms / 1000.0)

            self._last_fetches = totals.fetches
            self._last_bytes = totals.bytes
            self._last_errors = totals.errors_by_kind

    def record_outcome(self, ok: bool) -> None:
        self.last_fetch_ok.set(1 if ok else 0)

    def wsgi_app(self):
        metrics_app = make_wsgi_app(self.registry)

        def app(environ, start_response):
            self.update()
            return metrics_app(environ, start_response)

        return app

