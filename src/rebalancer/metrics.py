"""Metrics sinks for rebalancing.

`NoopMetrics` is the default; `PrometheusMetrics` registers collectors
through `get_metric` so repeated construction reuses them.
"""

import logging
import threading
from typing import Any, Dict, Tuple, Type

from prometheus_client import Counter, Histogram, start_http_server

logger = logging.getLogger(__name__)

_METRICS: Dict[Tuple[Type[Any], str], Any] = {}
_server_started = False
_server_lock = threading.Lock()


def get_metric(cls: Type[Any], name: str, *args, **kwargs):
    """Return an existing collector or register a new one."""
    key = (cls, name)
    if key in _METRICS:
        return _METRICS[key]
    metric = cls(name, *args, **kwargs)
    _METRICS[key] = metric
    return metric


def maybe_start_http_server(port: int) -> None:
    """Start the metrics HTTP server once. Port 0 disables it."""
    global _server_started
    if _server_started or not port:
        return
    with _server_lock:
        if not _server_started:
            start_http_server(port)
            _server_started = True
            logger.info(f"Metrics server listening on :{port}")


class Metrics:
    """Fire-and-forget metrics sink. Every method is a no-op here."""

    def record_quote(self, route: str, bridge: str, outcome: str) -> None:
        pass

    def record_submission(self, route: str, bridge: str, outcome: str) -> None:
        pass

    def record_rebalance(self, route: str, bridge: str, amount: int) -> None:
        pass

    def record_callback(self, bridge: str, outcome: str) -> None:
        pass

    def record_cycle(self, duration: float) -> None:
        pass


class NoopMetrics(Metrics):
    pass


class PrometheusMetrics(Metrics):
    """Prometheus-backed metrics sink."""

    def __init__(self):
        self.quotes = get_metric(
            Counter, "rebalancer_quotes_total",
            "Quote attempts by route, bridge and outcome",
            ["route", "bridge", "outcome"],
        )
        self.submissions = get_metric(
            Counter, "rebalancer_submissions_total",
            "Origin submissions by route, bridge and outcome",
            ["route", "bridge", "outcome"],
        )
        self.rebalanced = get_metric(
            Counter, "rebalancer_rebalanced_amount_total",
            "Native units moved per route and bridge",
            ["route", "bridge"],
        )
        self.callbacks = get_metric(
            Counter, "rebalancer_callbacks_total",
            "Destination callbacks by bridge and outcome",
            ["bridge", "outcome"],
        )
        self.cycle_latency = get_metric(
            Histogram, "rebalancer_cycle_seconds",
            "Duration of one sweep + rebalance cycle",
            buckets=(1, 5, 15, 30, 60, 120, 300, 600),
        )

    def record_quote(self, route: str, bridge: str, outcome: str) -> None:
        self.quotes.labels(route=route, bridge=bridge, outcome=outcome).inc()

    def record_submission(self, route: str, bridge: str, outcome: str) -> None:
        self.submissions.labels(route=route, bridge=bridge, outcome=outcome).inc()

    def record_rebalance(self, route: str, bridge: str, amount: int) -> None:
        self.rebalanced.labels(route=route, bridge=bridge).inc(amount)

    def record_callback(self, bridge: str, outcome: str) -> None:
        self.callbacks.labels(bridge=bridge, outcome=outcome).inc()

    def record_cycle(self, duration: float) -> None:
        self.cycle_latency.observe(duration)
