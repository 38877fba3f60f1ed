"""
Prometheus metrics for the grid worker.

Organized into: exchange, orders, ticks, lifecycle.
"""

from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, start_http_server

from gridworker.state.models import BotStatus

STATUS_CODES = {
    BotStatus.CREATED: 0,
    BotStatus.RUNNING: 1,
    BotStatus.STOPPING: 2,
    BotStatus.STOPPED: 3,
    BotStatus.ERRORED: 4,
}


class WorkerMetrics:
    """Metrics for grid worker observability."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        reg = registry or CollectorRegistry()
        self.registry = reg

        # === Exchange ===
        self.request_latency_sec = Histogram(
            'exchange_request_latency_seconds',
            'Exchange request latency per attempt (seconds)',
            labelnames=['method', 'endpoint'],
            buckets=[0.05, 0.1, 0.25, 0.5, 1, 2, 5, 15],
            registry=reg
        )
        self.requests_total = Counter(
            'exchange_requests_total',
            'Exchange request attempts by status',
            labelnames=['method', 'endpoint', 'status'],
            registry=reg
        )

        # === Orders ===
        self.orders_placed = Counter(
            'orders_placed_total',
            'Grid orders placed',
            labelnames=['bot_id', 'side'],
            registry=reg
        )
        self.orders_cancelled = Counter(
            'orders_cancelled_total',
            'Grid orders cancelled',
            labelnames=['bot_id', 'reason'],
            registry=reg
        )
        self.orders_rejected = Counter(
            'orders_rejected_total',
            'Grid actions rejected or failed',
            labelnames=['bot_id', 'error_type'],
            registry=reg
        )
        self.fills_total = Counter(
            'fills_total',
            'Grid level fills observed',
            labelnames=['bot_id', 'side'],
            registry=reg
        )

        # === Ticks ===
        self.tick_duration_sec = Histogram(
            'tick_duration_seconds',
            'Duration of one bot tick (seconds)',
            labelnames=['bot_id'],
            buckets=[0.05, 0.1, 0.25, 0.5, 1, 2, 5, 15, 30],
            registry=reg
        )
        self.tick_errors = Counter(
            'tick_errors_total',
            'Bot ticks that ended with an error',
            labelnames=['bot_id', 'error_type'],
            registry=reg
        )
        self.ticks_skipped = Counter(
            'ticks_skipped_total',
            'Ticks skipped because the previous tick was still running',
            labelnames=['bot_id'],
            registry=reg
        )
        self.cycle_duration_sec = Histogram(
            'cycle_duration_seconds',
            'Duration of one scheduler cycle (seconds)',
            buckets=[0.1, 0.5, 1, 2, 5, 15, 30, 60],
            registry=reg
        )

        # === Lifecycle ===
        self.bot_status = Gauge(
            'bot_status',
            'Bot status (0=created 1=running 2=stopping 3=stopped 4=errored)',
            labelnames=['bot_id'],
            registry=reg
        )
        self.bot_degraded = Gauge(
            'bot_degraded',
            'Bot degraded flag (1=last tick had failed actions)',
            labelnames=['bot_id'],
            registry=reg
        )
        self.emergency_stops = Counter(
            'emergency_stops_total',
            'Emergency stops requested',
            labelnames=['exchange'],
            registry=reg
        )

    def observe_request(self, method: str, endpoint: str, status: Optional[int], latency_sec: float) -> None:
        self.request_latency_sec.labels(method=method, endpoint=endpoint).observe(latency_sec)
        self.requests_total.labels(method=method, endpoint=endpoint,
                                   status=str(status) if status is not None else "error").inc()

    def set_status(self, bot_id: str, status: BotStatus, degraded: bool = False) -> None:
        self.bot_status.labels(bot_id=bot_id).set(STATUS_CODES[status])
        self.bot_degraded.labels(bot_id=bot_id).set(1 if degraded else 0)

    def serve(self, port: int) -> None:
        """Expose this registry over HTTP on `port`."""
        start_http_server(port, registry=self.registry)
