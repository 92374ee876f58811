"""
Prometheus metrics for the arena engine.

Exposes metrics for monitoring:
- HTTP request latency and counts
- Monitor checks, AI evaluations and trades
- Settlement, deaths and fuel burn
- Payout pipeline outcomes
"""

from typing import Optional

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    Counter,
    Histogram,
    Info,
    generate_latest,
)


class MetricsCollector:
    """Prometheus metrics collector."""

    def __init__(self, app_name: str = "arena"):
        self.app_name = app_name

        # ==================== HTTP Metrics ====================

        self.http_requests_total = Counter(
            f"{app_name}_http_requests_total",
            "Total HTTP requests",
            ["method", "endpoint", "status"],
        )
        self.http_request_duration_seconds = Histogram(
            f"{app_name}_http_request_duration_seconds",
            "HTTP request duration in seconds",
            ["method", "endpoint"],
            buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
        )

        # ==================== Lifecycle Metrics ====================

        self.monitor_checks_total = Counter(
            f"{app_name}_monitor_checks_total",
            "Agent monitor checks by outcome",
            ["outcome"],  # checked, skipped, died, error
        )
        self.sweep_duration_seconds = Histogram(
            f"{app_name}_sweep_duration_seconds",
            "Duration of background sweeps",
            ["sweep"],
            buckets=(0.5, 1.0, 5.0, 15.0, 30.0, 60.0, 120.0, 300.0),
        )
        self.ai_evaluations_total = Counter(
            f"{app_name}_ai_evaluations_total",
            "Signal evaluations by outcome",
            ["outcome"],  # trade, no_trade, no_signal
        )
        self.ai_latency_seconds = Histogram(
            f"{app_name}_ai_latency_seconds",
            "Signal evaluation latency",
            ["model"],
            buckets=(0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0, 120.0),
        )
        self.trades_opened_total = Counter(
            f"{app_name}_trades_opened_total",
            "Trades opened",
            ["symbol", "side"],
        )
        self.trades_closed_total = Counter(
            f"{app_name}_trades_closed_total",
            "Trades closed by trigger",
            ["reason"],  # stop_loss, take_profit, external
        )
        self.settlements_total = Counter(
            f"{app_name}_settlements_total",
            "Settlement attempts by result",
            ["result"],  # settled, already_settled, error
        )
        self.exit_price_source_total = Counter(
            f"{app_name}_exit_price_source_total",
            "Which source resolved a settlement exit price",
            ["source"],
        )
        self.energy_burned_total = Counter(
            f"{app_name}_energy_burned_total",
            "Fuel units burned",
            ["reason"],
        )
        self.agent_deaths_total = Counter(
            f"{app_name}_agent_deaths_total",
            "Agents that ran out of fuel",
        )
        self.payouts_total = Counter(
            f"{app_name}_payouts_total",
            "Payout attempts by result",
            ["result"],  # direct, bridged, pending, failed
        )

        self.app_info = Info(
            f"{app_name}_app_info",
            "Application information",
        )

    def set_app_info(self, version: str, environment: str) -> None:
        self.app_info.info({"version": version, "environment": environment})

    def track_request(self, method: str, endpoint: str, status: int, duration: float) -> None:
        self.http_requests_total.labels(
            method=method,
            endpoint=endpoint,
            status=str(status),
        ).inc()
        self.http_request_duration_seconds.labels(
            method=method,
            endpoint=endpoint,
        ).observe(duration)

    def render(self) -> tuple[bytes, str]:
        """Latest exposition payload and its content type."""
        return generate_latest(), CONTENT_TYPE_LATEST


_collector: Optional[MetricsCollector] = None


def get_metrics_collector() -> MetricsCollector:
    """Get or create the process-wide collector (Prometheus registries are global)."""
    global _collector
    if _collector is None:
        _collector = MetricsCollector()
    return _collector
