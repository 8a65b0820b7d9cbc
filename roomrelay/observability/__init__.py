"""roomrelay -- Observability package (Prometheus metrics)."""

from roomrelay.observability.metrics import RelayMetrics, get_metrics

__all__: list[str] = [
    "RelayMetrics",
    "get_metrics",
]
