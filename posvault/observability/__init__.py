"""posvault -- Observability package.

Prometheus metrics.
"""

from posvault.observability.metrics import MetricsCollector

__all__: list[str] = [
    "MetricsCollector",
]
