"""HTTP middleware and the Prometheus series shared with the services."""

from autoapply.middleware.metrics import (
    ACTIVE_AUTOMATIONS,
    ACTIVE_PIPELINES,
    PrometheusMiddleware,
    setup_metrics,
)

__all__ = [
    "ACTIVE_AUTOMATIONS",
    "ACTIVE_PIPELINES",
    "PrometheusMiddleware",
    "setup_metrics",
]
