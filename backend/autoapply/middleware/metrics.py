"""
Prometheus metrics for the API and the application pipelines.

HTTP traffic is measured by PrometheusMiddleware; the services record the
rest through the helpers at the bottom of this module. ``setup_metrics``
wires both into an app and serves ``GET /metrics``.

Series:
    | Metric                              | Labels                    |
    |-------------------------------------|---------------------------|
    | http_requests_total                 | method, endpoint, status  |
    | http_request_duration_seconds       | method, endpoint, status  |
    | http_requests_active                | method, endpoint          |
    | pipeline_stage_duration_seconds     | stage, outcome            |
    | pipeline_outcomes_total             | status                    |
    | pipelines_active                    |                           |
    | automation_sessions_active          |                           |
    | audit_write_failures_total          |                           |
    | embedding_generation_seconds        | provider                  |
    | match_ranking_seconds               |                           |
"""

import logging
import time

from fastapi import FastAPI, Request, Response
from fastapi.responses import PlainTextResponse
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.routing import Match

logger = logging.getLogger(__name__)

HTTP_LABELS = ["method", "endpoint", "status"]

REQUEST_COUNT = Counter("http_requests_total", "HTTP requests served", HTTP_LABELS)
REQUEST_LATENCY = Histogram(
    "http_request_duration_seconds",
    "HTTP request handling time",
    HTTP_LABELS,
    buckets=[0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0],
)
ACTIVE_REQUESTS = Gauge("http_requests_active", "HTTP requests in flight", ["method", "endpoint"])

# Stages can wait on slow third-party sites, hence the long tail
STAGE_DURATION = Histogram(
    "pipeline_stage_duration_seconds",
    "Duration of one pipeline stage",
    ["stage", "outcome"],
    buckets=[0.5, 2.0, 10.0, 30.0, 120.0, 600.0],
)
PIPELINE_OUTCOMES = Counter("pipeline_outcomes_total", "Finished pipeline runs", ["status"])
ACTIVE_PIPELINES = Gauge("pipelines_active", "Pipelines scheduled or running")
ACTIVE_AUTOMATIONS = Gauge("automation_sessions_active", "Automation sessions open")
AUDIT_WRITE_FAILURES = Counter("audit_write_failures_total", "Audit events lost on write")

EMBEDDING_LATENCY = Histogram(
    "embedding_generation_seconds",
    "Embedding call duration per provider",
    ["provider"],
    buckets=[0.05, 0.2, 0.5, 1.0, 3.0],
)
MATCH_SCORE_LATENCY = Histogram(
    "match_ranking_seconds",
    "Ranking one user's feed",
    buckets=[0.01, 0.1, 0.5, 1.0, 5.0],
)


def route_template(request: Request) -> str:
    """Path template of the matched route, e.g. /applications/{application_id}."""
    for route in request.app.routes:
        matched, _ = route.matches(request.scope)
        if matched == Match.FULL:
            return getattr(route, "path", request.url.path)
    return request.url.path


class PrometheusMiddleware(BaseHTTPMiddleware):
    """Counts and times every request except scrapes of /metrics."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        endpoint = route_template(request)
        if endpoint == "/metrics":
            return await call_next(request)

        method = request.method
        in_flight = ACTIVE_REQUESTS.labels(method, endpoint)
        in_flight.inc()
        status = "500"
        started = time.perf_counter()
        try:
            response = await call_next(request)
            status = str(response.status_code)
            return response
        except Exception:
            logger.exception(f"Unhandled error on {method} {endpoint}")
            raise
        finally:
            in_flight.dec()
            REQUEST_COUNT.labels(method, endpoint, status).inc()
            REQUEST_LATENCY.labels(method, endpoint, status).observe(time.perf_counter() - started)


async def metrics_endpoint(request: Request) -> Response:
    return PlainTextResponse(generate_latest(REGISTRY), media_type=CONTENT_TYPE_LATEST)


def setup_metrics(app: FastAPI) -> None:
    """Install the middleware and expose the scrape endpoint."""
    app.add_middleware(PrometheusMiddleware)
    app.add_route("/metrics", metrics_endpoint, methods=["GET"])
    logger.info("Prometheus metrics enabled at /metrics")


def record_stage_duration(stage: str, outcome: str, duration: float) -> None:
    STAGE_DURATION.labels(stage=stage, outcome=outcome).observe(duration)


def record_pipeline_outcome(status: str) -> None:
    """Count a pipeline run by the status it left the application in."""
    PIPELINE_OUTCOMES.labels(status=status).inc()


def record_audit_failure() -> None:
    AUDIT_WRITE_FAILURES.inc()


def record_embedding_latency(provider: str, duration: float) -> None:
    EMBEDDING_LATENCY.labels(provider=provider).observe(duration)


def record_match_score_latency(duration: float) -> None:
    MATCH_SCORE_LATENCY.observe(duration)
