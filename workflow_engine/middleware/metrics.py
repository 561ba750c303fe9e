"""
HTTP Metrics Middleware

Request count, latency and error counters for the API, labelled by the
matched route template.
"""

import time
from typing import Callable

from fastapi import Request, Response
from prometheus_client import Counter, Gauge, Histogram
from starlette.middleware.base import BaseHTTPMiddleware

from ..logging_config import get_logger

logger = get_logger(__name__)


http_requests_total = Counter(
    "workflow_api_requests_total",
    "API requests by method, route and status code",
    ["method", "endpoint", "status_code"],
)

http_request_duration_seconds = Histogram(
    "workflow_api_request_duration_seconds",
    "API request latency by method and route",
    ["method", "endpoint"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

http_requests_in_progress = Gauge(
    "workflow_api_requests_in_progress",
    "API requests currently being processed",
    ["method", "endpoint"],
)


class PrometheusMiddleware(BaseHTTPMiddleware):
    """Collects request metrics; the /metrics endpoint itself is not counted."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)

        method = request.method
        endpoint = request.url.path
        http_requests_in_progress.labels(method=method, endpoint=endpoint).inc()
        start_time = time.perf_counter()
        status_code = 500

        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        except Exception as e:
            logger.error("Request processing error", method=method, endpoint=endpoint, error=str(e))
            raise
        finally:
            # Route is matched during call_next
            route = request.scope.get("route")
            if route is not None:
                endpoint_label = route.path
            else:
                endpoint_label = endpoint
            http_requests_total.labels(method=method, endpoint=endpoint_label, status_code=status_code).inc()
            http_request_duration_seconds.labels(method=method, endpoint=endpoint_label).observe(
                time.perf_counter() - start_time
            )
            http_requests_in_progress.labels(method=method, endpoint=endpoint).dec()
