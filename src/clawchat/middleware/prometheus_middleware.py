"""
Prometheus middleware for HTTP request metrics.

WebSocket scopes pass through untouched; realtime traffic is measured by the
connection and delivery metrics instead.
"""

import time
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from clawchat.core.logging import get_logger
from clawchat.metrics import api_latency_histogram, api_request_counter

logger = get_logger(__name__)


class PrometheusMiddleware(BaseHTTPMiddleware):
    """
    Records request count and latency for every HTTP request.

    Example:
        ```python
        app = FastAPI()
        app.add_middleware(PrometheusMiddleware, skip_paths=["/api/v1/metrics"])
        ```
    """

    def __init__(
        self,
        app: ASGIApp,
        *,
        skip_paths: list[str] | None = None,
        skip_options: bool = True,
    ) -> None:
        super().__init__(app)
        self.skip_paths = set(skip_paths or [])
        self.skip_options = skip_options

    def _should_skip_request(self, request: Request) -> bool:
        if request.url.path in self.skip_paths:
            return True
        return self.skip_options and request.method == "OPTIONS"

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if self._should_skip_request(request):
            return await call_next(request)

        start_time = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            duration = time.perf_counter() - start_time
            endpoint = self._get_endpoint_label(request)
            api_request_counter.labels(
                method=request.method,
                endpoint=endpoint,
                status=str(status_code),
            ).inc()
            api_latency_histogram.labels(method=request.method, endpoint=endpoint).observe(duration)

    def _get_endpoint_label(self, request: Request) -> str:
        """Route pattern when matched (bounded label cardinality), else the raw path."""
        route = request.scope.get("route")
        endpoint = route.path if route is not None and hasattr(route, "path") else request.url.path
        if endpoint.endswith("/") and len(endpoint) > 1:
            endpoint = endpoint[:-1]
        return endpoint or "/"


__all__ = ["PrometheusMiddleware"]
