# FILE: taskpal/middleware.py
from __future__ import annotations

import re
import time
from typing import Callable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from .metrics import LedgerMetrics


def _default_path_normalizer(path: str) -> str:
    """
    Best-effort path normalizer to keep label cardinality under control.
    """
    # Collapse UUID-like segments (Notion page ids).
    p = re.sub(
        r"[0-9a-fA-F]{8}-?[0-9a-fA-F]{4}-?[0-9a-fA-F]{4}-?[0-9a-fA-F]{4}-?[0-9a-fA-F]{12}",
        ":uuid",
        path,
    )
    # Collapse long numeric IDs.
    p = re.sub(r"/\d{4,}", "/:id", p)
    return p


class MetricsMiddleware(BaseHTTPMiddleware):
    """
    Prometheus request counter + latency histogram.

    Metrics:
      - Counter:   taskpal_http_requests_total{route, status}
      - Histogram: taskpal_http_request_latency_seconds{route}

    Unhandled exceptions are recorded as status 500 and re-raised so the
    app's exception handlers still produce the response.
    """

    def __init__(
        self,
        app,
        metrics: LedgerMetrics,
        *,
        path_normalizer: Callable[[str], str] = _default_path_normalizer,
    ):
        super().__init__(app)
        self.metrics = metrics
        self.path_normalizer = path_normalizer

    async def dispatch(self, request: Request, call_next):
        route_label = self.path_normalizer(request.url.path)
        t0 = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = int(response.status_code)
            return response
        finally:
            self.metrics.observe_http(route_label, status_code, time.perf_counter() - t0)


__all__ = ["MetricsMiddleware"]
