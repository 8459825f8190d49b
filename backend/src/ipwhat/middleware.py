"""HTTP middleware: correlation IDs, request logging and request metrics."""

import re
import time
from typing import Callable

import structlog
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from .logging import get_correlation_id, set_correlation_id
from .metrics import get_metrics

log = structlog.get_logger()

# Client-supplied IDs end up in every log line of the request
_VALID_ID = re.compile(r"^[A-Za-z0-9._:-]{1,64}$")


def incoming_correlation_id(request: Request) -> str | None:
    """First well-formed ID from X-Correlation-ID or X-Request-ID."""
    for header in ("x-correlation-id", "x-request-id"):
        value = request.headers.get(header, "").strip()
        if value and _VALID_ID.match(value):
            return value
    return None


def route_template(request: Request) -> str:
    """Matched route path (``/api/items/{id}``), or the raw path when unmatched."""
    route = request.scope.get("route")
    return getattr(route, "path", None) or request.url.path


class CorrelationIDMiddleware(BaseHTTPMiddleware):
    """Bind a correlation ID for the request and echo it as X-Correlation-ID."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        correlation_id = set_correlation_id(incoming_correlation_id(request))
        response = await call_next(request)
        response.headers["X-Correlation-ID"] = correlation_id
        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Records every request in the metrics collector and logs API traffic.

    Health probes and scrapes are counted but not logged. The alert stream
    stays open for as long as the client listens, so it is logged when
    opened and kept out of the duration metrics.
    """

    QUIET_PATHS = frozenset({"/health", "/health/live", "/health/ready", "/metrics"})
    STREAM_PATHS = frozenset({"/api/alerts/stream"})

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        path = request.url.path
        started = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception:
            self._record(request, 500, started)
            raise

        if path in self.STREAM_PATHS:
            log.info("stream_opened", path=path, client_ip=request.client.host if request.client else None)
            return response

        duration_ms = self._record(request, response.status_code, started)
        if path not in self.QUIET_PATHS:
            level = log.warning if response.status_code >= 500 else log.info
            level(
                "request_completed",
                method=request.method,
                path=path,
                query=str(request.query_params) or None,
                status_code=response.status_code,
                duration_ms=round(duration_ms, 2),
                correlation_id=get_correlation_id(),
            )
        return response

    def _record(self, request: Request, status_code: int, started: float) -> float:
        duration_ms = (time.perf_counter() - started) * 1000
        get_metrics().record_request(
            method=request.method,
            path=route_template(request),
            status_code=status_code,
            duration_ms=duration_ms,
        )
        return duration_ms
