"""Request correlation, access logging and HTTP metrics for the webhook app."""

from __future__ import annotations

import time
import uuid
from collections.abc import Awaitable, Callable
from contextvars import ContextVar

import structlog
from fastapi import Request, Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from .logging import get_logger

_correlation_id_ctx: ContextVar[str | None] = ContextVar("correlation_id", default=None)

REQUEST_LATENCY = Histogram(
    "creatorcrm_http_request_latency_seconds",
    "Latency of webhook HTTP requests.",
    ["method", "route", "status_code"],
)

REQUEST_COUNTER = Counter(
    "creatorcrm_http_requests_total",
    "Webhook HTTP requests processed.",
    ["method", "route", "status_code"],
)


def get_correlation_id() -> str | None:
    return _correlation_id_ctx.get()


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Bind a correlation id to the request, log its outcome and record metrics."""

    def __init__(self, app: ASGIApp, *, service_name: str = "creatorcrm") -> None:
        super().__init__(app)
        self._logger = get_logger(service_name)

    async def dispatch(
        self,
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        correlation_id = request.headers.get("x-request-id") or uuid.uuid4().hex
        token = _correlation_id_ctx.set(correlation_id)
        structlog.contextvars.bind_contextvars(correlation_id=correlation_id)
        start = time.perf_counter()
        status_code = 500

        try:
            response = await call_next(request)
        except Exception:
            self._logger.exception(
                "http.request.error",
                method=request.method,
                path=request.url.path,
            )
            raise
        else:
            status_code = response.status_code
            response.headers["X-Request-ID"] = correlation_id
            return response
        finally:
            duration = time.perf_counter() - start
            route = _route_path(request)
            REQUEST_COUNTER.labels(request.method, route, str(status_code)).inc()
            REQUEST_LATENCY.labels(request.method, route, str(status_code)).observe(duration)
            self._logger.info(
                "http.request.completed",
                method=request.method,
                route=route,
                status_code=status_code,
                duration_ms=round(duration * 1000, 2),
            )
            structlog.contextvars.unbind_contextvars("correlation_id")
            _correlation_id_ctx.reset(token)


def metrics_response() -> Response:
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


def _route_path(request: Request) -> str:
    route = request.scope.get("route")
    return getattr(route, "path", None) or request.url.path
